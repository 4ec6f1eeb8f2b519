"""Semantic search interface."""

from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

from notefinder.chunking.cache import SegmenterCache
from notefinder.errors import InvalidQueryError
from notefinder.models import SearchHit
from notefinder.sources import DocumentSource
from notefinder.transport.proxy import WorkerProxy
from notefinder.utils.text import make_snippet

LOGGER = logging.getLogger(__name__)


class QueryService:
    """High-level API to query the vector index."""

    def __init__(self, proxy: WorkerProxy, source: DocumentSource, cache: SegmenterCache) -> None:
        self.proxy = proxy
        self.source = source
        self.cache = cache

    async def search(
        self,
        query: str,
        negative_query: str | None = None,
        limit: int = 10,
        *,
        ef_search: int | None = None,
    ) -> List[SearchHit]:
        if not query or not query.strip():
            raise InvalidQueryError("Query must not be empty")
        if limit < 1:
            raise InvalidQueryError("limit must be at least 1")
        negative = negative_query.strip() if negative_query else None
        return await self.proxy.search(
            query.strip(), negative or None, limit, ef_search=ef_search
        )

    async def search_by_vector(
        self,
        vector: np.ndarray,
        limit: int = 10,
        exclude_file_paths: Sequence[str] = (),
    ) -> List[SearchHit]:
        if limit < 1:
            raise InvalidQueryError("limit must be at least 1")
        return await self.proxy.search_by_vector(
            vector, limit, exclude_file_paths=exclude_file_paths
        )

    async def note_vector(self, path: str, *, from_index: bool = True) -> np.ndarray | None:
        """Average chunk vector of one note, ``None`` when it has no chunks.

        ``from_index`` reuses stored vectors; otherwise the note is segmented
        and embedded afresh, which also works for notes not indexed yet.
        """
        if from_index:
            vectors = await self.proxy.get_vectors_by_file_path(path)
        else:
            chunks = await self.cache.segment(self.source.read_document(path))
            if not chunks:
                return None
            vectors = await self.proxy.embed_sentences([chunk.text for chunk in chunks])
        if vectors.shape[0] == 0:
            return None
        return await self.proxy.average_vectors(vectors)

    async def related_chunks(
        self, path: str, limit: int = 10, *, from_index: bool = True
    ) -> List[SearchHit]:
        """Chunks of other notes closest to this note as a whole."""
        vector = await self.note_vector(path, from_index=from_index)
        if vector is None:
            LOGGER.debug("No vectors for %s, nothing related", path)
            return []
        return await self.search_by_vector(vector, limit, exclude_file_paths=[path])

    def attach_snippets(self, hits: List[SearchHit], max_chars: int = 180) -> List[SearchHit]:
        """Fill ``snippet`` from the current document text at each hit's offsets.

        Falls back to the stored chunk text when the document cannot be read.
        """
        contents: dict[str, str | None] = {}
        for hit in hits:
            if hit.file_path not in contents:
                try:
                    contents[hit.file_path] = self.source.read_document(hit.file_path)
                except (OSError, ValueError) as exc:
                    LOGGER.warning("Cannot read %s for snippet: %s", hit.file_path, exc)
                    contents[hit.file_path] = None
            content = contents[hit.file_path]
            if content is not None:
                text = content[hit.chunk_offset_start : hit.chunk_offset_end]
            else:
                text = hit.text or ""
            hit.snippet = make_snippet(text, max_chars)
        return hits
