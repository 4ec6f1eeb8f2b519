"""Backend side of the transport: owns the embedder and the vector index."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from notefinder.embedding.encoder import (
    Embedder,
    EmbeddingConfig,
    average_vectors,
    create_embedder,
    subtract_negative,
)
from notefinder.errors import InvalidQueryError, NoteFinderError, SchemaMismatchError
from notefinder.index.ann import AnnConfig
from notefinder.index.storage import SQLiteVectorIndex
from notefinder.models import ChunkPayload, VectorRecord
from notefinder.transport.protocol import MessageType, Request, Response
from notefinder.utils.text import nmt_normalize_all

LOGGER = logging.getLogger(__name__)

EmbedderFactory = Callable[[EmbeddingConfig], Embedder]


def _vectors_to_payload(matrix: np.ndarray) -> List[List[float]]:
    return np.asarray(matrix, dtype="float32").tolist()


def _close_embedder(embedder: Optional[Embedder]) -> None:
    close = getattr(embedder, "close", None)
    if callable(close):
        close()


class Backend:
    """Handles one request at a time and always answers with a response.

    Nothing is loaded until ``initialize``; every other request is rejected
    before that.
    """

    def __init__(self, embedder_factory: EmbedderFactory = create_embedder) -> None:
        self._embedder_factory = embedder_factory
        self._embedder: Optional[Embedder] = None
        self._index: Optional[SQLiteVectorIndex] = None
        self._handlers: Dict[MessageType, Callable[[Dict[str, Any]], Any]] = {
            MessageType.EMBED_SENTENCES: self._embed_sentences,
            MessageType.UPSERT_CHUNKS: self._upsert_chunks,
            MessageType.BULK_UPSERT_CHUNKS: self._upsert_chunks,
            MessageType.SEARCH: self._search,
            MessageType.SEARCH_BY_VECTOR: self._search_by_vector,
            MessageType.REBUILD: self._rebuild,
            MessageType.ENSURE_INDEXES: self._ensure_indexes,
            MessageType.DELETE_BY_FILE_PATH: self._delete_by_file_path,
            MessageType.UPDATE_FILE_PATH: self._update_file_path,
            MessageType.GET_VECTORS_BY_FILE_PATH: self._get_vectors_by_file_path,
            MessageType.AVERAGE_VECTORS: self._average_vectors,
            MessageType.LIST_FILE_PATHS: self._list_file_paths,
            MessageType.STATS: self._stats,
            MessageType.CLOSE: self._close,
        }

    @property
    def initialized(self) -> bool:
        return self._embedder is not None and self._index is not None

    def handle(self, request: Request) -> Response:
        payload = request.payload or {}
        try:
            if request.type is MessageType.INITIALIZE:
                result = self._initialize(payload)
            else:
                handler = self._handlers.get(request.type)
                if handler is None:
                    raise ValueError(f"Unsupported message type: {request.type}")
                if not self.initialized and request.type is not MessageType.CLOSE:
                    raise RuntimeError("Backend is not initialised")
                result = handler(payload)
        except NoteFinderError as exc:
            LOGGER.warning("%s failed: %s", request.type.value, exc)
            return Response.error(request.id, exc)
        except Exception as exc:
            LOGGER.exception("%s failed", request.type.value)
            return Response.error(request.id, exc)
        return Response(id=request.id, type=request.type, payload=result)

    # -- lifecycle --------------------------------------------------------

    def _initialize(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self.initialized:
            self._close({})

        embedding_config = EmbeddingConfig(**payload.get("embedding", {}))
        embedder = self._embedder_factory(embedding_config)

        db_path = Path(payload["db_path"])
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            index = SQLiteVectorIndex(
                db_path,
                dimensions=embedder.dimension,
                ann_config=AnnConfig(**payload.get("ann", {})),
                batch_size=int(payload.get("batch_size", 100)),
            )
        except Exception:
            _close_embedder(embedder)
            raise

        needs_rebuild = False
        try:
            index.ensure_schema(force=bool(payload.get("force", False)))
        except SchemaMismatchError as exc:
            # Stay up so the coordinator can still ask for a rebuild.
            LOGGER.warning("%s; a rebuild is required", exc)
            needs_rebuild = True
        except Exception:
            index.close()
            _close_embedder(embedder)
            raise

        self._embedder = embedder
        self._index = index
        LOGGER.info("Backend ready (db=%s, dimensions=%d)", db_path, embedder.dimension)
        return {
            "dimensions": embedder.dimension,
            "db_path": str(db_path),
            "ready": index.is_ready,
            "needs_rebuild": needs_rebuild,
        }

    def _close(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._index is not None:
            self._index.close()
        _close_embedder(self._embedder)
        self._index = None
        self._embedder = None
        return {"closed": True}

    # -- embedding --------------------------------------------------------

    def _embed(self, texts: List[str]) -> np.ndarray:
        assert self._embedder is not None
        return self._embedder.embed(nmt_normalize_all(texts))

    def _embed_sentences(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        texts = [str(text) for text in payload.get("texts", [])]
        return {"vectors": _vectors_to_payload(self._embed(texts))}

    def _average_vectors(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        vector = average_vectors(np.asarray(payload.get("vectors", []), dtype="float32"))
        return {"vector": vector.tolist()}

    # -- index ------------------------------------------------------------

    def _upsert_chunks(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        chunks = [ChunkPayload.from_payload(item) for item in payload.get("chunks", [])]
        if not chunks:
            return {"count": 0}
        vectors = self._embed([chunk.text for chunk in chunks])
        records = [
            VectorRecord(
                file_path=chunk.file_path,
                chunk_offset_start=chunk.chunk_offset_start,
                chunk_offset_end=chunk.chunk_offset_end,
                embedding=vector,
                text=chunk.text,
            )
            for chunk, vector in zip(chunks, vectors)
        ]
        count = self._index.upsert(records)
        LOGGER.debug("Upserted %d chunks for %d files", count, len({c.file_path for c in chunks}))
        return {"count": count}

    def _search(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        query = str(payload.get("query", "")).strip()
        if not query:
            raise InvalidQueryError("Empty query")
        negative = str(payload.get("negative_query") or "").strip()
        if negative:
            positive_vec, negative_vec = self._embed([query, negative])
            vector = subtract_negative(positive_vec, negative_vec)
        else:
            vector = self._embed([query])[0]
        hits = self._index.search(
            vector,
            int(payload.get("limit", 10)),
            ef_search=payload.get("ef_search"),
            exclude_file_paths=payload.get("exclude_file_paths", ()),
        )
        return {"hits": [hit.to_payload() for hit in hits]}

    def _search_by_vector(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        hits = self._index.search(
            np.asarray(payload["vector"], dtype="float32"),
            int(payload.get("limit", 10)),
            ef_search=payload.get("ef_search"),
            exclude_file_paths=payload.get("exclude_file_paths", ()),
        )
        return {"hits": [hit.to_payload() for hit in hits]}

    def _rebuild(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        self._index.rebuild(defer_ann=bool(payload.get("defer_ann", False)))
        return {"ann_deferred": self._index.ann_deferred}

    def _ensure_indexes(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        if self._index.ann_deferred:
            self._index.build_ann_index()
        else:
            self._index.ensure_schema()
        return self._index.stats()

    def _delete_by_file_path(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        return {"count": self._index.delete_by_file_path(str(payload["file_path"]))}

    def _update_file_path(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        count = self._index.update_file_path(str(payload["old_path"]), str(payload["new_path"]))
        return {"count": count}

    def _get_vectors_by_file_path(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        vectors = self._index.get_vectors_by_file_path(str(payload["file_path"]))
        return {"vectors": _vectors_to_payload(vectors)}

    def _list_file_paths(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        return {"file_paths": self._index.file_paths()}

    def _stats(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        assert self._index is not None
        return self._index.stats()
