"""Unit tests for IndexingService and QueryService against a mocked proxy."""

from __future__ import annotations

from typing import Dict
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from notefinder.chunking.cache import SegmenterCache
from notefinder.chunking.segmenter import Segmenter, SegmenterConfig
from notefinder.errors import InvalidQueryError, WorkerTerminatedError
from notefinder.models import SearchHit
from notefinder.services.indexing import IndexingService
from notefinder.services.query import QueryService


class DictSource:
    """In-memory document source."""

    def __init__(self, documents: Dict[str, str]) -> None:
        self.documents = documents

    def list_documents(self) -> list[str]:
        return sorted(self.documents)

    def read_document(self, path: str) -> str:
        try:
            return self.documents[path]
        except KeyError:
            raise FileNotFoundError(path) from None


def _proxy() -> MagicMock:
    proxy = MagicMock()
    proxy.bulk_upsert_chunks = AsyncMock(side_effect=lambda chunks: len(chunks))
    proxy.upsert_chunks = AsyncMock(side_effect=lambda chunks: len(chunks))
    proxy.delete_by_file_path = AsyncMock(return_value=0)
    proxy.update_file_path = AsyncMock(return_value=2)
    proxy.rebuild = AsyncMock(return_value={"ann_deferred": True})
    proxy.ensure_indexes = AsyncMock(return_value={})
    proxy.list_file_paths = AsyncMock(return_value=[])
    proxy.search = AsyncMock(return_value=[])
    proxy.search_by_vector = AsyncMock(return_value=[])
    return proxy


def _small_chunk_cache() -> SegmenterCache:
    return SegmenterCache(
        Segmenter(SegmenterConfig(max_chunk_size=40, max_sentence_chars=40, min_sentence_chars=10))
    )


def _sentences(count: int) -> str:
    # each paragraph is one chunk at a 40-character limit
    return "\n\n".join(f"Sentence number {i} of this note." for i in range(count))


class TestIndexingService:
    """Batching and failure bookkeeping."""

    @pytest.mark.asyncio
    async def test_batches_never_split_a_document(self) -> None:
        source = DictSource({"a.md": _sentences(3), "b.md": _sentences(3), "c.md": _sentences(1)})
        proxy = _proxy()
        cache = _small_chunk_cache()
        service = IndexingService(proxy, source, cache, bulk_batch_size=4)

        report = await service.index_all()

        batches = [call.args[0] for call in proxy.bulk_upsert_chunks.await_args_list]
        per_batch_paths = [sorted({chunk.file_path for chunk in batch}) for batch in batches]
        assert per_batch_paths == [["a.md"], ["b.md", "c.md"]]
        assert report.succeeded == ["a.md", "b.md", "c.md"]
        assert report.vectors_processed == 7

    @pytest.mark.asyncio
    async def test_oversized_document_sent_alone(self) -> None:
        source = DictSource({"big.md": _sentences(5)})
        proxy = _proxy()
        cache = _small_chunk_cache()
        service = IndexingService(proxy, source, cache, bulk_batch_size=2)

        report = await service.index_all()

        proxy.bulk_upsert_chunks.assert_awaited_once()
        assert report.vectors_processed == 5

    @pytest.mark.asyncio
    async def test_no_documents(self) -> None:
        proxy = _proxy()
        report = await IndexingService(proxy, DictSource({}), SegmenterCache()).index_all()
        assert report.total == 0
        proxy.bulk_upsert_chunks.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transport_errors_abort(self) -> None:
        proxy = _proxy()
        proxy.bulk_upsert_chunks.side_effect = WorkerTerminatedError("gone")
        service = IndexingService(proxy, DictSource({"a.md": "Text."}), SegmenterCache())
        with pytest.raises(WorkerTerminatedError):
            await service.index_all()

    @pytest.mark.asyncio
    async def test_rebuild_defers_then_builds(self) -> None:
        proxy = _proxy()
        progress: list[str] = []
        service = IndexingService(proxy, DictSource({"a.md": "Text."}), SegmenterCache())

        await service.rebuild(progress.append)

        proxy.rebuild.assert_awaited_once_with(defer_ann=True)
        proxy.ensure_indexes.assert_awaited_once()
        assert progress[0] == "Clearing index"
        assert progress[-1] == "Building search index"

    @pytest.mark.asyncio
    async def test_prune_removes_unlisted(self) -> None:
        proxy = _proxy()
        proxy.list_file_paths.return_value = ["a.md", "old.md", "older.md"]
        service = IndexingService(proxy, DictSource({"a.md": "Text."}), SegmenterCache())

        assert await service.prune() == 2
        deleted = [call.args[0] for call in proxy.delete_by_file_path.await_args_list]
        assert deleted == ["old.md", "older.md"]

    @pytest.mark.asyncio
    async def test_rename_does_not_reembed(self) -> None:
        proxy = _proxy()
        service = IndexingService(proxy, DictSource({}), SegmenterCache())
        assert await service.rename_document("a.md", "b.md") == 2
        proxy.update_file_path.assert_awaited_once_with("a.md", "b.md")
        proxy.upsert_chunks.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_index_document_missing_file_raises(self) -> None:
        service = IndexingService(_proxy(), DictSource({}), SegmenterCache())
        with pytest.raises(FileNotFoundError):
            await service.index_document("missing.md")


class TestQueryService:
    """Validation and snippet handling."""

    @pytest.mark.asyncio
    async def test_search_strips_inputs(self) -> None:
        proxy = _proxy()
        service = QueryService(proxy, DictSource({}), SegmenterCache())

        await service.search("  cats  ", "  ", limit=3, ef_search=100)
        proxy.search.assert_awaited_once_with("cats", None, 3, ef_search=100)

        proxy.search.reset_mock()
        await service.search("cats", " dogs ")
        proxy.search.assert_awaited_once_with("cats", "dogs", 10, ef_search=None)

    @pytest.mark.asyncio
    async def test_search_by_vector_validates_limit(self) -> None:
        service = QueryService(_proxy(), DictSource({}), SegmenterCache())
        with pytest.raises(InvalidQueryError):
            await service.search_by_vector(np.ones(4, dtype="float32"), limit=0)

    def test_attach_snippets_reads_current_text(self) -> None:
        source = DictSource({"a.md": "Intro line.\nThe   matching\nchunk here."})
        service = QueryService(_proxy(), source, SegmenterCache())
        hit = SearchHit(
            id=1, file_path="a.md", chunk_offset_start=12, chunk_offset_end=38, distance=0.1, text="old"
        )

        service.attach_snippets([hit])

        assert hit.snippet == "The matching chunk here."

    def test_attach_snippets_truncates(self) -> None:
        source = DictSource({"a.md": "word " * 100})
        service = QueryService(_proxy(), source, SegmenterCache())
        hit = SearchHit(id=1, file_path="a.md", chunk_offset_start=0, chunk_offset_end=500, distance=0.0)

        service.attach_snippets([hit], max_chars=20)

        assert hit.snippet == "word word word word…"
