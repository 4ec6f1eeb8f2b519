"""Document indexing pipeline."""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from notefinder.chunking.cache import SegmenterCache
from notefinder.models import (
    ChunkPayload,
    DocumentEvent,
    DocumentIndexResult,
    EventKind,
    IndexReport,
    chunk_payloads,
)
from notefinder.sources import DocumentSource
from notefinder.transport.proxy import WorkerProxy

LOGGER = logging.getLogger(__name__)

ProgressSink = Callable[[str], None]

DEFAULT_BULK_BATCH_SIZE = 200


class IndexingService:
    """Keeps the vector index in step with a document source."""

    def __init__(
        self,
        proxy: WorkerProxy,
        source: DocumentSource,
        cache: SegmenterCache,
        *,
        bulk_batch_size: int = DEFAULT_BULK_BATCH_SIZE,
    ) -> None:
        self.proxy = proxy
        self.source = source
        self.cache = cache
        self.bulk_batch_size = max(1, bulk_batch_size)

    async def index_all(self, progress: Optional[ProgressSink] = None) -> IndexReport:
        """Index every document the source lists.

        Documents that cannot be read or segmented are recorded in the report
        and skipped. Transport and schema errors abort the whole pass.
        """
        paths = self.source.list_documents()
        report = IndexReport()
        if not paths:
            LOGGER.warning("No documents found")
            return report

        batch: List[ChunkPayload] = []
        batch_paths: List[str] = []
        for position, path in enumerate(paths, start=1):
            try:
                content = self.source.read_document(path)
                chunks = await self.cache.segment(content)
            except (OSError, ValueError) as exc:
                LOGGER.warning("Skipping %s: %s", path, exc)
                report.record_failure(path, exc)
                continue

            if not chunks:
                LOGGER.debug("No indexable text in %s", path)
                await self.proxy.delete_by_file_path(path)
                report.skipped.append(path)
                continue

            payloads = chunk_payloads(path, chunks)
            # A document's chunks always travel together: the backend replaces
            # all rows of a path per request.
            if batch and len(batch) + len(payloads) > self.bulk_batch_size:
                await self._flush(batch, batch_paths, report)
                batch, batch_paths = [], []
            batch.extend(payloads)
            batch_paths.append(path)

            if progress is not None:
                progress(f"Segmented {position}/{len(paths)}: {path}")

        if batch:
            await self._flush(batch, batch_paths, report)

        LOGGER.info(
            "Indexed %d documents (%d vectors), %d failed, %d skipped",
            len(report.succeeded),
            report.vectors_processed,
            len(report.failed),
            len(report.skipped),
        )
        return report

    async def _flush(
        self, batch: List[ChunkPayload], batch_paths: List[str], report: IndexReport
    ) -> None:
        count = await self.proxy.bulk_upsert_chunks(batch)
        LOGGER.debug("Stored %d vectors for %d documents", count, len(batch_paths))
        report.succeeded.extend(batch_paths)
        report.vectors_processed += count

    async def index_document(self, path: str, content: str | None = None) -> DocumentIndexResult:
        """Re-index one document. Errors propagate to the caller."""
        if content is None:
            content = self.source.read_document(path)
        chunks = await self.cache.segment(content)
        if not chunks:
            deleted = await self.proxy.delete_by_file_path(path)
            return DocumentIndexResult(vectors_deleted=deleted)
        count = await self.proxy.upsert_chunks(chunk_payloads(path, chunks))
        LOGGER.debug("Indexed %s (%d vectors)", path, count)
        return DocumentIndexResult(vectors_processed=count)

    async def delete_document(self, path: str) -> int:
        deleted = await self.proxy.delete_by_file_path(path)
        LOGGER.debug("Deleted %d vectors of %s", deleted, path)
        return deleted

    async def rename_document(self, old_path: str, new_path: str) -> int:
        """Point stored vectors at the new path; content is not re-embedded."""
        return await self.proxy.update_file_path(old_path, new_path)

    async def handle_event(self, event: DocumentEvent) -> DocumentIndexResult:
        if event.kind is EventKind.CHANGED:
            return await self.index_document(event.path)
        if event.kind is EventKind.DELETED:
            return DocumentIndexResult(vectors_deleted=await self.delete_document(event.path))
        if event.kind is EventKind.RENAMED:
            if event.old_path is None:
                raise ValueError("Rename event without old_path")
            moved = await self.rename_document(event.old_path, event.path)
            return DocumentIndexResult(vectors_processed=moved)
        raise ValueError(f"Unknown event kind: {event.kind}")

    async def rebuild(self, progress: Optional[ProgressSink] = None) -> IndexReport:
        """Drop the index, re-index everything, then build the ANN graph once."""
        if progress is not None:
            progress("Clearing index")
        await self.proxy.rebuild(defer_ann=True)
        report = await self.index_all(progress)
        if progress is not None:
            progress("Building search index")
        await self.proxy.ensure_indexes()
        return report

    async def prune(self) -> int:
        """Remove vectors of documents the source no longer lists."""
        current = set(self.source.list_documents())
        removed = 0
        for path in await self.proxy.list_file_paths():
            if path in current:
                continue
            await self.proxy.delete_by_file_path(path)
            removed += 1
        LOGGER.info("Pruned %d documents", removed)
        return removed
