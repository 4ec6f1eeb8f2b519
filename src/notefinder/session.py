"""Wires the backend channel, proxy, cache and services together."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from notefinder.chunking.cache import SegmenterCache
from notefinder.chunking.segmenter import Segmenter
from notefinder.config import AppConfig
from notefinder.services.indexing import IndexingService
from notefinder.services.query import QueryService
from notefinder.sources import DocumentSource, FileSystemSource
from notefinder.transport.backend import Backend
from notefinder.transport.channel import Channel, ThreadChannel
from notefinder.transport.proxy import WorkerProxy

LOGGER = logging.getLogger(__name__)


class Session:
    """Everything one process needs to index and query a corpus.

    Use ``async with Session.open(config) as session`` or call
    :meth:`close` explicitly; the backend thread keeps the database open
    until then.
    """

    def __init__(
        self,
        config: AppConfig,
        proxy: WorkerProxy,
        source: DocumentSource,
        cache: SegmenterCache,
    ) -> None:
        self.config = config
        self.proxy = proxy
        self.source = source
        self.cache = cache
        self.indexing = IndexingService(
            proxy, source, cache, bulk_batch_size=config.bulk_batch_size
        )
        self.query = QueryService(proxy, source, cache)

    @classmethod
    def open(
        cls,
        config: AppConfig,
        *,
        source: Optional[DocumentSource] = None,
        channel: Optional[Channel] = None,
        backend_factory: Callable[[], Backend] = Backend,
        base_dir: Path | None = None,
        force: bool = False,
    ) -> "Session":
        """Start the backend and dispatch initialisation. Needs a running loop."""
        payload: Dict[str, Any] = config.backend_payload(base_dir or Path.cwd())
        payload["force"] = force
        proxy = WorkerProxy(
            channel or ThreadChannel(backend_factory),
            payload,
            timeouts=config.request_timeouts(),
        )
        cache = SegmenterCache(
            Segmenter(config.segmenter_config()),
            max_size=config.cache_size,
            ttl=config.cache_ttl,
        )
        LOGGER.debug("Session opened for %s", payload["db_path"])
        return cls(config, proxy, source or FileSystemSource(config.root), cache)

    async def ready(self) -> Dict[str, Any]:
        return await self.proxy.ensure_initialized()

    async def close(self) -> None:
        await self.proxy.aclose()
        await self.proxy.wait_closed()
        self.cache.clear()

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
