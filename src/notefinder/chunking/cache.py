"""Content-addressed cache in front of the segmenter."""

from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List

from notefinder.chunking.segmenter import Segmenter
from notefinder.models import Chunk

LOGGER = logging.getLogger(__name__)

MAX_CACHE_SIZE = 100
CACHE_TTL_SECONDS = 5 * 60.0


@dataclass(slots=True)
class _CacheEntry:
    chunks: List[Chunk]
    timestamp: float


def content_key(document: str) -> str:
    return hashlib.sha256(document.encode("utf-8")).hexdigest()


class SegmenterCache:
    """Memoises segmentation results by SHA-256 of the document content.

    Callers always receive deep copies, so mutating a returned chunk never
    leaks into later hits. Expired entries are dropped lazily after each miss;
    there is no background timer.
    """

    def __init__(
        self,
        segmenter: Segmenter | None = None,
        *,
        max_size: int = MAX_CACHE_SIZE,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.segmenter = segmenter or Segmenter()
        self.max_size = max_size
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, key: str) -> List[Chunk] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.timestamp > self.ttl:
            return None
        return copy.deepcopy(entry.chunks)

    async def segment(self, document: str) -> List[Chunk]:
        key = content_key(document)
        cached = self._lookup(key)
        if cached is not None:
            LOGGER.debug("Segment cache hit for %s", key[:12])
            return cached

        chunks = await asyncio.to_thread(self.segmenter.segment, document)
        self._entries[key] = _CacheEntry(copy.deepcopy(chunks), self._clock())
        self._cleanup()
        return chunks

    def _cleanup(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now - entry.timestamp > self.ttl]
        for key in expired:
            del self._entries[key]

        overflow = len(self._entries) - self.max_size
        if overflow > 0:
            oldest = sorted(self._entries, key=lambda key: self._entries[key].timestamp)
            for key in oldest[:overflow]:
                del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()
