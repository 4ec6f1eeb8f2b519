"""Coordinator side of the transport.

:class:`WorkerProxy` turns request/response messages into awaitable calls.
Every request gets a fresh correlation id and a pending entry before it is
posted, so responses may arrive in any order. Timeouts are per request and
only ever fail the request they belong to.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from notefinder.errors import (
    NoteFinderError,
    RequestTimeoutError,
    TransportError,
    WorkerInitializationError,
    WorkerTerminatedError,
)
from notefinder.models import ChunkPayload, SearchHit
from notefinder.transport.channel import Channel
from notefinder.transport.protocol import MessageType, Request, Response, error_from_payload

LOGGER = logging.getLogger(__name__)


class ChannelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    TERMINATED = "terminated"


@dataclass(slots=True)
class RequestTimeouts:
    """Per-request deadlines in seconds."""

    initialize: float = 30 * 60.0
    default: float = 10 * 60.0
    bulk: float = 30 * 60.0
    search: float = 60.0

    def for_type(self, message_type: MessageType) -> float:
        if message_type is MessageType.INITIALIZE:
            return self.initialize
        if message_type in (MessageType.BULK_UPSERT_CHUNKS, MessageType.REBUILD, MessageType.ENSURE_INDEXES):
            return self.bulk
        if message_type in (MessageType.SEARCH, MessageType.SEARCH_BY_VECTOR):
            return self.search
        return self.default


@dataclass(slots=True)
class _Pending:
    future: "asyncio.Future[Any]"
    timeout_handle: asyncio.TimerHandle
    type: MessageType


class WorkerProxy:
    """Awaitable facade over a backend :class:`Channel`.

    Must be constructed inside a running event loop: the channel is started
    and ``initialize`` dispatched immediately. Operational calls wait for that
    single shared initialisation; if it fails the proxy drops back to
    ``UNINITIALIZED`` and the next call retries.
    """

    def __init__(
        self,
        channel: Channel,
        init_payload: Dict[str, Any],
        *,
        timeouts: RequestTimeouts | None = None,
    ) -> None:
        self._loop = asyncio.get_running_loop()
        self._channel = channel
        self._init_payload = init_payload
        self.timeouts = timeouts or RequestTimeouts()
        self.state = ChannelState.UNINITIALIZED
        self.init_result: Optional[Dict[str, Any]] = None
        self._pending: Dict[str, _Pending] = {}
        self._init_task: Optional["asyncio.Task[Dict[str, Any]]"] = None

        self._channel.start(self._loop, self._on_message, self._on_failure)
        self._start_initialization()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -- initialisation ---------------------------------------------------

    def _start_initialization(self) -> "asyncio.Task[Dict[str, Any]]":
        self.state = ChannelState.INITIALIZING
        task = self._loop.create_task(self._initialize())
        task.add_done_callback(_consume_exception)
        self._init_task = task
        return task

    async def _initialize(self) -> Dict[str, Any]:
        try:
            result = await self._request(
                MessageType.INITIALIZE, self._init_payload, timeout=self.timeouts.initialize
            )
        except NoteFinderError as exc:
            if self.state is not ChannelState.TERMINATED:
                self.state = ChannelState.UNINITIALIZED
            self._init_task = None
            LOGGER.error("Backend initialisation failed: %s", exc)
            raise WorkerInitializationError(f"Backend initialisation failed: {exc}") from exc
        self.init_result = result
        self.state = ChannelState.READY
        LOGGER.info("Backend initialised")
        return result

    async def ensure_initialized(self) -> Dict[str, Any]:
        if self.state is ChannelState.TERMINATED:
            raise WorkerTerminatedError("Backend has been terminated")
        task = self._init_task
        if task is None:
            task = self._start_initialization()
        # shield: one caller giving up must not cancel everybody's initialisation
        return await asyncio.shield(task)

    # -- request plumbing -------------------------------------------------

    async def call(
        self, message_type: MessageType, payload: Any = None, *, timeout: float | None = None
    ) -> Any:
        """Send one operational request once the backend is ready."""
        await self.ensure_initialized()
        return await self._request(message_type, payload, timeout=timeout)

    async def _request(
        self, message_type: MessageType, payload: Any, *, timeout: float | None
    ) -> Any:
        if self.state is ChannelState.TERMINATED:
            raise WorkerTerminatedError("Backend has been terminated")

        request = Request(type=message_type, payload=payload)
        seconds = timeout if timeout is not None else self.timeouts.for_type(message_type)
        future: "asyncio.Future[Any]" = self._loop.create_future()
        handle = self._loop.call_later(seconds, self._on_timeout, request.id, seconds)
        self._pending[request.id] = _Pending(future, handle, message_type)

        try:
            self._channel.post(request)
        except TransportError:
            self._discard(request.id)
            raise
        except Exception as exc:
            self._discard(request.id)
            raise WorkerTerminatedError(f"Could not post {message_type.value}: {exc}") from exc

        try:
            return await future
        except asyncio.CancelledError:
            self._discard(request.id)
            raise

    def _discard(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timeout_handle.cancel()

    def _on_message(self, response: Response) -> None:
        pending = self._pending.pop(response.id, None)
        if pending is None:
            LOGGER.warning("Dropping response %s (%s) with no pending request", response.id, response.type.value)
            return
        pending.timeout_handle.cancel()
        if pending.future.done():
            return
        if response.is_error:
            pending.future.set_exception(error_from_payload(response.payload))
        else:
            pending.future.set_result(response.payload)

    def _on_timeout(self, request_id: str, seconds: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        LOGGER.warning("%s request %s timed out after %.0fs", pending.type.value, request_id, seconds)
        pending.future.set_exception(
            RequestTimeoutError(f"{pending.type.value} timed out after {seconds:.0f}s")
        )

    def _fail_all(self, error_message: str) -> None:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            entry.timeout_handle.cancel()
            if not entry.future.done():
                entry.future.set_exception(WorkerTerminatedError(error_message))

    def _on_failure(self, exc: BaseException) -> None:
        LOGGER.error("Backend channel failed: %s", exc)
        self.state = ChannelState.TERMINATED
        self._init_task = None
        self._fail_all(f"Backend failed: {exc}")

    def terminate(self) -> None:
        """Stop the backend and fail every pending request. Safe to call twice."""
        if self.state is ChannelState.TERMINATED:
            return
        self.state = ChannelState.TERMINATED
        self._init_task = None
        self._fail_all("Backend terminated")
        self._channel.terminate()
        LOGGER.debug("Backend terminated")

    async def aclose(self, timeout: float = 10.0) -> None:
        """Ask the backend to close its resources, then terminate."""
        if self.state is ChannelState.READY:
            try:
                await self._request(MessageType.CLOSE, None, timeout=timeout)
            except TransportError as exc:
                LOGGER.warning("Backend close failed: %s", exc)
        self.terminate()

    async def wait_closed(self, timeout: float = 10.0) -> None:
        """Wait for the backend to finish the request it was running when terminated."""
        await asyncio.to_thread(self._channel.join, timeout)

    # -- typed operations -------------------------------------------------

    async def embed_sentences(self, texts: Sequence[str]) -> np.ndarray:
        result = await self.call(MessageType.EMBED_SENTENCES, {"texts": list(texts)})
        return np.asarray(result["vectors"], dtype="float32")

    async def upsert_chunks(self, chunks: Sequence[ChunkPayload]) -> int:
        result = await self.call(
            MessageType.UPSERT_CHUNKS, {"chunks": [chunk.to_payload() for chunk in chunks]}
        )
        return int(result["count"])

    async def bulk_upsert_chunks(self, chunks: Sequence[ChunkPayload]) -> int:
        result = await self.call(
            MessageType.BULK_UPSERT_CHUNKS, {"chunks": [chunk.to_payload() for chunk in chunks]}
        )
        return int(result["count"])

    async def search(
        self,
        query: str,
        negative_query: str | None = None,
        limit: int = 10,
        *,
        ef_search: int | None = None,
        exclude_file_paths: Sequence[str] = (),
    ) -> List[SearchHit]:
        result = await self.call(
            MessageType.SEARCH,
            {
                "query": query,
                "negative_query": negative_query,
                "limit": limit,
                "ef_search": ef_search,
                "exclude_file_paths": list(exclude_file_paths),
            },
        )
        return [SearchHit.from_payload(item) for item in result["hits"]]

    async def search_by_vector(
        self,
        vector: np.ndarray,
        limit: int = 10,
        *,
        ef_search: int | None = None,
        exclude_file_paths: Sequence[str] = (),
    ) -> List[SearchHit]:
        result = await self.call(
            MessageType.SEARCH_BY_VECTOR,
            {
                "vector": np.asarray(vector, dtype="float32").tolist(),
                "limit": limit,
                "ef_search": ef_search,
                "exclude_file_paths": list(exclude_file_paths),
            },
        )
        return [SearchHit.from_payload(item) for item in result["hits"]]

    async def rebuild(self, *, defer_ann: bool = False) -> Dict[str, Any]:
        return await self.call(MessageType.REBUILD, {"defer_ann": defer_ann})

    async def ensure_indexes(self) -> Dict[str, Any]:
        return await self.call(MessageType.ENSURE_INDEXES, {})

    async def delete_by_file_path(self, file_path: str) -> int:
        result = await self.call(MessageType.DELETE_BY_FILE_PATH, {"file_path": file_path})
        return int(result["count"])

    async def update_file_path(self, old_path: str, new_path: str) -> int:
        result = await self.call(
            MessageType.UPDATE_FILE_PATH, {"old_path": old_path, "new_path": new_path}
        )
        return int(result["count"])

    async def get_vectors_by_file_path(self, file_path: str) -> np.ndarray:
        result = await self.call(MessageType.GET_VECTORS_BY_FILE_PATH, {"file_path": file_path})
        return np.asarray(result["vectors"], dtype="float32")

    async def average_vectors(self, vectors: np.ndarray) -> np.ndarray:
        result = await self.call(
            MessageType.AVERAGE_VECTORS, {"vectors": np.asarray(vectors, dtype="float32").tolist()}
        )
        return np.asarray(result["vector"], dtype="float32")

    async def list_file_paths(self) -> List[str]:
        result = await self.call(MessageType.LIST_FILE_PATHS, {})
        return list(result["file_paths"])

    async def stats(self) -> Dict[str, Any]:
        return await self.call(MessageType.STATS, {})


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Initialisation errors are re-raised to every awaiting caller; this only
    # keeps asyncio from reporting them again when nobody was waiting.
    if not task.cancelled():
        task.exception()
