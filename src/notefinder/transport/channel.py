"""Channels carry requests to the backend and responses back to the event loop."""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from typing import Callable, Optional, Protocol

from notefinder.errors import WorkerTerminatedError
from notefinder.transport.backend import Backend
from notefinder.transport.protocol import MessageType, Request, Response

LOGGER = logging.getLogger(__name__)

OnMessage = Callable[[Response], None]
OnFailure = Callable[[BaseException], None]

_STOP = object()


class Channel(Protocol):
    def start(
        self, loop: asyncio.AbstractEventLoop, on_message: OnMessage, on_failure: OnFailure
    ) -> None: ...

    def post(self, request: Request) -> None: ...

    def terminate(self) -> None: ...

    def join(self, timeout: float | None = None) -> None: ...


class ThreadChannel:
    """Runs a :class:`Backend` on one dedicated thread.

    Requests are queued and handled strictly in posting order; each response
    is handed to the event loop with ``call_soon_threadsafe``. If the backend
    loop dies, ``on_failure`` is scheduled instead. :meth:`terminate` discards
    requests still waiting in the queue; only the one already running finishes.
    """

    def __init__(
        self,
        backend_factory: Callable[[], Backend] = Backend,
        *,
        name: str = "notefinder-backend",
    ) -> None:
        self._backend_factory = backend_factory
        self._name = name
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_message: Optional[OnMessage] = None
        self._on_failure: Optional[OnFailure] = None
        self._terminated = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._terminated

    def start(
        self, loop: asyncio.AbstractEventLoop, on_message: OnMessage, on_failure: OnFailure
    ) -> None:
        if self._thread is not None:
            raise RuntimeError("Channel already started")
        self._loop = loop
        self._on_message = on_message
        self._on_failure = on_failure
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def post(self, request: Request) -> None:
        if self._terminated or self._thread is None:
            raise WorkerTerminatedError("Backend channel is not running")
        self._queue.put(request)

    def terminate(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
            dropped += 1
        if dropped:
            LOGGER.debug("Dropped %d queued backend requests", dropped)
        self._queue.put(_STOP)

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _deliver(self, callback: Callable[..., None], value: object) -> None:
        assert self._loop is not None
        try:
            self._loop.call_soon_threadsafe(callback, value)
        except RuntimeError:
            # Event loop already closed; nobody is waiting any more.
            LOGGER.debug("Dropping backend message, event loop is closed")

    def _run(self) -> None:
        backend: Optional[Backend] = None
        try:
            backend = self._backend_factory()
            while True:
                item = self._queue.get()
                if item is _STOP or self._terminated:
                    break
                assert isinstance(item, Request)
                response = backend.handle(item)
                assert self._on_message is not None
                self._deliver(self._on_message, response)
        except Exception as exc:
            LOGGER.exception("Backend thread crashed")
            assert self._on_failure is not None
            self._deliver(self._on_failure, exc)
        finally:
            if backend is not None and backend.initialized:
                backend.handle(Request(type=MessageType.CLOSE))
