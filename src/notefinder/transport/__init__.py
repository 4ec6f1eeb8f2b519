"""Request/response transport between the coordinator and the backend thread."""

from notefinder.transport.backend import Backend
from notefinder.transport.channel import Channel, ThreadChannel
from notefinder.transport.protocol import MessageType, Request, Response
from notefinder.transport.proxy import ChannelState, RequestTimeouts, WorkerProxy

__all__ = [
    "Backend",
    "Channel",
    "ChannelState",
    "MessageType",
    "Request",
    "RequestTimeouts",
    "Response",
    "ThreadChannel",
    "WorkerProxy",
]
