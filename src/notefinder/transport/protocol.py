"""Messages exchanged between the coordinator and the backend.

Payloads are plain JSON-compatible values with snake_case keys; vectors
travel as lists of floats.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Type

from notefinder.errors import (
    IndexNotReadyError,
    InvalidQueryError,
    NoteFinderError,
    RebuildError,
    SchemaMismatchError,
    WorkerRequestError,
)


class MessageType(str, Enum):
    INITIALIZE = "initialize"
    EMBED_SENTENCES = "embedSentences"
    UPSERT_CHUNKS = "upsertChunks"
    BULK_UPSERT_CHUNKS = "bulkUpsertChunks"
    SEARCH = "search"
    SEARCH_BY_VECTOR = "searchByVector"
    REBUILD = "rebuild"
    ENSURE_INDEXES = "ensureIndexes"
    DELETE_BY_FILE_PATH = "deleteByFilePath"
    UPDATE_FILE_PATH = "updateFilePath"
    GET_VECTORS_BY_FILE_PATH = "getVectorsByFilePath"
    AVERAGE_VECTORS = "averageVectors"
    LIST_FILE_PATHS = "listFilePaths"
    STATS = "stats"
    CLOSE = "close"
    ERROR = "error"


def new_request_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class Request:
    type: MessageType
    payload: Any = None
    id: str = field(default_factory=new_request_id)


@dataclass(slots=True)
class Response:
    id: str
    type: MessageType
    payload: Any = None

    @property
    def is_error(self) -> bool:
        return self.type is MessageType.ERROR

    @classmethod
    def error(cls, request_id: str, exc: BaseException) -> "Response":
        return cls(
            id=request_id,
            type=MessageType.ERROR,
            payload={"message": str(exc) or exc.__class__.__name__, "kind": exc.__class__.__name__},
        )


# Errors that keep their class across the thread boundary so callers can
# tell "needs rebuild" and "bad input" apart from generic failures.
_PORTABLE_ERRORS: Dict[str, Type[NoteFinderError]] = {
    cls.__name__: cls
    for cls in (SchemaMismatchError, IndexNotReadyError, RebuildError, InvalidQueryError)
}


def error_from_payload(payload: Optional[Dict[str, Any]]) -> NoteFinderError:
    payload = payload or {}
    message = str(payload.get("message", "Unknown backend error"))
    error_cls = _PORTABLE_ERRORS.get(str(payload.get("kind")), WorkerRequestError)
    return error_cls(message)
