"""Core NoteFinder data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np


@dataclass(slots=True)
class Chunk:
    """Segment of a document with offsets into the original text."""

    text: str
    original_start: int
    original_end: int
    contributing_segment_ids: List[int] = field(default_factory=list)


@dataclass(slots=True)
class ChunkPayload:
    """Chunk text addressed by file path, ready to be embedded and stored."""

    file_path: str
    chunk_offset_start: int
    chunk_offset_end: int
    text: str

    @classmethod
    def from_chunk(cls, file_path: str, chunk: Chunk) -> "ChunkPayload":
        return cls(
            file_path=file_path,
            chunk_offset_start=chunk.original_start,
            chunk_offset_end=chunk.original_end,
            text=chunk.text,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "file_path": self.file_path,
            "chunk_offset_start": self.chunk_offset_start,
            "chunk_offset_end": self.chunk_offset_end,
            "text": self.text,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ChunkPayload":
        return cls(
            file_path=str(data["file_path"]),
            chunk_offset_start=int(data["chunk_offset_start"]),
            chunk_offset_end=int(data["chunk_offset_end"]),
            text=str(data["text"]),
        )


@dataclass(slots=True)
class VectorRecord:
    """Embedded chunk as stored in the vector index."""

    file_path: str
    chunk_offset_start: int
    chunk_offset_end: int
    embedding: np.ndarray
    text: Optional[str] = None
    id: Optional[int] = None


@dataclass(slots=True)
class SearchHit:
    """Single ranked match. Lower distance means more similar."""

    id: int
    file_path: str
    chunk_offset_start: int
    chunk_offset_end: int
    distance: float
    text: Optional[str] = None
    snippet: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_path": self.file_path,
            "chunk_offset_start": self.chunk_offset_start,
            "chunk_offset_end": self.chunk_offset_end,
            "distance": self.distance,
            "text": self.text,
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "SearchHit":
        return cls(
            id=int(data["id"]),
            file_path=str(data["file_path"]),
            chunk_offset_start=int(data["chunk_offset_start"]),
            chunk_offset_end=int(data["chunk_offset_end"]),
            distance=float(data["distance"]),
            text=data.get("text"),
        )


@dataclass(slots=True)
class IndexSchemaState:
    """What the storage layer found on disk."""

    exists: bool
    dimensions: Optional[int] = None
    has_required_columns: bool = False
    has_ann_index: bool = False

    def is_operational(self, dimensions: int) -> bool:
        return (
            self.exists
            and self.dimensions == dimensions
            and self.has_required_columns
            and self.has_ann_index
        )


class EventKind(str, Enum):
    CHANGED = "changed"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(slots=True)
class DocumentEvent:
    """Change notification from the document source."""

    kind: EventKind
    path: str
    old_path: Optional[str] = None


@dataclass(slots=True)
class DocumentIndexResult:
    vectors_processed: int = 0
    vectors_deleted: int = 0


@dataclass(slots=True)
class IndexReport:
    """Outcome of a whole-corpus indexing pass."""

    succeeded: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    vectors_processed: int = 0

    def record_failure(self, path: str, error: BaseException | str) -> None:
        self.failed.append((path, str(error)))

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.skipped)


def chunk_payloads(file_path: str, chunks: Sequence[Chunk]) -> List[ChunkPayload]:
    return [ChunkPayload.from_chunk(file_path, chunk) for chunk in chunks]
