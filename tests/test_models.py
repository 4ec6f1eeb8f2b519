"""Tests for core data models."""

from __future__ import annotations

import pytest

from notefinder.errors import (
    IndexNotReadyError,
    InvalidQueryError,
    RebuildError,
    RequestTimeoutError,
    SchemaMismatchError,
    WorkerRequestError,
)
from notefinder.models import (
    Chunk,
    ChunkPayload,
    IndexReport,
    IndexSchemaState,
    SearchHit,
    chunk_payloads,
)
from notefinder.transport.protocol import MessageType, Response, error_from_payload


class TestChunkPayload:
    """Test ChunkPayload conversions."""

    def test_from_chunk(self) -> None:
        """Should carry the chunk's original offsets."""
        chunk = Chunk(text="Hello there.", original_start=12, original_end=24, contributing_segment_ids=[0])
        payload = ChunkPayload.from_chunk("notes/a.md", chunk)

        assert payload == ChunkPayload("notes/a.md", 12, 24, "Hello there.")

    def test_payload_round_trip(self) -> None:
        """Should survive conversion to a JSON-style dict."""
        payload = ChunkPayload("a.md", 0, 5, "Hello")
        assert ChunkPayload.from_payload(payload.to_payload()) == payload

    def test_chunk_payloads(self) -> None:
        """Should keep chunk order."""
        chunks = [Chunk("One.", 0, 4), Chunk("Two.", 5, 9)]
        assert [p.chunk_offset_start for p in chunk_payloads("a.md", chunks)] == [0, 5]


class TestSearchHit:
    """Test SearchHit serialisation."""

    def test_snippet_not_serialised(self) -> None:
        """Should leave the snippet out of the transport payload."""
        hit = SearchHit(id=3, file_path="a.md", chunk_offset_start=0, chunk_offset_end=4, distance=0.25, snippet="x")
        data = hit.to_payload()

        assert "snippet" not in data
        restored = SearchHit.from_payload(data)
        assert restored.distance == 0.25
        assert restored.snippet is None


class TestIndexSchemaState:
    """Test IndexSchemaState.is_operational."""

    def test_operational(self) -> None:
        """Should need matching dimensions, columns and ANN index."""
        state = IndexSchemaState(exists=True, dimensions=256, has_required_columns=True, has_ann_index=True)
        assert state.is_operational(256)
        assert not state.is_operational(128)

    def test_missing_ann_index(self) -> None:
        """Should not be operational without the ANN index."""
        state = IndexSchemaState(exists=True, dimensions=256, has_required_columns=True)
        assert not state.is_operational(256)


class TestIndexReport:
    """Test IndexReport bookkeeping."""

    def test_total(self) -> None:
        """Should count every outcome."""
        report = IndexReport(succeeded=["a.md"], skipped=["b.md"])
        report.record_failure("c.md", OSError("denied"))

        assert report.total == 3
        assert report.failed == [("c.md", "denied")]


class TestErrorPayloads:
    """Errors crossing the transport keep their meaning."""

    @pytest.mark.parametrize(
        "error_cls",
        [SchemaMismatchError, IndexNotReadyError, RebuildError, InvalidQueryError],
    )
    def test_portable_errors(self, error_cls: type) -> None:
        """Should rebuild the original error class."""
        response = Response.error("id-1", error_cls("boom"))
        assert response.type is MessageType.ERROR

        restored = error_from_payload(response.payload)
        assert type(restored) is error_cls
        assert str(restored) == "boom"

    def test_other_errors_become_request_errors(self) -> None:
        """Should wrap anything else in WorkerRequestError."""
        for exc in (RuntimeError("disk full"), RequestTimeoutError("late")):
            restored = error_from_payload(Response.error("id-2", exc).payload)
            assert isinstance(restored, WorkerRequestError)

    def test_needs_rebuild_flag(self) -> None:
        """Schema errors tell callers a rebuild is required."""
        assert SchemaMismatchError("x").needs_rebuild
        assert not hasattr(InvalidQueryError("x"), "needs_rebuild")
