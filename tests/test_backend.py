"""Tests for the Backend message handler."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any
from unittest.mock import patch

import numpy as np
import pytest

from conftest import FAKE_DIMENSIONS, FakeEmbedder, fake_vector, make_backend
from notefinder.embedding.encoder import subtract_negative
from notefinder.index.storage import SQLiteVectorIndex
from notefinder.transport.backend import Backend
from notefinder.transport.protocol import MessageType, Request, Response


class ClosableEmbedder(FakeEmbedder):
    def __init__(self) -> None:
        super().__init__()
        self.closed = False

    def close(self) -> None:
        self.closed = True


def _send(backend: Backend, message_type: MessageType, payload: Any = None) -> Response:
    return backend.handle(Request(type=message_type, payload=payload))


def _chunk(path: str, start: int, text: str) -> dict:
    return {
        "file_path": path,
        "chunk_offset_start": start,
        "chunk_offset_end": start + len(text),
        "text": text,
    }


@pytest.fixture
def backend(tmp_path: Path):
    backend = make_backend()
    response = _send(backend, MessageType.INITIALIZE, {"db_path": str(tmp_path / "db" / "index.db")})
    assert not response.is_error, response.payload
    yield backend
    _send(backend, MessageType.CLOSE)


class TestBackendLifecycle:
    """Initialisation and rejection of early requests."""

    def test_rejects_requests_before_initialize(self) -> None:
        backend = make_backend()
        response = _send(backend, MessageType.STATS)
        assert response.is_error
        assert "not initialised" in response.payload["message"]

    def test_initialize_reports_dimensions(self, tmp_path: Path) -> None:
        backend = make_backend()
        response = _send(backend, MessageType.INITIALIZE, {"db_path": str(tmp_path / "x.db")})
        assert response.type is MessageType.INITIALIZE
        assert response.payload["dimensions"] == FAKE_DIMENSIONS
        assert response.payload["ready"] is True
        assert response.payload["needs_rebuild"] is False
        assert backend.initialized

    def test_initialize_with_mismatched_schema_stays_up(self, tmp_path: Path) -> None:
        db_path = str(tmp_path / "x.db")
        first = make_backend()
        _send(first, MessageType.INITIALIZE, {"db_path": db_path})
        _send(first, MessageType.CLOSE)

        wider = Backend(embedder_factory=lambda config: FakeEmbedder(dimension=FAKE_DIMENSIONS * 2))
        response = _send(wider, MessageType.INITIALIZE, {"db_path": db_path})
        assert response.payload["needs_rebuild"] is True
        assert response.payload["ready"] is False

        search = _send(wider, MessageType.STATS)
        assert search.is_error
        assert search.payload["kind"] == "IndexNotReadyError"

        assert not _send(wider, MessageType.REBUILD, {}).is_error
        assert _send(wider, MessageType.STATS).payload["dimensions"] == FAKE_DIMENSIONS * 2

    def test_initialize_error_becomes_error_response(self, tmp_path: Path) -> None:
        def broken(config: Any) -> FakeEmbedder:
            raise OSError("model download failed")

        response = _send(Backend(embedder_factory=broken), MessageType.INITIALIZE, {"db_path": str(tmp_path / "x.db")})
        assert response.is_error
        assert "model download failed" in response.payload["message"]

    def test_corrupt_database_releases_embedder(self, tmp_path: Path) -> None:
        db_path = tmp_path / "x.db"
        db_path.write_bytes(b"this is not a sqlite database\n" * 10)
        embedder = ClosableEmbedder()

        response = _send(Backend(embedder_factory=lambda config: embedder), MessageType.INITIALIZE, {"db_path": str(db_path)})

        assert response.is_error
        assert embedder.closed

    def test_schema_error_releases_index_and_embedder(self, tmp_path: Path) -> None:
        embedder = ClosableEmbedder()
        backend = Backend(embedder_factory=lambda config: embedder)
        with patch.object(
            SQLiteVectorIndex, "ensure_schema", side_effect=sqlite3.DatabaseError("disk image is malformed")
        ), patch.object(SQLiteVectorIndex, "close", autospec=True) as mock_close:
            response = _send(backend, MessageType.INITIALIZE, {"db_path": str(tmp_path / "x.db")})

        assert response.is_error
        assert "malformed" in response.payload["message"]
        mock_close.assert_called_once()
        assert embedder.closed
        assert not backend.initialized

    def test_close_without_initialize(self) -> None:
        response = _send(make_backend(), MessageType.CLOSE)
        assert response.payload == {"closed": True}


class TestBackendOperations:
    """One handler per message type."""

    def test_embed_sentences(self, backend: Backend) -> None:
        response = _send(backend, MessageType.EMBED_SENTENCES, {"texts": ["a", "b"]})
        vectors = np.asarray(response.payload["vectors"], dtype="float32")
        assert vectors.shape == (2, FAKE_DIMENSIONS)
        np.testing.assert_allclose(vectors[0], fake_vector("a"), rtol=1e-6)

    def test_text_is_cleaned_before_embedding(self, backend: Backend) -> None:
        response = _send(backend, MessageType.EMBED_SENTENCES, {"texts": ["a\nb\x01"]})
        np.testing.assert_allclose(response.payload["vectors"][0], fake_vector("a b"), rtol=1e-6)

    def test_upsert_then_search(self, backend: Backend) -> None:
        chunks = [_chunk("a.md", 0, "cats sleep"), _chunk("b.md", 0, "dogs walk")]
        assert _send(backend, MessageType.UPSERT_CHUNKS, {"chunks": chunks}).payload == {"count": 2}

        response = _send(backend, MessageType.SEARCH, {"query": "dogs walk", "limit": 2})
        hits = response.payload["hits"]
        assert hits[0]["file_path"] == "b.md"
        assert hits[0]["text"] == "dogs walk"
        assert hits[0]["distance"] == pytest.approx(0.0, abs=1e-5)

    def test_bulk_upsert(self, backend: Backend) -> None:
        chunks = [_chunk(f"doc{i}.md", 0, f"text {i}") for i in range(5)]
        response = _send(backend, MessageType.BULK_UPSERT_CHUNKS, {"chunks": chunks})
        assert response.payload == {"count": 5}
        assert _send(backend, MessageType.LIST_FILE_PATHS).payload["file_paths"] == [
            f"doc{i}.md" for i in range(5)
        ]

    def test_empty_query_is_an_error(self, backend: Backend) -> None:
        response = _send(backend, MessageType.SEARCH, {"query": "  ", "limit": 3})
        assert response.is_error
        assert response.payload["kind"] == "InvalidQueryError"

    def test_negative_query_changes_query_vector(self, backend: Backend) -> None:
        chunks = [_chunk(f"doc{i}.md", 0, f"text {i}") for i in range(6)]
        _send(backend, MessageType.UPSERT_CHUNKS, {"chunks": chunks})

        steered = subtract_negative(fake_vector("text 1"), fake_vector("text 2"))
        expected = _send(
            backend, MessageType.SEARCH_BY_VECTOR, {"vector": steered.tolist(), "limit": 3}
        ).payload["hits"]
        actual = _send(
            backend,
            MessageType.SEARCH,
            {"query": "text 1", "negative_query": "text 2", "limit": 3},
        ).payload["hits"]
        assert [hit["id"] for hit in actual] == [hit["id"] for hit in expected]

    def test_search_by_vector_with_exclusion(self, backend: Backend) -> None:
        chunks = [_chunk("a.md", 0, "one"), _chunk("b.md", 0, "two")]
        _send(backend, MessageType.UPSERT_CHUNKS, {"chunks": chunks})
        response = _send(
            backend,
            MessageType.SEARCH_BY_VECTOR,
            {"vector": fake_vector("one").tolist(), "limit": 5, "exclude_file_paths": ["a.md"]},
        )
        assert [hit["file_path"] for hit in response.payload["hits"]] == ["b.md"]

    def test_delete_and_rename(self, backend: Backend) -> None:
        _send(backend, MessageType.UPSERT_CHUNKS, {"chunks": [_chunk("a.md", 0, "one")]})
        renamed = _send(backend, MessageType.UPDATE_FILE_PATH, {"old_path": "a.md", "new_path": "c.md"})
        assert renamed.payload == {"count": 1}
        deleted = _send(backend, MessageType.DELETE_BY_FILE_PATH, {"file_path": "c.md"})
        assert deleted.payload == {"count": 1}

    def test_vectors_and_average(self, backend: Backend) -> None:
        chunks = [_chunk("a.md", 0, "one"), _chunk("a.md", 10, "two")]
        _send(backend, MessageType.UPSERT_CHUNKS, {"chunks": chunks})
        vectors = _send(backend, MessageType.GET_VECTORS_BY_FILE_PATH, {"file_path": "a.md"}).payload[
            "vectors"
        ]
        assert len(vectors) == 2

        average = np.asarray(
            _send(backend, MessageType.AVERAGE_VECTORS, {"vectors": vectors}).payload["vector"]
        )
        expected = fake_vector("one") + fake_vector("two")
        np.testing.assert_allclose(average, expected / np.linalg.norm(expected), rtol=1e-5)

    def test_deferred_rebuild_then_ensure_indexes(self, backend: Backend) -> None:
        assert _send(backend, MessageType.REBUILD, {"defer_ann": True}).payload == {"ann_deferred": True}
        _send(backend, MessageType.UPSERT_CHUNKS, {"chunks": [_chunk("a.md", 0, "one")]})
        stats = _send(backend, MessageType.ENSURE_INDEXES).payload
        assert stats["ann_ready"] is True
        assert stats["chunk_count"] == 1
