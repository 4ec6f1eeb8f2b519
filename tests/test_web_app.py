"""Tests for the FastAPI web application."""

from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from conftest import FAKE_DIMENSIONS, FakeEmbedder, make_backend
from notefinder.config import AppConfig
from notefinder.session import Session
from notefinder.transport.backend import Backend
from notefinder.web.app import create_app


def _session_factory(config: AppConfig) -> Session:
    return Session.open(config, backend_factory=make_backend)


@pytest.fixture
def client(app_config: AppConfig) -> Iterator[TestClient]:
    with TestClient(create_app(app_config, session_factory=_session_factory)) as test_client:
        yield test_client


@pytest.fixture
def indexed_client(client: TestClient) -> TestClient:
    response = client.post("/index", json={})
    assert response.status_code == 200
    return client


class TestSearchEndpoint:
    """Tests for POST /search endpoint."""

    def test_search_empty_query(self, client: TestClient) -> None:
        """Returns 400 for empty query."""
        response = client.post("/search", json={"query": "", "top_k": 10})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "InvalidQueryError"
        assert "check logs for detail" in body["detail"]

    def test_search_whitespace_query(self, client: TestClient) -> None:
        """Returns 400 for whitespace-only query."""
        response = client.post("/search", json={"query": "   "})
        assert response.status_code == 400

    def test_search_missing_query(self, client: TestClient) -> None:
        """Returns 422 when the body has no query."""
        response = client.post("/search", json={"top_k": 10})
        assert response.status_code == 422

    def test_search_returns_offsets_and_snippets(self, indexed_client: TestClient) -> None:
        """Returns hits ordered by distance with exact offsets."""
        response = indexed_client.post(
            "/search", json={"query": "Birds can fly. Some birds migrate.", "top_k": 2}
        )

        assert response.status_code == 200
        results = response.json()["results"]
        assert len(results) == 2
        top = results[0]
        assert top["file_path"] == "sub/birds.md"
        assert (top["chunk_offset_start"], top["chunk_offset_end"]) == (0, 34)
        assert top["snippet"] == "Birds can fly. Some birds migrate."
        assert results[0]["distance"] <= results[1]["distance"]

    def test_search_without_snippets(self, indexed_client: TestClient) -> None:
        """Leaves snippet empty when not requested."""
        response = indexed_client.post("/search", json={"query": "birds", "snippets": False})
        assert all(hit["snippet"] is None for hit in response.json()["results"])

    def test_search_clamps_top_k(self, indexed_client: TestClient) -> None:
        """top_k below 1 is raised to 1."""
        response = indexed_client.post("/search", json={"query": "birds", "top_k": 0})
        assert len(response.json()["results"]) == 1

    def test_search_with_negative_query(self, indexed_client: TestClient) -> None:
        """Accepts a negative query."""
        response = indexed_client.post(
            "/search", json={"query": "birds", "negative_query": "cats", "top_k": 3}
        )
        assert response.status_code == 200
        assert len(response.json()["results"]) == 3


class TestDocumentEndpoints:
    """Tests for indexing and maintenance endpoints."""

    def test_index_report(self, client: TestClient) -> None:
        """POST /index reports each note."""
        response = client.post("/index", json={})
        assert response.status_code == 200
        report = response.json()["report"]
        assert report["succeeded"] == ["cats.md", "dogs.md", "sub/birds.md"]
        assert report["failed"] == []

    def test_related(self, indexed_client: TestClient) -> None:
        """GET /related excludes the note itself."""
        response = indexed_client.get("/related", params={"path": "dogs.md", "top_k": 5})
        assert response.status_code == 200
        paths = [hit["file_path"] for hit in response.json()["results"]]
        assert paths
        assert "dogs.md" not in paths

    def test_reindex_with_content(self, indexed_client: TestClient) -> None:
        """Indexes unsaved content under the given path."""
        response = indexed_client.post(
            "/documents/reindex", json={"path": "draft.md", "content": "Draft text. Not saved."}
        )
        assert response.json() == {"status": "ok", "vectors_processed": 1, "vectors_deleted": 0}

    def test_reindex_missing_file(self, client: TestClient) -> None:
        """Returns 400 when the note cannot be read."""
        response = client.post("/documents/reindex", json={"path": "missing.md"})
        assert response.status_code == 400

    def test_rename_and_delete(self, indexed_client: TestClient) -> None:
        """Moves then removes a note's vectors."""
        renamed = indexed_client.post(
            "/documents/rename", json={"old_path": "dogs.md", "new_path": "pets/dogs.md"}
        )
        assert renamed.json() == {"status": "ok", "vectors_updated": 1}

        deleted = indexed_client.post("/documents/delete", json={"path": "pets/dogs.md"})
        assert deleted.json() == {"status": "ok", "vectors_deleted": 1}

    def test_rebuild_and_stats(self, indexed_client: TestClient) -> None:
        """POST /rebuild recreates the index; GET /stats reflects it."""
        response = indexed_client.post("/rebuild")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

        stats = indexed_client.get("/stats").json()
        assert stats["document_count"] == 3
        assert stats["dimensions"] == FAKE_DIMENSIONS
        assert stats["ann_ready"] is True


class TestErrorMapping:
    """Errors become JSON responses with matching status codes."""

    def test_schema_mismatch_is_conflict(self, app_config: AppConfig) -> None:
        """Returns 409 until the index is rebuilt."""

        def wider(config: AppConfig) -> Session:
            return Session.open(
                config,
                backend_factory=lambda: Backend(
                    embedder_factory=lambda c: FakeEmbedder(dimension=FAKE_DIMENSIONS * 2)
                ),
            )

        with TestClient(create_app(app_config, session_factory=_session_factory)) as first:
            assert first.post("/index", json={}).status_code == 200

        with TestClient(create_app(app_config, session_factory=wider)) as client:
            response = client.get("/stats")
            assert response.status_code == 409
            assert response.json()["error"] == "IndexNotReadyError"

            assert client.post("/rebuild").status_code == 200
            assert client.get("/stats").json()["dimensions"] == FAKE_DIMENSIONS * 2

    def test_no_session_is_unavailable(self, app_config: AppConfig) -> None:
        """Returns 503 when the backend never started."""
        client = TestClient(create_app(app_config, session_factory=_session_factory))
        response = client.get("/stats")
        assert response.status_code == 503
        assert response.json()["error"] == "TransportError"

    def test_unknown_route(self, client: TestClient) -> None:
        """Returns 404 for unknown routes."""
        assert client.get("/nope").status_code == 404
