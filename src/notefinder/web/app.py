"""FastAPI application exposing NoteFinder as a JSON API."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from notefinder import __version__
from notefinder.config import AppConfig
from notefinder.errors import InvalidQueryError, NoteFinderError, SchemaError, TransportError
from notefinder.models import IndexReport, SearchHit
from notefinder.session import Session

LOGGER = logging.getLogger(__name__)

SessionFactory = Callable[[AppConfig], Session]


class SearchPayload(BaseModel):
    query: str
    negative_query: str | None = None
    top_k: int = 10
    ef_search: int | None = Field(default=None, ge=1)
    snippets: bool = True


class IndexPayload(BaseModel):
    rebuild: bool = False


class ReindexPayload(BaseModel):
    path: str
    content: str | None = None


class DeletePayload(BaseModel):
    path: str


class RenamePayload(BaseModel):
    old_path: str
    new_path: str


def _hit_to_dict(hit: SearchHit) -> Dict[str, Any]:
    data = hit.to_payload()
    data["snippet"] = hit.snippet
    return data


def _report_to_dict(report: IndexReport) -> Dict[str, Any]:
    return {
        "succeeded": report.succeeded,
        "failed": [{"path": path, "error": message} for path, message in report.failed],
        "skipped": report.skipped,
        "vectors_processed": report.vectors_processed,
    }


def _error_response(status_code: int, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": f"{exc} (check logs for detail)", "error": exc.__class__.__name__},
    )


def create_app(
    config: AppConfig | None = None,
    *,
    session_factory: SessionFactory = Session.open,
) -> FastAPI:
    app = FastAPI(title="NoteFinder API", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = config or AppConfig()
    app.state.session = None

    @app.on_event("startup")
    async def startup_event() -> None:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
        app.state.session = session_factory(app.state.config)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        session = app.state.session
        app.state.session = None
        if session is not None:
            await session.close()

    @app.exception_handler(InvalidQueryError)
    async def invalid_query_handler(request: Request, exc: InvalidQueryError) -> JSONResponse:
        return _error_response(400, exc)

    @app.exception_handler(SchemaError)
    async def schema_error_handler(request: Request, exc: SchemaError) -> JSONResponse:
        LOGGER.exception("Index needs a rebuild: %s", exc)
        return _error_response(409, exc)

    @app.exception_handler(TransportError)
    async def transport_error_handler(request: Request, exc: TransportError) -> JSONResponse:
        LOGGER.exception("Backend request failed: %s", exc)
        return _error_response(503, exc)

    @app.exception_handler(NoteFinderError)
    async def generic_error_handler(request: Request, exc: NoteFinderError) -> JSONResponse:
        LOGGER.exception("Request failed: %s", exc)
        return _error_response(500, exc)

    def _session() -> Session:
        session = app.state.session
        if session is None:
            raise TransportError("Backend is not running")
        return session

    @app.post("/search")
    async def search_documents(payload: SearchPayload) -> dict[str, List[Dict[str, Any]]]:
        session = _session()
        top_k = max(1, min(payload.top_k, 50))
        hits = await session.query.search(
            payload.query, payload.negative_query, top_k, ef_search=payload.ef_search
        )
        if payload.snippets:
            session.query.attach_snippets(hits)
        return {"results": [_hit_to_dict(hit) for hit in hits]}

    @app.get("/related")
    async def related_chunks(path: str, top_k: int = 10) -> dict[str, List[Dict[str, Any]]]:
        session = _session()
        hits = await session.query.related_chunks(path, max(1, min(top_k, 50)))
        session.query.attach_snippets(hits)
        return {"results": [_hit_to_dict(hit) for hit in hits]}

    @app.post("/index")
    async def index_documents(payload: IndexPayload) -> dict[str, Any]:
        session = _session()
        if payload.rebuild:
            report = await session.indexing.rebuild()
        else:
            report = await session.indexing.index_all()
        return {"status": "ok", "report": _report_to_dict(report)}

    @app.post("/documents/reindex")
    async def reindex_document(payload: ReindexPayload) -> dict[str, Any]:
        session = _session()
        try:
            result = await session.indexing.index_document(payload.path, payload.content)
        except OSError as exc:
            raise InvalidQueryError(f"Cannot read {payload.path}: {exc}") from exc
        return {
            "status": "ok",
            "vectors_processed": result.vectors_processed,
            "vectors_deleted": result.vectors_deleted,
        }

    @app.post("/documents/delete")
    async def delete_document(payload: DeletePayload) -> dict[str, Any]:
        deleted = await _session().indexing.delete_document(payload.path)
        return {"status": "ok", "vectors_deleted": deleted}

    @app.post("/documents/rename")
    async def rename_document(payload: RenamePayload) -> dict[str, Any]:
        moved = await _session().indexing.rename_document(payload.old_path, payload.new_path)
        return {"status": "ok", "vectors_updated": moved}

    @app.post("/rebuild")
    async def rebuild_index() -> dict[str, Any]:
        report = await _session().indexing.rebuild()
        return {"status": "ok", "report": _report_to_dict(report)}

    @app.get("/stats")
    async def index_stats() -> dict[str, Any]:
        return await _session().proxy.stats()

    return app


app = create_app()
