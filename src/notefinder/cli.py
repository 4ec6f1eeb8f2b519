"""Command line interface for NoteFinder."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer
from rich.console import Console
from rich.table import Table

from notefinder.config import AppConfig
from notefinder.errors import NoteFinderError, SchemaError
from notefinder.models import IndexReport, SearchHit
from notefinder.session import Session

LOGGER = logging.getLogger(__name__)

console = Console()
app = typer.Typer(help="NoteFinder - offset-exact semantic search for markdown notes")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _build_config(db: Optional[Path], model: Optional[str], root: Optional[Path] = None) -> AppConfig:
    defaults = AppConfig()
    return AppConfig(
        db_path=db if db is not None else defaults.db_path,
        root=root if root is not None else defaults.root,
        model_name=model or defaults.model_name,
    )


def _open_session(config: AppConfig, *, force: bool = False) -> Session:
    return Session.open(config, force=force)


def _run(config: AppConfig, action: Callable[[Session], Awaitable[Any]], *, force: bool = False) -> Any:
    async def runner() -> Any:
        session = _open_session(config, force=force)
        try:
            return await action(session)
        finally:
            await session.close()

    try:
        return asyncio.run(runner())
    except NoteFinderError as exc:
        LOGGER.exception("Command failed")
        console.print(f"[red]{exc}[/red] (check logs for detail)")
        if isinstance(exc, SchemaError):
            console.print("[yellow]Run 'notefinder rebuild' to recreate the index.[/yellow]")
        raise typer.Exit(code=1) from exc


def _print_report(report: IndexReport) -> None:
    console.print(
        f"Indexed: {len(report.succeeded)}, vectors: {report.vectors_processed}, "
        f"skipped: {len(report.skipped)}, failed: {len(report.failed)}"
    )
    for path, message in report.failed:
        console.print(f"[yellow]  {path}: {message}[/yellow]")


def _print_hits(hits: list[SearchHit]) -> None:
    if not hits:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Distance")
    table.add_column("Document")
    table.add_column("Offsets")
    table.add_column("Snippet")
    for hit in hits:
        snippet = hit.snippet if hit.snippet is not None else (hit.text or "")
        table.add_row(
            f"{hit.distance:.4f}",
            hit.file_path,
            f"{hit.chunk_offset_start}-{hit.chunk_offset_end}",
            snippet.replace("\n", " ")[:180],
        )
    console.print(table)


@app.command()
def index(
    root: Path = typer.Argument(..., help="Folder with notes to index.", resolve_path=True),
    rebuild: bool = typer.Option(False, "--rebuild", help="Drop the index and rebuild it from scratch"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index every note under ROOT."""
    _setup_logging(verbose)
    if not root.is_dir():
        raise typer.BadParameter(f"Not a directory: {root}")
    config = _build_config(db, model, root)
    console.print(f"Indexing into [bold]{config.resolve_db_path(Path.cwd())}[/bold]...")

    async def action(session: Session) -> IndexReport:
        if rebuild:
            return await session.indexing.rebuild(progress=LOGGER.debug)
        return await session.indexing.index_all(progress=LOGGER.debug)

    _print_report(_run(config, action))


@app.command()
def search(
    query: str = typer.Argument(..., help="Query text"),
    negative: Optional[str] = typer.Option(None, "--negative", help="Steer results away from this text"),
    top_k: int = typer.Option(10, "--top-k", help="Number of results to display"),
    ef_search: Optional[int] = typer.Option(None, "--ef-search", help="HNSW ef for this query"),
    root: Path = typer.Option(None, "--root", help="Notes folder, used for snippets"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Execute a semantic search."""
    _setup_logging(verbose)
    config = _build_config(db, model, root)

    async def action(session: Session) -> list[SearchHit]:
        hits = await session.query.search(query, negative, top_k, ef_search=ef_search)
        if root is not None:
            session.query.attach_snippets(hits)
        return hits

    _print_hits(_run(config, action))


@app.command()
def related(
    path: str = typer.Argument(..., help="Note path relative to --root"),
    top_k: int = typer.Option(10, "--top-k", help="Number of results to display"),
    root: Path = typer.Option(Path("."), "--root", help="Notes folder"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Show chunks of other notes related to PATH."""
    _setup_logging(verbose)
    config = _build_config(db, model, root)

    async def action(session: Session) -> list[SearchHit]:
        hits = await session.query.related_chunks(path, top_k)
        return session.query.attach_snippets(hits)

    _print_hits(_run(config, action))


@app.command()
def reindex(
    path: str = typer.Argument(..., help="Note path relative to --root"),
    root: Path = typer.Option(Path("."), "--root", help="Notes folder"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Re-index a single note."""
    _setup_logging(verbose)
    config = _build_config(db, model, root)

    async def action(session: Session) -> Any:
        return await session.indexing.index_document(path)

    try:
        result = _run(config, action)
    except OSError as exc:
        raise typer.BadParameter(f"Cannot read {path}: {exc}") from exc
    console.print(f"Stored {result.vectors_processed} vectors, removed {result.vectors_deleted}.")


@app.command()
def delete(
    path: str = typer.Argument(..., help="Indexed note path"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Remove a note's vectors from the index."""
    _setup_logging(verbose)
    config = _build_config(db, model)
    removed = _run(config, lambda session: session.indexing.delete_document(path))
    console.print(f"Removed {removed} vectors.")


@app.command()
def rename(
    old: str = typer.Argument(..., help="Current indexed path"),
    new: str = typer.Argument(..., help="New path"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Move a note's vectors to a new path without re-embedding."""
    _setup_logging(verbose)
    config = _build_config(db, model)
    moved = _run(config, lambda session: session.indexing.rename_document(old, new))
    console.print(f"Updated {moved} vectors.")


@app.command("rebuild")
def rebuild_index(
    root: Path = typer.Option(Path("."), "--root", help="Notes folder"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Drop the index (including one with mismatched dimensions) and rebuild it."""
    _setup_logging(verbose)
    config = _build_config(db, model, root)
    report = _run(config, lambda session: session.indexing.rebuild(progress=LOGGER.debug))
    _print_report(report)


@app.command()
def prune(
    root: Path = typer.Option(Path("."), "--root", help="Notes folder"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Remove notes that no longer exist under --root."""
    _setup_logging(verbose)
    config = _build_config(db, model, root)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing to prune.[/yellow]")
        return
    removed = _run(config, lambda session: session.indexing.prune())
    console.print(f"Removed {removed} orphaned documents.")


@app.command()
def stats(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Show index statistics."""
    _setup_logging(verbose)
    config = _build_config(db, model)
    values = _run(config, lambda session: session.proxy.stats())

    table = Table(show_header=False)
    for key, value in values.items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    root: Path = typer.Option(Path("."), "--root", help="Notes folder"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    model: str = typer.Option(None, "--model", help="Embedding model name"),
) -> None:
    """Start the JSON API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - defensive
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    from notefinder.web.app import create_app

    config = _build_config(db, model, root)
    console.print(
        f"Starting web API on http://{host}:{port} (database: {config.resolve_db_path(Path.cwd())})"
    )
    uvicorn.run(create_app(config), host=host, port=port, reload=False, log_level="info")


if __name__ == "__main__":  # pragma: no cover
    app()
