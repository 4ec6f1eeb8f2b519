"""Utility helpers for working with files."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Iterator

DEFAULT_SUFFIXES = (".md", ".markdown", ".txt")


def iter_document_paths(
    inputs: Iterable[Path], suffixes: Iterable[str] = DEFAULT_SUFFIXES
) -> Iterator[Path]:
    """Yield note paths from input paths, descending into directories.

    Hidden files and anything under a hidden directory (``.git``, ``.obsidian``)
    are skipped.
    """
    wanted = {suffix.lower() for suffix in suffixes}
    for item in inputs:
        if item.is_dir():
            children = sorted(
                child
                for child in item.rglob("*")
                if child.is_file()
                and not any(part.startswith(".") for part in child.relative_to(item).parts)
            )
            yield from iter_document_paths(children, wanted)
        elif item.is_file() and item.suffix.lower() in wanted:
            yield item

