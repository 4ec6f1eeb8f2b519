"""Where documents come from."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Protocol

from notefinder.utils.files import DEFAULT_SUFFIXES, iter_document_paths


class DocumentSource(Protocol):
    def list_documents(self) -> List[str]: ...

    def read_document(self, path: str) -> str: ...


class FileSystemSource:
    """Notes under ``root``, addressed by POSIX paths relative to it."""

    def __init__(self, root: Path, suffixes: Iterable[str] = DEFAULT_SUFFIXES) -> None:
        self.root = Path(root)
        self.suffixes = tuple(suffixes)

    def _resolve(self, path: str) -> Path:
        candidate = (self.root / path).resolve()
        root = self.root.resolve()
        if candidate != root and root not in candidate.parents:
            raise ValueError(f"Path escapes source root: {path}")
        return candidate

    def list_documents(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return [
            path.relative_to(self.root).as_posix()
            for path in iter_document_paths([self.root], self.suffixes)
        ]

    def read_document(self, path: str) -> str:
        # newline="" keeps \r\n intact so offsets match the bytes on disk
        with self._resolve(path).open(encoding="utf-8", newline="") as handle:
            return handle.read()
