"""Shared fixtures."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np
import pytest

from notefinder.config import AppConfig
from notefinder.embedding.encoder import EmbeddingConfig
from notefinder.index.storage import SQLiteVectorIndex
from notefinder.models import VectorRecord
from notefinder.transport.backend import Backend

FAKE_DIMENSIONS = 16


def fake_vector(text: str, dimensions: int = FAKE_DIMENSIONS) -> np.ndarray:
    """Deterministic unit vector derived from the text's hash."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "little")
    vector = np.random.default_rng(seed).normal(size=dimensions).astype("float32")
    return vector / np.linalg.norm(vector)


class FakeEmbedder:
    """Stands in for the sentence-transformers model."""

    def __init__(self, dimension: int = FAKE_DIMENSIONS) -> None:
        self.dimension = dimension
        self.calls: list[list[str]] = []

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        sentences = list(texts)
        self.calls.append(sentences)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")
        return np.vstack([fake_vector(text, self.dimension) for text in sentences])


def make_backend() -> Backend:
    return Backend(embedder_factory=lambda config: FakeEmbedder())


def make_record(file_path: str, start: int, text: str | None = None) -> VectorRecord:
    text = text if text is not None else f"{file_path}:{start}"
    return VectorRecord(
        file_path=file_path,
        chunk_offset_start=start,
        chunk_offset_end=start + len(text),
        embedding=fake_vector(text),
        text=text,
    )


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_index(tmp_path: Path):
    """Initialised index with 16-dimensional vectors."""
    index = SQLiteVectorIndex(tmp_path / "index.db", dimensions=FAKE_DIMENSIONS)
    index.ensure_schema()
    yield index
    index.close()


@pytest.fixture
def notes_dir(tmp_path: Path) -> Path:
    root = tmp_path / "notes"
    root.mkdir()
    (root / "cats.md").write_text(
        "---\ntitle: Cats\n---\n猫は可愛い動物です。猫はよく眠ります。\n", encoding="utf-8"
    )
    (root / "dogs.md").write_text("犬は忠実な動物です。犬は散歩が好きです。\n", encoding="utf-8")
    sub = root / "sub"
    sub.mkdir()
    (sub / "birds.md").write_text("Birds can fly. Some birds migrate.\n", encoding="utf-8")
    return root


@pytest.fixture
def app_config(tmp_path: Path, notes_dir: Path) -> AppConfig:
    return AppConfig(
        db_path=tmp_path / "db" / "notefinder.db",
        root=notes_dir,
        dimensions=FAKE_DIMENSIONS,
        embedding_backend="local",
    )


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(model_name="test-model", dimensions=4, batch_size=2, backend="api")
