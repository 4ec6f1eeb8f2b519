"""Embedding model management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Literal, Protocol, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

DEFAULT_MODEL = "hotchpotch/static-embedding-japanese"
DEFAULT_DIMENSIONS = 256

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    """Anything that turns texts into unit-length float32 rows."""

    dimension: int

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray: ...


@dataclass(slots=True)
class EmbeddingConfig:
    model_name: str = DEFAULT_MODEL
    dimensions: int = DEFAULT_DIMENSIONS
    batch_size: int = 32
    normalize: bool = True
    backend: Literal["local", "api"] = "local"
    device: str | None = None
    api_url: str | None = None
    api_key: str | None = None
    api_timeout: float = 60.0


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """Scale every row to unit length; all-zero rows are left as zeros."""
    matrix = np.asarray(matrix, dtype="float32")
    if matrix.ndim == 1:
        norm = float(np.linalg.norm(matrix))
        return matrix / norm if norm > 0 else matrix
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (matrix / norms).astype("float32", copy=False)


def average_vectors(vectors: np.ndarray | Sequence[np.ndarray]) -> np.ndarray:
    """Mean of the given rows, re-normalised.

    Raises:
        ValueError: if there is nothing to average.
    """
    matrix = np.asarray(vectors, dtype="float32")
    if matrix.ndim != 2 or matrix.shape[0] == 0:
        raise ValueError("average_vectors needs at least one vector")
    return normalize_rows(matrix.mean(axis=0))


def subtract_negative(
    positive: np.ndarray, negative: np.ndarray, *, eps: float = 1e-6
) -> np.ndarray:
    """Steer a query away from a negative query: ``normalize(positive - negative)``.

    When the two are (nearly) identical the difference carries no direction,
    so the positive vector is returned unchanged.
    """
    difference = np.asarray(positive, dtype="float32") - np.asarray(negative, dtype="float32")
    if float(np.linalg.norm(difference)) < eps:
        return np.asarray(positive, dtype="float32")
    return normalize_rows(difference)


def truncate_dimensions(matrix: np.ndarray, dimensions: int) -> np.ndarray:
    """Keep the leading ``dimensions`` components (Matryoshka-style) and re-normalise."""
    if matrix.shape[-1] < dimensions:
        raise ValueError(
            f"Model produces {matrix.shape[-1]}-dimensional vectors, "
            f"cannot provide {dimensions}"
        )
    return normalize_rows(matrix[..., :dimensions])


class EmbeddingModel:
    """Thin wrapper around `SentenceTransformer` for chunk and query embeddings.

    Output vectors are truncated to ``config.dimensions`` so the index width
    stays fixed regardless of the model's native size.
    """

    def __init__(self, config: EmbeddingConfig | None = None) -> None:
        self.config = config or EmbeddingConfig()
        self._model = SentenceTransformer(self.config.model_name, device=self.config.device)
        native = int(self._model.get_sentence_embedding_dimension() or self.config.dimensions)
        if native < self.config.dimensions:
            raise ValueError(
                f"Model {self.config.model_name} has {native} dimensions, "
                f"{self.config.dimensions} requested"
            )
        self.dimension = self.config.dimensions
        logger.info(
            "Loaded embedding model %s (native %d, using %d dimensions)",
            self.config.model_name,
            native,
            self.dimension,
        )

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        """Return float32 embeddings for input texts."""
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")
        embeddings = self._model.encode(
            sentences,
            batch_size=self.config.batch_size,
            show_progress_bar=False,
            convert_to_numpy=True,
            normalize_embeddings=self.config.normalize,
        )
        return truncate_dimensions(np.asarray(embeddings, dtype="float32"), self.dimension)

    def embed_query(self, text: str) -> np.ndarray:
        """Convenience wrapper for single-query embedding."""
        return self.embed([text])[0]


def create_embedder(config: EmbeddingConfig) -> Embedder:
    """Build the embedder selected by ``config.backend``."""
    if config.backend == "api":
        from notefinder.embedding.remote import ApiEmbedder

        return ApiEmbedder(config)
    if config.backend == "local":
        return EmbeddingModel(config)
    raise ValueError(f"Unknown embedding backend: {config.backend!r}")
