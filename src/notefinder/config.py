"""Application configuration defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from notefinder.chunking.segmenter import (
    MAX_CHUNK_SIZE,
    MAX_SENTENCE_CHARS,
    MIN_SENTENCE_CHARS,
    SegmenterConfig,
)
from notefinder.embedding.encoder import DEFAULT_DIMENSIONS, DEFAULT_MODEL, EmbeddingConfig
from notefinder.index.ann import AnnConfig
from notefinder.transport.proxy import RequestTimeouts


def _get_default_db_path() -> Path:
    """Prefer a local ``data/`` database when running from a checkout."""
    local_db = Path("data/notefinder.db")
    if local_db.exists():
        return local_db
    return Path.home() / "Documents" / "NoteFinder" / "notefinder.db"


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    root: Path = Path(".")
    model_name: str = DEFAULT_MODEL
    dimensions: int = DEFAULT_DIMENSIONS
    embedding_backend: str = "local"
    api_url: str | None = None
    api_key: str | None = None
    embed_batch_size: int = 32
    max_chunk_size: int = MAX_CHUNK_SIZE
    max_sentence_chars: int = MAX_SENTENCE_CHARS
    min_sentence_chars: int = MIN_SENTENCE_CHARS
    cache_size: int = 100
    cache_ttl: float = 300.0
    hnsw_m: int = 8
    hnsw_ef_construction: int = 64
    hnsw_ef_search: int = 220
    bulk_batch_size: int = 200
    db_batch_size: int = 100
    init_timeout: float = 1800.0
    request_timeout: float = 600.0
    bulk_timeout: float = 1800.0
    search_timeout: float = 60.0

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if self.embedding_backend not in ("local", "api"):
            raise ValueError(f"embedding_backend must be 'local' or 'api', got {self.embedding_backend!r}")
        if self.api_key is None:
            self.api_key = os.environ.get("NOTEFINDER_API_KEY")

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    def segmenter_config(self) -> SegmenterConfig:
        return SegmenterConfig(
            max_chunk_size=self.max_chunk_size,
            max_sentence_chars=self.max_sentence_chars,
            min_sentence_chars=self.min_sentence_chars,
        )

    def ann_config(self) -> AnnConfig:
        return AnnConfig(
            m=self.hnsw_m,
            ef_construction=self.hnsw_ef_construction,
            ef_search=self.hnsw_ef_search,
        )

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            model_name=self.model_name,
            dimensions=self.dimensions,
            batch_size=self.embed_batch_size,
            backend=self.embedding_backend,  # type: ignore[arg-type]
            api_url=self.api_url,
            api_key=self.api_key,
        )

    def request_timeouts(self) -> RequestTimeouts:
        return RequestTimeouts(
            initialize=self.init_timeout,
            default=self.request_timeout,
            bulk=self.bulk_timeout,
            search=self.search_timeout,
        )

    def backend_payload(self, base_dir: Path | None = None) -> Dict[str, Any]:
        """``initialize`` message payload for the backend."""
        embedding = self.embedding_config()
        ann = self.ann_config()
        return {
            "db_path": str(self.resolve_db_path(base_dir)),
            "batch_size": self.db_batch_size,
            "embedding": {
                "model_name": embedding.model_name,
                "dimensions": embedding.dimensions,
                "batch_size": embedding.batch_size,
                "backend": embedding.backend,
                "api_url": embedding.api_url,
                "api_key": embedding.api_key,
            },
            "ann": {"m": ann.m, "ef_construction": ann.ef_construction, "ef_search": ann.ef_search},
        }
