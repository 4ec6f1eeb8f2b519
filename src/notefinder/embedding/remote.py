"""Embeddings from an OpenAI-compatible HTTP endpoint.

The backend thread is synchronous, so this uses a blocking ``httpx.Client``.
Requests are batched and retried on timeouts and rate limiting.
"""

from __future__ import annotations

import logging
import time
from typing import Iterable, List, Sequence

import httpx
import numpy as np

from notefinder.embedding.encoder import EmbeddingConfig, truncate_dimensions

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openai.com/v1"
MAX_RETRIES = 3


class ApiEmbedder:
    """Calls ``POST {api_url}/embeddings`` and returns unit-length rows."""

    def __init__(self, config: EmbeddingConfig, *, client: httpx.Client | None = None) -> None:
        self.config = config
        self.dimension = config.dimensions
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"
        self._client = client or httpx.Client(
            base_url=(config.api_url or DEFAULT_API_URL).rstrip("/"),
            headers=headers,
            timeout=config.api_timeout,
        )

    def close(self) -> None:
        self._client.close()

    def _post_batch(self, texts: List[str]) -> List[List[float]]:
        body = {
            "model": self.config.model_name,
            "input": texts,
            "dimensions": self.config.dimensions,
        }
        for attempt in range(MAX_RETRIES):
            try:
                response = self._client.post("/embeddings", json=body)
                response.raise_for_status()
            except httpx.TimeoutException as exc:
                logger.warning(
                    "Timeout embedding batch (attempt %d/%d): %s", attempt + 1, MAX_RETRIES, exc
                )
                if attempt == MAX_RETRIES - 1:
                    raise
                time.sleep(2**attempt)
                continue
            except httpx.HTTPStatusError as exc:
                if exc.response.status_code != 429 or attempt == MAX_RETRIES - 1:
                    logger.error("HTTP error embedding batch: %s", exc)
                    raise
                logger.warning("Rate limited (attempt %d/%d)", attempt + 1, MAX_RETRIES)
                time.sleep(2 ** (attempt + 1))
                continue

            data = sorted(response.json()["data"], key=lambda item: item.get("index", 0))
            if len(data) != len(texts):
                raise ValueError(f"Expected {len(texts)} embeddings, got {len(data)}")
            return [item["embedding"] for item in data]

        raise RuntimeError("Exhausted all retry attempts")

    def embed(self, texts: Sequence[str] | Iterable[str]) -> np.ndarray:
        sentences = list(texts)
        if not sentences:
            return np.zeros((0, self.dimension), dtype="float32")

        rows: List[List[float]] = []
        for start in range(0, len(sentences), self.config.batch_size):
            batch = sentences[start : start + self.config.batch_size]
            rows.extend(self._post_batch(batch))
            logger.debug("Embedded %d texts via %s", len(batch), self.config.model_name)
        return truncate_dimensions(np.asarray(rows, dtype="float32"), self.dimension)

    def embed_query(self, text: str) -> np.ndarray:
        return self.embed([text])[0]
