"""HNSW approximate nearest-neighbour index backed by hnswlib."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence, Set, Tuple

import hnswlib
import numpy as np

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AnnConfig:
    """HNSW build and query parameters.

    Larger ``m`` and ``ef_construction`` give better recall at the cost of
    slower builds and a bigger graph; larger ``ef_search`` does the same for
    queries.
    """

    m: int = 8
    ef_construction: int = 64
    ef_search: int = 220
    initial_capacity: int = 1024

    def to_meta(self) -> dict:
        return {
            "m": self.m,
            "ef_construction": self.ef_construction,
            "ef_search": self.ef_search,
        }


def sidecar_path(index_path: Path) -> Path:
    return index_path.with_name(index_path.name + ".json")


class HnswAnnIndex:
    """Cosine-space HNSW graph labelled by record id.

    Removal uses ``mark_deleted``; labels are never reused because record ids
    come from an AUTOINCREMENT column.
    """

    def __init__(self, dimensions: int, config: AnnConfig | None = None) -> None:
        self.dimensions = dimensions
        self.config = config or AnnConfig()
        self._index = hnswlib.Index(space="cosine", dim=dimensions)
        self._index.init_index(
            max_elements=max(self.config.initial_capacity, 1),
            ef_construction=self.config.ef_construction,
            M=self.config.m,
        )
        self._index.set_ef(self.config.ef_search)
        self._labels: Set[int] = set()

    @classmethod
    def build(
        cls,
        dimensions: int,
        ids: Sequence[int],
        vectors: np.ndarray,
        config: AnnConfig | None = None,
    ) -> "HnswAnnIndex":
        config = config or AnnConfig()
        capacity = max(config.initial_capacity, len(ids))
        ann = cls(
            dimensions,
            AnnConfig(config.m, config.ef_construction, config.ef_search, capacity),
        )
        ann.config = config
        ann.add(ids, vectors)
        return ann

    def __len__(self) -> int:
        return len(self._labels)

    def __contains__(self, label: int) -> bool:
        return label in self._labels

    def _ensure_capacity(self, extra: int) -> None:
        needed = self._index.get_current_count() + extra
        capacity = self._index.get_max_elements()
        if needed <= capacity:
            return
        while capacity < needed:
            capacity *= 2
        LOGGER.debug("Resizing HNSW index to %d elements", capacity)
        self._index.resize_index(capacity)

    def add(self, ids: Sequence[int], vectors: np.ndarray) -> None:
        if len(ids) == 0:
            return
        data = np.asarray(vectors, dtype="float32").reshape(len(ids), self.dimensions)
        self._ensure_capacity(len(ids))
        self._index.add_items(data, np.asarray(ids, dtype=np.int64))
        self._labels.update(int(label) for label in ids)

    def remove(self, ids: Iterable[int]) -> int:
        removed = 0
        for label in ids:
            label = int(label)
            if label not in self._labels:
                continue
            self._index.mark_deleted(label)
            self._labels.discard(label)
            removed += 1
        return removed

    def query(
        self, vector: np.ndarray, k: int, *, ef_search: Optional[int] = None
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Return ``(labels, cosine_distances)`` for the ``k`` nearest neighbours.

        Raises ``RuntimeError`` (from hnswlib) when the graph cannot produce
        ``k`` results.
        """
        k = min(k, len(self._labels))
        if k <= 0:
            return np.empty(0, dtype=np.int64), np.empty(0, dtype="float32")
        ef = max(ef_search or self.config.ef_search, k)
        self._index.set_ef(ef)
        try:
            labels, distances = self._index.knn_query(
                np.asarray(vector, dtype="float32").reshape(1, self.dimensions), k=k
            )
        finally:
            self._index.set_ef(self.config.ef_search)
        return labels[0].astype(np.int64), distances[0].astype("float32")

    def save(self, path: Path, version: int) -> None:
        """Persist the graph atomically, then record the version it reflects."""
        path = Path(path)
        tmp_path = path.with_name(path.name + ".tmp")
        self._index.save_index(str(tmp_path))
        os.replace(tmp_path, path)

        meta_tmp = sidecar_path(path).with_name(sidecar_path(path).name + ".tmp")
        meta_tmp.write_text(
            json.dumps({"ann_version": version, "dimensions": self.dimensions, "count": len(self)}),
            encoding="utf-8",
        )
        os.replace(meta_tmp, sidecar_path(path))

    @classmethod
    def load(
        cls,
        path: Path,
        dimensions: int,
        live_ids: Iterable[int],
        config: AnnConfig | None = None,
    ) -> "HnswAnnIndex":
        ann = cls.__new__(cls)
        ann.dimensions = dimensions
        ann.config = config or AnnConfig()
        ann._index = hnswlib.Index(space="cosine", dim=dimensions)
        ann._index.load_index(str(path))
        ann._index.set_ef(ann.config.ef_search)
        ann._labels = {int(label) for label in live_ids}
        return ann

    @staticmethod
    def stored_version(path: Path) -> Optional[int]:
        """Version recorded next to a saved graph, ``None`` when absent or unreadable."""
        path = Path(path)
        meta = sidecar_path(path)
        if not path.exists() or not meta.exists():
            return None
        try:
            return int(json.loads(meta.read_text(encoding="utf-8"))["ann_version"])
        except (OSError, ValueError, KeyError, TypeError):
            LOGGER.warning("Unreadable ANN sidecar %s", meta)
            return None

    @staticmethod
    def remove_files(path: Path) -> None:
        path = Path(path)
        for candidate in (path, sidecar_path(path), path.with_name(path.name + ".tmp")):
            candidate.unlink(missing_ok=True)
