"""SQLite record store with an HNSW index on the side."""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from notefinder.errors import IndexNotReadyError, InvalidQueryError, RebuildError, SchemaMismatchError
from notefinder.index.ann import AnnConfig, HnswAnnIndex
from notefinder.models import IndexSchemaState, SearchHit, VectorRecord

LOGGER = logging.getLogger(__name__)

TABLE_NAME = "embeddings"
REQUIRED_COLUMNS = frozenset(
    {"id", "file_path", "chunk_offset_start", "chunk_offset_end", "chunk", "embedding"}
)
DEFAULT_BATCH_SIZE = 100
ANN_SAVE_INTERVAL = 50


def _batched(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class SQLiteVectorIndex:
    """Persistence layer for chunk embeddings keyed by ``(file_path, chunk_offset_start)``.

    The SQLite table is the source of truth. The HNSW graph is derived from it
    and saved next to the database as ``<db>.hnsw``; the ``ann_version`` stored
    in both places tells whether the saved graph still matches the table.
    Writes update the in-memory graph straight away but only save it every
    ``ann_save_interval`` writes and on :meth:`close`; a graph left stale by a
    crash is rebuilt from the table on the next open.
    Every public method runs under one re-entrant lock.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        dimensions: int,
        ann_config: AnnConfig | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        ann_save_interval: int = ANN_SAVE_INTERVAL,
    ) -> None:
        self.db_path = Path(db_path)
        self.ann_path = self.db_path.with_name(self.db_path.name + ".hnsw")
        self.dimensions = dimensions
        self.ann_config = ann_config or AnnConfig()
        self.batch_size = batch_size
        self.ann_save_interval = max(1, ann_save_interval)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        try:
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        except sqlite3.Error:
            self._conn.close()
            raise
        self._ann: Optional[HnswAnnIndex] = None
        self._ann_deferred = False
        self._ann_unsaved = 0
        self._not_ready_reason: Optional[str] = "schema not initialised"

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def is_ready(self) -> bool:
        return self._not_ready_reason is None

    @property
    def ann_deferred(self) -> bool:
        return self._ann_deferred

    def close(self) -> None:
        with self._lock:
            try:
                self.flush_ann()
            except (sqlite3.Error, OSError, RuntimeError) as exc:
                LOGGER.warning("Could not save ANN index %s: %s", self.ann_path, exc)
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            yield self._conn
            self._conn.commit()
        except Exception:
            self._conn.rollback()
            raise

    def _check_ready(self) -> None:
        if self._not_ready_reason is not None:
            raise IndexNotReadyError(f"Vector index is not ready: {self._not_ready_reason}")

    # -- schema -----------------------------------------------------------

    def _table_exists(self, name: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def _meta_get(self, key: str) -> Optional[str]:
        if not self._table_exists("index_meta"):
            return None
        row = self._conn.execute("SELECT value FROM index_meta WHERE key = ?", (key,)).fetchone()
        return None if row is None else row["value"]

    def _meta_set(self, conn: sqlite3.Connection, key: str, value: Any) -> None:
        conn.execute(
            "INSERT INTO index_meta(key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, str(value)),
        )

    def _ann_version(self) -> int:
        return int(self._meta_get("ann_version") or 0)

    def _bump_ann_version(self, conn: sqlite3.Connection) -> int:
        version = self._ann_version() + 1
        self._meta_set(conn, "ann_version", version)
        return version

    def schema_state(self) -> IndexSchemaState:
        with self._lock:
            if not self._table_exists(TABLE_NAME):
                return IndexSchemaState(exists=False)
            columns = {row["name"] for row in self._conn.execute(f"PRAGMA table_info({TABLE_NAME})")}
            stored_dims = self._meta_get("dimensions")
            ann_version = HnswAnnIndex.stored_version(self.ann_path)
            graph_current = self._ann is not None and not self._ann_deferred
            return IndexSchemaState(
                exists=True,
                dimensions=int(stored_dims) if stored_dims is not None else None,
                has_required_columns=REQUIRED_COLUMNS <= columns,
                has_ann_index=graph_current
                or (ann_version is not None and ann_version == self._ann_version()),
            )

    def _create_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    file_path TEXT NOT NULL,
                    chunk_offset_start INTEGER NOT NULL,
                    chunk_offset_end INTEGER NOT NULL,
                    chunk TEXT,
                    embedding BLOB NOT NULL,
                    UNIQUE(file_path, chunk_offset_start)
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_file_path ON {TABLE_NAME}(file_path)"
            )
            conn.execute(
                "CREATE TABLE IF NOT EXISTS index_meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)"
            )
            self._meta_set(conn, "dimensions", self.dimensions)
            self._meta_set(conn, "ann_version", 0)
            for key, value in self.ann_config.to_meta().items():
                self._meta_set(conn, f"ann_{key}", value)

    def _drop_all(self) -> None:
        self._ann = None
        self._ann_unsaved = 0
        with self.transaction() as conn:
            conn.execute(f"DROP TABLE IF EXISTS {TABLE_NAME}")
            conn.execute("DROP TABLE IF EXISTS index_meta")
        HnswAnnIndex.remove_files(self.ann_path)

    def ensure_schema(self, *, force: bool = False) -> IndexSchemaState:
        """Create the schema if missing and make sure the ANN graph matches the table.

        Raises:
            SchemaMismatchError: the stored table has other dimensions or columns.
        """
        with self._lock:
            if force:
                LOGGER.info("Dropping vector index at %s", self.db_path)
                self._drop_all()

            state = self.schema_state()
            if state.exists:
                if not state.has_required_columns or state.dimensions != self.dimensions:
                    self._not_ready_reason = "schema mismatch"
                    raise SchemaMismatchError(
                        f"Index at {self.db_path} has dimensions={state.dimensions}, "
                        f"required columns present={state.has_required_columns}; "
                        f"expected dimensions={self.dimensions}"
                    )
            else:
                LOGGER.info("Creating vector index at %s (%d dimensions)", self.db_path, self.dimensions)
                self._create_schema()

            if self._ann is not None and not self._ann_deferred:
                self.flush_ann()
            else:
                self._load_or_rebuild_ann()
            self._not_ready_reason = None
            return self.schema_state()

    # -- ANN maintenance --------------------------------------------------

    def _all_ids(self) -> List[int]:
        return [row["id"] for row in self._conn.execute(f"SELECT id FROM {TABLE_NAME}")]

    def _load_or_rebuild_ann(self) -> None:
        version = self._ann_version()
        if HnswAnnIndex.stored_version(self.ann_path) == version:
            try:
                self._ann = HnswAnnIndex.load(
                    self.ann_path, self.dimensions, self._all_ids(), self.ann_config
                )
                self._ann_deferred = False
                LOGGER.debug("Loaded ANN index %s (version %d)", self.ann_path, version)
                return
            except RuntimeError as exc:
                LOGGER.warning("Could not load ANN index %s: %s", self.ann_path, exc)
        else:
            LOGGER.info("ANN index missing or stale, rebuilding from table")
        self._rebuild_ann()

    def _rebuild_ann(self) -> None:
        rows = self._conn.execute(f"SELECT id, embedding FROM {TABLE_NAME} ORDER BY id").fetchall()
        ids = [row["id"] for row in rows]
        if rows:
            vectors = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
        else:
            vectors = np.zeros((0, self.dimensions), dtype="float32")
        self._ann = HnswAnnIndex.build(self.dimensions, ids, vectors, self.ann_config)
        self._save_ann()
        self._ann_deferred = False
        LOGGER.info("Built ANN index with %d vectors", len(ids))

    def _save_ann(self) -> None:
        assert self._ann is not None
        self._ann.save(self.ann_path, self._ann_version())
        self._ann_unsaved = 0

    def flush_ann(self) -> None:
        """Save the graph if writes since the last save have not reached disk."""
        with self._lock:
            if self._ann is not None and not self._ann_deferred and self._ann_unsaved:
                self._save_ann()

    def build_ann_index(self) -> None:
        """Build the graph after a rebuild that deferred it."""
        with self._lock:
            self._check_ready()
            self._rebuild_ann()

    def _sync_ann(
        self,
        removed: Iterable[int],
        added_ids: Sequence[int] = (),
        added_vectors: Optional[np.ndarray] = None,
    ) -> None:
        if self._ann is None or self._ann_deferred:
            return
        try:
            self._ann.remove(removed)
            if added_ids:
                self._ann.add(added_ids, added_vectors)
            self._ann_unsaved += 1
            if self._ann_unsaved >= self.ann_save_interval:
                self._save_ann()
        except RuntimeError as exc:
            LOGGER.warning("ANN update failed (%s), rebuilding from table", exc)
            self._rebuild_ann()

    # -- writes -----------------------------------------------------------

    def _validate_vector(self, vector: np.ndarray) -> np.ndarray:
        array = np.asarray(vector, dtype="float32").reshape(-1)
        if array.shape[0] != self.dimensions:
            raise ValueError(
                f"Expected {self.dimensions}-dimensional vector, got {array.shape[0]}"
            )
        return array

    def upsert(self, records: Sequence[VectorRecord], batch_size: int | None = None) -> int:
        """Replace every stored row of the records' file paths with ``records``.

        Rows of those paths whose offsets no longer occur are removed too, so a
        re-indexed document never keeps stale chunks.
        """
        batch_size = batch_size or self.batch_size
        unique: Dict[Tuple[str, int], VectorRecord] = {}
        for record in records:
            unique[(record.file_path, record.chunk_offset_start)] = record
        rows = list(unique.values())
        if not rows:
            return 0
        vectors = [self._validate_vector(record.embedding) for record in rows]
        paths = sorted({record.file_path for record in rows})

        with self._lock:
            self._check_ready()
            removed: List[int] = []
            added: List[int] = []
            with self.transaction() as conn:
                for path_batch in _batched(paths, batch_size):
                    marks = _placeholders(len(path_batch))
                    removed.extend(
                        row["id"]
                        for row in conn.execute(
                            f"SELECT id FROM {TABLE_NAME} WHERE file_path IN ({marks})",
                            tuple(path_batch),
                        )
                    )
                    conn.execute(
                        f"DELETE FROM {TABLE_NAME} WHERE file_path IN ({marks})",
                        tuple(path_batch),
                    )
                for start in range(0, len(rows), batch_size):
                    for record, vector in zip(
                        rows[start : start + batch_size], vectors[start : start + batch_size]
                    ):
                        cursor = conn.execute(
                            f"""
                            INSERT INTO {TABLE_NAME}(
                                file_path, chunk_offset_start, chunk_offset_end, chunk, embedding
                            ) VALUES (?, ?, ?, ?, ?)
                            """,
                            (
                                record.file_path,
                                record.chunk_offset_start,
                                record.chunk_offset_end,
                                record.text,
                                sqlite3.Binary(vector.tobytes()),
                            ),
                        )
                        added.append(int(cursor.lastrowid))
                    LOGGER.debug("Inserted batch of %d rows", min(batch_size, len(rows) - start))
                self._bump_ann_version(conn)

            self._sync_ann(removed, added, np.vstack(vectors))
        return len(rows)

    def delete_by_file_path(self, file_path: str) -> int:
        with self._lock:
            self._check_ready()
            with self.transaction() as conn:
                ids = [
                    row["id"]
                    for row in conn.execute(
                        f"SELECT id FROM {TABLE_NAME} WHERE file_path = ?", (file_path,)
                    )
                ]
                if not ids:
                    return 0
                conn.execute(f"DELETE FROM {TABLE_NAME} WHERE file_path = ?", (file_path,))
                self._bump_ann_version(conn)
            self._sync_ann(ids)
            return len(ids)

    def update_file_path(self, old_path: str, new_path: str) -> int:
        """Rewrite ``file_path`` in place. Rows already stored under ``new_path`` are replaced."""
        if old_path == new_path:
            return 0
        with self._lock:
            self._check_ready()
            with self.transaction() as conn:
                replaced = [
                    row["id"]
                    for row in conn.execute(
                        f"SELECT id FROM {TABLE_NAME} WHERE file_path = ?", (new_path,)
                    )
                ]
                if replaced:
                    conn.execute(f"DELETE FROM {TABLE_NAME} WHERE file_path = ?", (new_path,))
                    self._bump_ann_version(conn)
                updated = conn.execute(
                    f"UPDATE {TABLE_NAME} SET file_path = ? WHERE file_path = ?",
                    (new_path, old_path),
                ).rowcount
            if replaced:
                self._sync_ann(replaced)
            return int(updated)

    def rebuild(self, *, defer_ann: bool = False) -> None:
        """Drop everything and recreate an empty index.

        With ``defer_ann`` the graph is left unbuilt (searches use the exact
        scan) until :meth:`build_ann_index` is called. On failure the index is
        marked not ready until the next successful ``ensure_schema``/``rebuild``.
        """
        with self._lock:
            try:
                self._drop_all()
                self._create_schema()
                if defer_ann:
                    self._ann = None
                    self._ann_deferred = True
                else:
                    self._rebuild_ann()
            except (sqlite3.Error, OSError, RuntimeError) as exc:
                self._not_ready_reason = f"rebuild failed: {exc}"
                LOGGER.exception("Rebuild of %s failed", self.db_path)
                raise RebuildError(f"Rebuild failed: {exc}") from exc
            self._not_ready_reason = None
            LOGGER.info("Rebuilt vector index at %s", self.db_path)

    # -- reads ------------------------------------------------------------

    def get_vectors_by_file_path(self, file_path: str) -> np.ndarray:
        with self._lock:
            self._check_ready()
            rows = self._conn.execute(
                f"SELECT embedding FROM {TABLE_NAME} WHERE file_path = ? ORDER BY chunk_offset_start",
                (file_path,),
            ).fetchall()
        if not rows:
            return np.zeros((0, self.dimensions), dtype="float32")
        return np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])

    def file_paths(self) -> List[str]:
        with self._lock:
            self._check_ready()
            return [
                row["file_path"]
                for row in self._conn.execute(
                    f"SELECT DISTINCT file_path FROM {TABLE_NAME} ORDER BY file_path"
                )
            ]

    def count(self) -> int:
        with self._lock:
            self._check_ready()
            return int(self._conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()[0])

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._check_ready()
            documents = self._conn.execute(
                f"SELECT COUNT(DISTINCT file_path) FROM {TABLE_NAME}"
            ).fetchone()[0]
            return {
                "db_path": str(self.db_path),
                "dimensions": self.dimensions,
                "document_count": int(documents),
                "chunk_count": self.count(),
                "ann_ready": self._ann is not None and not self._ann_deferred,
                "ann_size": len(self._ann) if self._ann is not None else 0,
            }

    def _hits_for_ids(self, ids: Sequence[int], distances: Sequence[float]) -> List[SearchHit]:
        if not ids:
            return []
        rows = self._conn.execute(
            f"""
            SELECT id, file_path, chunk_offset_start, chunk_offset_end, chunk
            FROM {TABLE_NAME} WHERE id IN ({_placeholders(len(ids))})
            """,
            tuple(int(label) for label in ids),
        ).fetchall()
        by_id = {row["id"]: row for row in rows}
        hits: List[SearchHit] = []
        for label, distance in zip(ids, distances):
            row = by_id.get(int(label))
            if row is None:
                continue
            hits.append(
                SearchHit(
                    id=row["id"],
                    file_path=row["file_path"],
                    chunk_offset_start=row["chunk_offset_start"],
                    chunk_offset_end=row["chunk_offset_end"],
                    distance=float(distance),
                    text=row["chunk"],
                )
            )
        return hits

    def _exact_search(
        self, query: np.ndarray, limit: int, exclude_file_paths: Sequence[str]
    ) -> List[SearchHit]:
        sql = f"SELECT id, embedding FROM {TABLE_NAME}"
        params: Tuple[Any, ...] = ()
        if exclude_file_paths:
            sql += f" WHERE file_path NOT IN ({_placeholders(len(exclude_file_paths))})"
            params = tuple(exclude_file_paths)
        rows = self._conn.execute(sql, params).fetchall()
        if not rows:
            return []

        embeddings = np.vstack([np.frombuffer(row["embedding"], dtype="float32") for row in rows])
        norms = np.linalg.norm(embeddings, axis=1)
        norms[norms == 0] = 1.0
        distances = 1.0 - (embeddings @ query) / norms

        if limit < len(distances):
            top_indices = np.argpartition(distances, limit - 1)[:limit]
            top_indices = top_indices[np.argsort(distances[top_indices], kind="stable")]
        else:
            top_indices = np.argsort(distances, kind="stable")
        ids = [rows[idx]["id"] for idx in top_indices]
        return self._hits_for_ids(ids, [float(distances[idx]) for idx in top_indices])

    def search(
        self,
        vector: np.ndarray,
        limit: int,
        *,
        ef_search: int | None = None,
        exclude_file_paths: Sequence[str] = (),
    ) -> List[SearchHit]:
        """Nearest chunks by ascending cosine distance (``1 - cos``)."""
        if limit < 1:
            raise InvalidQueryError("limit must be at least 1")
        query = self._validate_vector(vector)
        norm = float(np.linalg.norm(query))
        if norm == 0:
            raise InvalidQueryError("Query vector is all zeros")
        query = query / norm
        excluded_paths = sorted(set(exclude_file_paths))

        with self._lock:
            self._check_ready()
            excluded_ids: set[int] = set()
            if excluded_paths:
                excluded_ids = {
                    row["id"]
                    for row in self._conn.execute(
                        f"SELECT id FROM {TABLE_NAME} "
                        f"WHERE file_path IN ({_placeholders(len(excluded_paths))})",
                        tuple(excluded_paths),
                    )
                }
            live = self.count()
            wanted = min(limit, live - len(excluded_ids))
            if wanted <= 0:
                return []

            if self._ann is not None and not self._ann_deferred:
                try:
                    labels, distances = self._ann.query(
                        query, min(live, limit + len(excluded_ids)), ef_search=ef_search
                    )
                except RuntimeError as exc:
                    LOGGER.debug("ANN query failed (%s), using exact scan", exc)
                else:
                    keep = [
                        (int(label), float(distance))
                        for label, distance in zip(labels, distances)
                        if int(label) not in excluded_ids
                    ][:limit]
                    if len(keep) >= wanted:
                        return self._hits_for_ids(
                            [label for label, _ in keep], [distance for _, distance in keep]
                        )
                    LOGGER.debug("ANN returned %d of %d neighbours, using exact scan", len(keep), wanted)

            return self._exact_search(query, limit, excluded_paths)
