"""SQLite-backed spatial store for embedding records.

Two tables live in one file:

- ``embeddings``: append-only records keyed by an auto-incrementing
  ``patch_num``, with secondary indexes on ``image_id`` and on the compound
  ``(image_id, top_left_x, top_left_y)`` key used for range scans.
- ``indices``: one summary row per image (all vectors plus light metadata),
  replaced wholesale after each batch.

Schema changes must stay additive: every statement is ``IF NOT EXISTS`` and
``PRAGMA user_version`` records the layout version.
"""

from __future__ import annotations

import json
import math
import sqlite3
import threading
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from numbers import Real
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from patchembed.errors import MalformedQuery, StoreWriteError
from patchembed.geometry import Region
from patchembed.store.schemas import EmbeddingRecord, ImageSummary
from patchembed.utils.logging import get_logger

if TYPE_CHECKING:
    from types import TracebackType

    from patchembed.config import Settings

logger = get_logger(__name__)

STORE_VERSION = 1
IN_MEMORY = ":memory:"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS embeddings (
        patch_num INTEGER PRIMARY KEY AUTOINCREMENT,
        image_id TEXT NOT NULL,
        top_left_x INTEGER NOT NULL,
        top_left_y INTEGER NOT NULL,
        width INTEGER NOT NULL,
        height INTEGER NOT NULL,
        model TEXT NOT NULL,
        dim INTEGER NOT NULL,
        embedding BLOB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_embeddings_image_id ON embeddings (image_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_embeddings_image_xy
        ON embeddings (image_id, top_left_x, top_left_y)
    """,
    """
    CREATE TABLE IF NOT EXISTS indices (
        image_id TEXT PRIMARY KEY,
        vectors TEXT NOT NULL,
        metadata TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
)

_SELECT_COLUMNS = (
    "SELECT patch_num, image_id, top_left_x, top_left_y, width, height, "
    "model, embedding FROM embeddings"
)

_LATEST_ONLY_CLAUSE = (
    "patch_num IN (SELECT MAX(patch_num) FROM embeddings "
    "GROUP BY image_id, top_left_x, top_left_y, width, height, model)"
)

Bound = Sequence[float]


class SpatialEmbeddingStore:
    """Durable, append-only store of EmbeddingRecords.

    A single connection is shared and guarded by a lock, so the store can be
    used from the event loop and from worker threads alike. Every write call
    runs in its own transaction.

    Usage:
        with SpatialEmbeddingStore.from_settings(settings) as store:
            store.put_many(records)
            rows = store.query_range("slide-1", (0, 0), (4096, 4096))
    """

    def __init__(self, path: str | Path = IN_MEMORY) -> None:
        """Open (creating if needed) the store at path.

        Args:
            path: SQLite file path, or ":memory:" for a throwaway store.

        Raises:
            StoreWriteError: If the file cannot be opened or its schema
                version is newer than this code understands.
        """
        self._path = str(path)
        if self._path != IN_MEMORY:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        try:
            self._conn: sqlite3.Connection | None = sqlite3.connect(
                self._path, check_same_thread=False
            )
            self._init_schema()
        except sqlite3.Error as e:
            raise StoreWriteError(f"Failed to open store: {e}", path=self._path) from e

    @classmethod
    def from_settings(cls, settings: Settings) -> SpatialEmbeddingStore:
        """Open the store named by STORE_DIR / STORE_NAME."""
        return cls(settings.store_path)

    @property
    def path(self) -> str:
        """Return the database location."""
        return self._path

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreWriteError("Store is closed", path=self._path)
        return self._conn

    def _init_schema(self) -> None:
        conn = self._connection()
        (version,) = conn.execute("PRAGMA user_version").fetchone()
        if version > STORE_VERSION:
            raise StoreWriteError(
                f"Store schema version {version} is newer than supported "
                f"version {STORE_VERSION}",
                path=self._path,
            )
        with conn:
            for statement in _SCHEMA:
                conn.execute(statement)
            if version < STORE_VERSION:
                conn.execute(f"PRAGMA user_version = {STORE_VERSION}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, record: EmbeddingRecord) -> EmbeddingRecord:
        """Append one record and return it with its assigned record_id."""
        return self.put_many([record])[0]

    def put_many(self, records: Iterable[EmbeddingRecord]) -> list[EmbeddingRecord]:
        """Append records in a single transaction.

        Either every record is written or none is.

        Returns:
            The records with record_id populated, in input order.

        Raises:
            StoreWriteError: If the transaction fails.
        """
        records = list(records)
        if not records:
            return []

        stored: list[EmbeddingRecord] = []
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    for record in records:
                        cursor = conn.execute(
                            "INSERT INTO embeddings (image_id, top_left_x, "
                            "top_left_y, width, height, model, dim, embedding) "
                            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                            (
                                record.image_id,
                                record.region.x,
                                record.region.y,
                                record.region.width,
                                record.region.height,
                                record.model,
                                record.dimension,
                                _encode_vector(record.vector),
                            ),
                        )
                        stored.append(
                            record.model_copy(update={"record_id": cursor.lastrowid})
                        )
            except sqlite3.Error as e:
                raise StoreWriteError(
                    f"Failed to write records: {e}",
                    image_id=records[0].image_id,
                    count=len(records),
                ) from e

        logger.debug(
            "Stored embedding records",
            image_id=records[0].image_id,
            count=len(stored),
        )
        return stored

    def delete_image(self, image_id: str) -> int:
        """Remove every record and the summary row for an image.

        Returns:
            Number of embedding records removed.
        """
        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    cursor = conn.execute(
                        "DELETE FROM embeddings WHERE image_id = ?", (image_id,)
                    )
                    conn.execute("DELETE FROM indices WHERE image_id = ?", (image_id,))
            except sqlite3.Error as e:
                raise StoreWriteError(
                    f"Failed to delete records: {e}", image_id=image_id
                ) from e
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query_range(
        self,
        image_id: str | None = None,
        lower: Bound | None = None,
        upper: Bound | None = None,
        *,
        model: str | None = None,
        latest_only: bool = False,
    ) -> list[EmbeddingRecord]:
        """Return records whose top-left lies strictly between two bounds.

        Bounds compare lexicographically on (x, y), exclusive at both ends.
        A missing lower bound or the origin (0, 0) means "from the start";
        a missing upper bound or one with an infinite x means "to the end".
        Without image_id the bounds apply within every image.

        Args:
            image_id: Restrict to one image.
            lower: (x, y) lower bound.
            upper: (x, y) upper bound.
            model: Restrict to records produced by one model.
            latest_only: Keep only the newest record for each
                (image, region, model), hiding older duplicates.

        Returns:
            Records ordered by (image_id, x, y, record_id).

        Raises:
            MalformedQuery: If a bound is not a pair of numbers.
        """
        lower_xy = _validate_bound(lower, "lower")
        upper_xy = _validate_bound(upper, "upper")

        clauses: list[str] = []
        params: list[Any] = []
        if image_id is not None:
            clauses.append("image_id = ?")
            params.append(image_id)
        if model is not None:
            clauses.append("model = ?")
            params.append(model)

        # The origin is the smallest possible key, so (0, 0) is unbounded too.
        if lower_xy is not None and lower_xy != (0.0, 0.0):
            clauses.append("(top_left_x, top_left_y) > (?, ?)")
            params.extend(lower_xy)

        if upper_xy is not None and upper_xy[0] != math.inf:
            clauses.append("(top_left_x, top_left_y) < (?, ?)")
            params.extend(upper_xy)

        if latest_only:
            clauses.append(_LATEST_ONLY_CLAUSE)

        sql = _SELECT_COLUMNS
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY image_id, top_left_x, top_left_y, patch_num"

        with self._lock:
            rows = self._connection().execute(sql, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def count(self, image_id: str | None = None) -> int:
        """Return the number of stored records, optionally for one image."""
        sql = "SELECT COUNT(*) FROM embeddings"
        params: tuple[str, ...] = ()
        if image_id is not None:
            sql += " WHERE image_id = ?"
            params = (image_id,)
        with self._lock:
            (total,) = self._connection().execute(sql, params).fetchone()
        return int(total)

    def image_ids(self) -> list[str]:
        """Return the distinct image ids that have records, sorted."""
        with self._lock:
            rows = self._connection().execute(
                "SELECT DISTINCT image_id FROM embeddings ORDER BY image_id"
            ).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Per-image summary
    # ------------------------------------------------------------------

    def refresh_summary(self, image_id: str) -> ImageSummary | None:
        """Rebuild the summary row for an image from its records.

        Returns:
            The new summary, or None (and no row) if the image has no records.
        """
        try:
            records = self.query_range(image_id)
            if not records:
                with self._lock:
                    conn = self._connection()
                    with conn:
                        conn.execute(
                            "DELETE FROM indices WHERE image_id = ?", (image_id,)
                        )
                return None
        except sqlite3.Error as e:
            raise StoreWriteError(
                f"Failed to refresh summary: {e}", image_id=image_id
            ) from e

        records.sort(key=lambda record: record.record_id or 0)
        summary = ImageSummary(
            image_id=image_id,
            vectors=[list(record.vector) for record in records],
            metadata={
                "count": len(records),
                "models": sorted({record.model for record in records}),
                "dimensions": sorted({record.dimension for record in records}),
                "regions": [list(record.region.to_tuple()) for record in records],
            },
            updated_at=datetime.now(UTC),
        )

        with self._lock:
            conn = self._connection()
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO indices (image_id, vectors, metadata, updated_at) "
                        "VALUES (?, ?, ?, ?) "
                        "ON CONFLICT(image_id) DO UPDATE SET "
                        "vectors = excluded.vectors, metadata = excluded.metadata, "
                        "updated_at = excluded.updated_at",
                        (
                            image_id,
                            json.dumps(summary.vectors),
                            json.dumps(summary.metadata),
                            summary.updated_at.isoformat(),
                        ),
                    )
            except sqlite3.Error as e:
                raise StoreWriteError(
                    f"Failed to write summary: {e}", image_id=image_id
                ) from e
        return summary

    def get_summary(self, image_id: str) -> ImageSummary | None:
        """Return the stored summary for an image, if any."""
        with self._lock:
            row = self._connection().execute(
                "SELECT image_id, vectors, metadata, updated_at FROM indices "
                "WHERE image_id = ?",
                (image_id,),
            ).fetchone()
        if row is None:
            return None
        return ImageSummary(
            image_id=row[0],
            vectors=json.loads(row[1]),
            metadata=json.loads(row[2]),
            updated_at=datetime.fromisoformat(row[3]),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the connection. Safe to call twice."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None

    def __enter__(self) -> SpatialEmbeddingStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SpatialEmbeddingStore(path={self._path!r})"


def _encode_vector(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def _row_to_record(row: tuple[Any, ...]) -> EmbeddingRecord:
    patch_num, image_id, x, y, width, height, model, blob = row
    vector = np.frombuffer(blob, dtype=np.float32)
    return EmbeddingRecord(
        image_id=image_id,
        region=Region(x=x, y=y, width=width, height=height),
        vector=tuple(float(v) for v in vector),
        model=model,
        record_id=patch_num,
    )


def _validate_bound(bound: object, name: str) -> tuple[float, float] | None:
    if bound is None:
        return None
    if isinstance(bound, (str, bytes)) or not isinstance(bound, Sequence):
        raise MalformedQuery(f"{name} bound must be an (x, y) sequence", bound=bound)
    if len(bound) != 2:
        raise MalformedQuery(
            f"{name} bound must have exactly 2 values, got {len(bound)}",
            bound=bound,
        )
    if not all(
        isinstance(value, Real) and not isinstance(value, bool) for value in bound
    ):
        raise MalformedQuery(f"{name} bound values must be numbers", bound=bound)
    x, y = float(bound[0]), float(bound[1])
    if math.isnan(x) or math.isnan(y):
        raise MalformedQuery(f"{name} bound values must not be NaN", bound=bound)
    return (x, y)
