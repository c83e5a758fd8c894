"""Vector index: message id -> embedding, searchable per channel by cosine distance."""

from __future__ import annotations

import sys
import threading
from collections.abc import Iterable, Sequence

import lancedb
import pyarrow as pa

from errors import DimensionMismatch, IndexUnavailable, QueryFailure
from models import SearchHit, embedding_schema
from utils import escape_filter_value

# Over-fetch so ties at the cut-off are resolved by message id, not by scan order
FETCH_MULTIPLIER = 3
DISTANCE_DECIMALS = 6
DELETE_BATCH_SIZE = 500


def open_or_create_table(db: lancedb.DBConnection, name: str, schema) -> lancedb.table.Table:
    """Open ``name``, creating it with ``schema`` if missing (safe to race)."""
    try:
        return db.open_table(name)
    except Exception:
        if name in list_table_names(db):
            raise
        return db.create_table(name, schema=schema, exist_ok=True)


def list_table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        response = db.list_tables()
    except AttributeError:
        response = db.table_names()
    except Exception:
        return []
    # Newer lancedb returns a paginated response object
    return list(getattr(response, "tables", response))


def ensure_scalar_index(table: lancedb.table.Table, column: str) -> bool:
    """Create a BTREE index on ``column`` once the table has data.

    Returns True when the index exists afterwards, so callers can stop asking.
    """
    try:
        indices = table.list_indices()
        if any(column in str(idx) for idx in indices):
            return True
        if table.count_rows() == 0:
            return False
        table.create_scalar_index(column)
        print(f"[relay-memory] Scalar index created on '{column}'", file=sys.stderr)
        return True
    except Exception as e:
        print(f"[relay-memory] Scalar index warning ({column}): {e}", file=sys.stderr)
        return False


class VectorIndex:
    """Embeddings stored one row per message, with the owning channel denormalised."""

    def __init__(
        self,
        db: lancedb.DBConnection,
        dimension: int,
        table_name: str = "embeddings",
        lock: threading.RLock | None = None,
    ):
        self.dimension = dimension
        self.lock = lock or threading.RLock()
        self._schema = embedding_schema(dimension)
        try:
            self._table = open_or_create_table(db, table_name, self._schema)
        except Exception as e:
            raise IndexUnavailable(f"Cannot open vector table '{table_name}': {e}") from e
        self._indexed = ensure_scalar_index(self._table, "channel")

    @property
    def indexed(self) -> bool:
        return self._indexed

    def _check_dimension(self, vector: Sequence[float]) -> None:
        if len(vector) != self.dimension:
            raise DimensionMismatch(self.dimension, len(vector))

    def upsert(self, message_id: int, vector: Sequence[float], channel: str) -> None:
        """Associate ``vector`` with ``message_id``; replaces any previous vector."""
        self._check_dimension(vector)
        row = {"message_id": int(message_id), "channel": channel, "vector": [float(v) for v in vector]}
        data = pa.Table.from_pylist([row], schema=self._schema)
        try:
            with self.lock:
                (
                    self._table.merge_insert("message_id")
                    .when_matched_update_all()
                    .when_not_matched_insert_all()
                    .execute(data)
                )
                if not self._indexed:
                    self._indexed = ensure_scalar_index(self._table, "channel")
        except Exception as e:
            raise IndexUnavailable(f"Failed to store vector for message {message_id}: {e}") from e

    def search(self, channel: str, query_vector: Sequence[float], limit: int) -> list[SearchHit]:
        """Nearest neighbours in ``channel``, ascending distance, ties by message id."""
        if limit <= 0:
            return []
        self._check_dimension(query_vector)
        where = f"channel = '{escape_filter_value(channel)}'"
        try:
            if self._table.count_rows(where) == 0:
                return []
            rows = (
                self._table.search(list(query_vector), vector_column_name="vector")
                .distance_type("cosine")
                .where(where, prefilter=True)
                .select(["message_id"])
                .limit(limit * FETCH_MULTIPLIER)
                .to_list()
            )
        except Exception as e:
            raise QueryFailure(f"Vector search failed in {channel}: {e}") from e

        hits = [SearchHit(int(r["message_id"]), float(r["_distance"])) for r in rows]
        hits.sort(key=lambda h: (round(h.distance, DISTANCE_DECIMALS), h.message_id))
        return hits[:limit]

    def delete(self, message_id: int) -> None:
        """Remove the embedding for ``message_id``; no-op if absent."""
        self.delete_many([message_id])

    def delete_many(self, message_ids: Iterable[int]) -> None:
        ids = sorted({int(i) for i in message_ids})
        with self.lock:
            for start in range(0, len(ids), DELETE_BATCH_SIZE):
                batch = ids[start : start + DELETE_BATCH_SIZE]
                self._table.delete(f"message_id IN ({', '.join(map(str, batch))})")

    def has(self, message_id: int) -> bool:
        return self._table.count_rows(f"message_id = {int(message_id)}") > 0

    def count(self, channel: str | None = None) -> int:
        if channel is None:
            return self._table.count_rows()
        return self._table.count_rows(f"channel = '{escape_filter_value(channel)}'")
