"""Message store: append-only, per-channel log of chat turns on LanceDB."""

from __future__ import annotations

import sys
import threading
from collections.abc import Callable, Iterable

import lancedb
import pyarrow as pa
import pyarrow.compute as pc

from errors import QueryFailure, StorageFailure
from models import MemoryStats, Message
from utils import escape_filter_value, now_ms
from vector_index import VectorIndex, ensure_scalar_index, open_or_create_table

ID_LOOKUP_BATCH_SIZE = 500

# Highest id and timestamp ever handed out; survives purging every message
MARKS_SCHEMA = pa.schema([pa.field("name", pa.string()), pa.field("value", pa.int64())])


class MessageStore:
    """Durable message log.

    Ids and timestamps are assigned under ``lock`` so both are strictly
    (ids) and weakly (timestamps) increasing in insertion order. Pass the
    ``VectorIndex`` so purges cascade to embeddings; the index should share
    the same lock.
    """

    def __init__(
        self,
        db: lancedb.DBConnection,
        table_name: str = "messages",
        index: VectorIndex | None = None,
        lock: threading.RLock | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.index = index
        self.lock = lock or (index.lock if index is not None else threading.RLock())
        self._clock = clock
        try:
            self._table = open_or_create_table(db, table_name, Message)
            self._marks = open_or_create_table(db, f"{table_name}_marks", MARKS_SCHEMA)
            self._next_id, self._last_ts = self._load_counters()
        except Exception as e:
            raise StorageFailure(f"Cannot open message table '{table_name}': {e}") from e
        self._indexed = ensure_scalar_index(self._table, "channel")

    @property
    def indexed(self) -> bool:
        return self._indexed

    def _load_counters(self) -> tuple[int, int]:
        marks = {row["name"]: row["value"] for row in self._marks.to_arrow().to_pylist()}
        last_id = marks.get("last_id", 0)
        last_ts = marks.get("last_timestamp", 0)
        data = self._scan(columns=["id", "timestamp"])
        if data.num_rows:
            last_id = max(last_id, pc.max(data["id"]).as_py())
            last_ts = max(last_ts, pc.max(data["timestamp"]).as_py())
        return last_id + 1, last_ts

    def _save_marks(self, last_id: int, last_ts: int) -> None:
        rows = [{"name": "last_id", "value": last_id}, {"name": "last_timestamp", "value": last_ts}]
        (
            self._marks.merge_insert("name")
            .when_matched_update_all()
            .when_not_matched_insert_all()
            .execute(pa.Table.from_pylist(rows, schema=MARKS_SCHEMA))
        )

    def _scan(self, where: str | None = None, columns: list[str] | None = None) -> pa.Table:
        """Read every row matching ``where`` (LanceDB queries default to 10 rows)."""
        total = self._table.count_rows(where) if where else self._table.count_rows()
        query = self._table.search()
        if where:
            query = query.where(where)
        if columns:
            query = query.select(columns)
        return query.limit(max(total, 1)).to_arrow()

    # -- writes ---------------------------------------------------------------

    def append(self, channel: str, author: str, text: str, role: str) -> int:
        """Insert a message and return its id. Never waits on embeddings."""
        with self.lock:
            message = Message(
                id=self._next_id,
                channel=channel,
                author=author,
                text=text,
                role=role,
                timestamp=max(self._clock(), self._last_ts),
            )
            try:
                self._table.add([message.model_dump()])
            except Exception as e:
                raise StorageFailure(f"Failed to append message to {channel}: {e}") from e
            self._next_id += 1
            self._last_ts = message.timestamp
            if not self._indexed:
                self._indexed = ensure_scalar_index(self._table, "channel")
        return message.id

    def purge_older_than(self, cutoff: int) -> int:
        """Delete messages (and their embeddings) with ``timestamp < cutoff``.

        Returns the number of messages removed.
        """
        where = f"timestamp < {int(cutoff)}"
        with self.lock:
            try:
                ids = self._scan(where, columns=["id"])["id"].to_pylist()
                if not ids:
                    return 0
                # Record the high-water mark before any row disappears
                self._save_marks(self._next_id - 1, self._last_ts)
                # Embeddings first: a vector must never outlive its message
                if self.index is not None:
                    self.index.delete_many(ids)
                self._table.delete(where)
            except Exception as e:
                raise StorageFailure(f"Purge failed: {e}") from e
        print(f"[relay-memory] Purged {len(ids)} messages older than {cutoff}", file=sys.stderr)
        return len(ids)

    # -- reads ----------------------------------------------------------------

    def recent(self, channel: str, limit: int) -> list[Message]:
        """Up to ``limit`` newest messages of ``channel``, returned oldest -> newest."""
        if limit <= 0:
            return []
        try:
            keys = self._scan(f"channel = '{escape_filter_value(channel)}'", columns=["id", "timestamp"])
        except Exception as e:
            raise QueryFailure(f"Recency scan failed in {channel}: {e}") from e
        if keys.num_rows == 0:
            return []
        # Order on the key columns only; full rows are loaded for the window alone
        newest = keys.sort_by([("timestamp", "descending"), ("id", "descending")]).slice(0, limit)
        ids = newest["id"].to_pylist()
        found = self.get_many(ids)
        return [found[i] for i in reversed(ids) if i in found]

    def get_many(self, message_ids: Iterable[int]) -> dict[int, Message]:
        """Fetch messages by id; missing ids are simply absent from the result."""
        ids = sorted({int(i) for i in message_ids})
        found: dict[int, Message] = {}
        try:
            for start in range(0, len(ids), ID_LOOKUP_BATCH_SIZE):
                batch = ids[start : start + ID_LOOKUP_BATCH_SIZE]
                for row in self._scan(f"id IN ({', '.join(map(str, batch))})").to_pylist():
                    found[row["id"]] = Message(**row)
        except Exception as e:
            raise QueryFailure(f"Message lookup failed: {e}") from e
        return found

    def exists(self, message_id: int) -> bool:
        return self._table.count_rows(f"id = {int(message_id)}") > 0

    def all_messages(self, channel: str | None = None) -> list[Message]:
        """Every stored message (optionally one channel), newest first."""
        where = f"channel = '{escape_filter_value(channel)}'" if channel else None
        data = self._scan(where)
        if data.num_rows == 0:
            return []
        data = data.sort_by([("timestamp", "descending"), ("id", "descending")])
        return [Message(**row) for row in data.to_pylist()]

    def stats(self) -> MemoryStats:
        """Total and per-channel counts. Best effort: zeroed stats on error."""
        try:
            total = self._table.count_rows()
            per_channel: dict[str, int] = {}
            if total:
                for channel in self._scan(columns=["channel"])["channel"].to_pylist():
                    per_channel[channel] = per_channel.get(channel, 0) + 1
            return MemoryStats(total_count=total, per_channel_counts=per_channel)
        except Exception as e:
            print(f"[relay-memory] Stats error: {e}", file=sys.stderr)
            return MemoryStats()
