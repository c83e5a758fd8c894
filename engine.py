"""MemoryEngine: the conversational memory used by the chat relay.

Wires the message store, vector index, embedding pipeline, hybrid retriever
and retention sweeper together behind the four calls the chat layer uses:
``store_message``, ``get_context``, ``is_ready`` and ``get_stats``.
"""

from __future__ import annotations

import asyncio
import sys
import threading

import lancedb

from config import CONFIG, Config
from embeddings import EmbeddingProvider, create_provider
from errors import DimensionMismatch
from models import MemoryStats, Message
from pipeline import EmbeddingPipeline, OutcomeSink, log_outcome
from retention import RetentionSweeper
from retriever import HybridRetriever
from store import MessageStore
from utils import validate_message
from vector_index import VectorIndex

DISABLED_ID = -1


class MemoryEngine:
    def __init__(
        self,
        config: Config = CONFIG,
        provider: EmbeddingProvider | None = None,
        sink: OutcomeSink = log_outcome,
    ):
        self.config = config
        self.provider = provider
        self.sink = sink
        self.store: MessageStore | None = None
        self.index: VectorIndex | None = None
        self.pipeline: EmbeddingPipeline | None = None
        self.retriever: HybridRetriever | None = None
        self.sweeper: RetentionSweeper | None = None
        self._init_lock = asyncio.Lock()
        self._ready = False

    async def initialize(self) -> None:
        """Open storage, load the embedding model and start background work.

        Idempotent; a no-op when the engine is disabled.
        """
        if not self.config.enabled:
            print("[relay-memory] Memory system disabled", file=sys.stderr)
            return
        async with self._init_lock:
            if self._ready:
                return
            print("[relay-memory] Initializing memory engine...", file=sys.stderr)
            await asyncio.to_thread(self._open_storage)

            if self.provider is None:
                self.provider = create_provider(self.config)
            # Model loading can take tens of seconds on a cold cache
            await asyncio.to_thread(self.provider.load)
            if self.provider.dimension != self.index.dimension:
                raise DimensionMismatch(self.index.dimension, self.provider.dimension)

            self.pipeline = EmbeddingPipeline(
                self.provider,
                self.store,
                self.index,
                sink=self.sink,
                queue_size=self.config.queue_size,
                workers=self.config.embedding_workers,
            )
            self.retriever = HybridRetriever(
                self.store,
                self.index,
                self.provider,
                recent_k=self.config.recent_k,
                similar_k=self.config.similar_k,
                timeout=self.config.context_timeout,
            )
            self.sweeper = RetentionSweeper(
                self.store,
                self.config.retention_days,
                interval_hours=self.config.cleanup_interval_hours,
            )
            self.pipeline.start()
            self.sweeper.start()
            self._ready = True
            print("[relay-memory] Memory engine ready", file=sys.stderr)

    def _open_storage(self) -> None:
        self.config.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = lancedb.connect(str(self.config.db_path))
        lock = threading.RLock()
        self.index = VectorIndex(
            db, self.config.embedding_dim, table_name=self.config.embeddings_table, lock=lock
        )
        self.store = MessageStore(
            db, table_name=self.config.messages_table, index=self.index, lock=lock
        )
        print(f"[relay-memory] Database opened: {self.config.db_path}", file=sys.stderr)

    def is_ready(self) -> bool:
        return self.config.enabled and self._ready

    async def store_message(self, channel: str, author: str, text: str, role: str = "user") -> int:
        """Durably record a message and queue its embedding.

        Returns the new id, or ``-1`` when the engine is disabled or not ready.
        Raises ``InvalidMessage`` for bad input and ``StorageFailure`` if the
        write itself fails.
        """
        if not self.is_ready():
            return DISABLED_ID
        text = validate_message(self.config, channel, author, text, role)
        message_id = await asyncio.to_thread(self.store.append, channel, author, text, role)
        self.pipeline.submit(message_id, channel, text)
        return message_id

    async def get_context(self, channel: str, query_text: str) -> list[Message]:
        """Hybrid context as ``Message`` objects; ``[]`` when unavailable."""
        if not self.is_ready():
            return []
        return await self.retriever.get_context(channel, query_text)

    async def get_context_messages(self, channel: str, query_text: str) -> list[dict]:
        """Hybrid context as ``{author, text, role, timestamp}`` dicts."""
        return [m.to_context() for m in await self.get_context(channel, query_text)]

    def get_stats(self) -> MemoryStats:
        if not self.is_ready():
            return MemoryStats()
        return self.store.stats()

    async def purge_older_than(self, cutoff: int) -> int:
        if not self.is_ready():
            return 0
        return await asyncio.to_thread(self.store.purge_older_than, cutoff)

    async def sweep(self) -> int:
        """Run the retention sweep now."""
        if not self.is_ready():
            return 0
        return await asyncio.to_thread(self.sweeper.sweep)

    async def drain(self) -> None:
        """Wait for all queued embeddings to finish."""
        if self.pipeline is not None:
            await self.pipeline.drain()

    async def close(self) -> None:
        """Stop background work. The database needs no explicit close."""
        if self.pipeline is not None:
            await self.pipeline.stop()
        if self.sweeper is not None:
            await self.sweeper.stop()
        if self._ready:
            print("[relay-memory] Memory engine closed", file=sys.stderr)
        self._ready = False
