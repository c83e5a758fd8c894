"""Background embedding pipeline.

``submit`` is called right after a message is durably stored and never
blocks. Workers compute the vector off the event loop and write it to the
vector index. Every job ends in exactly one ``EmbeddingOutcome`` handed to
the sink; nothing here ever raises into the ingestion path.
"""

from __future__ import annotations

import asyncio
import sys
import time
from collections.abc import Callable
from typing import NamedTuple

from embeddings import EmbeddingProvider
from errors import EmbeddingFailure
from models import EmbeddingOutcome
from store import MessageStore
from vector_index import VectorIndex

OutcomeSink = Callable[[EmbeddingOutcome], None]


def log_outcome(outcome: EmbeddingOutcome) -> None:
    """Default sink: report anything other than success on stderr."""
    if outcome.ok:
        return
    detail = f": {outcome.error}" if outcome.error else ""
    print(
        f"[relay-memory] Embedding {outcome.status} for message {outcome.message_id}{detail}",
        file=sys.stderr,
    )


class EmbeddingJob(NamedTuple):
    message_id: int
    channel: str
    text: str


class EmbeddingPipeline:
    """Bounded queue of embedding jobs drained by worker tasks.

    When the queue is full the oldest pending job is dropped to make room:
    recent messages matter most for chat context.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        store: MessageStore,
        index: VectorIndex,
        sink: OutcomeSink = log_outcome,
        queue_size: int = 256,
        workers: int = 1,
    ):
        self.provider = provider
        self.store = store
        self.index = index
        self.sink = sink
        self.workers = max(1, workers)
        self._queue: asyncio.Queue[EmbeddingJob] = asyncio.Queue(maxsize=max(1, queue_size))
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._worker(), name=f"embedding-worker-{i}")
            for i in range(self.workers)
        ]

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

    async def drain(self) -> None:
        """Wait until every submitted job has produced an outcome."""
        await self._queue.join()

    def submit(self, message_id: int, channel: str, text: str) -> None:
        job = EmbeddingJob(message_id, channel, text)
        while True:
            try:
                self._queue.put_nowait(job)
                return
            except asyncio.QueueFull:
                try:
                    dropped = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self._queue.task_done()
                self._report(EmbeddingOutcome(dropped.message_id, "dropped", "queue full"))

    def _report(self, outcome: EmbeddingOutcome) -> None:
        try:
            self.sink(outcome)
        except Exception as e:
            print(f"[relay-memory] Outcome sink error: {e}", file=sys.stderr)

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            try:
                outcome = await self.embed_and_store(job.message_id, job.channel, job.text)
                self._report(outcome)
            finally:
                self._queue.task_done()

    async def embed_and_store(self, message_id: int, channel: str, text: str) -> EmbeddingOutcome:
        """Embed ``text`` and store it for ``message_id``. Failures become outcomes."""
        started = time.perf_counter()
        try:
            vector = await asyncio.to_thread(self.provider.embed, text)
            stored = await asyncio.to_thread(self._store_vector, message_id, channel, vector)
        except EmbeddingFailure as e:
            return EmbeddingOutcome(message_id, "failed", str(e), time.perf_counter() - started)
        except Exception as e:
            return EmbeddingOutcome(
                message_id, "failed", f"{type(e).__name__}: {e}", time.perf_counter() - started
            )
        status = "stored" if stored else "orphaned"
        return EmbeddingOutcome(message_id, status, None, time.perf_counter() - started)

    def _store_vector(self, message_id: int, channel: str, vector: list[float]) -> bool:
        # Same lock as purge, so a message cannot disappear between check and write
        with self.store.lock:
            if not self.store.exists(message_id):
                return False
            self.index.upsert(message_id, vector, channel)
            return True
