"""Hybrid retrieval: recency window + similarity search, merged and deduplicated."""

from __future__ import annotations

import asyncio
import re
import sys
from collections.abc import Sequence

from embeddings import EmbeddingProvider
from models import Message
from store import MessageStore
from utils import sanitize_for_log
from vector_index import VectorIndex

_NICK_PREFIX = re.compile(r"^[a-zA-Z0-9_\-]+:\s*")


def merge_context(
    recent: Sequence[Message],
    similar: Sequence[Message],
    recent_k: int,
    similar_k: int,
) -> list[Message]:
    """Recent block (chronological) followed by unseen similar messages.

    The similar slice is capped at ``similar_k - recent_k`` so the total never
    exceeds ``similar_k``. With ``recent_k >= similar_k`` it contributes nothing.
    """
    seen = {m.id for m in recent}
    extra: list[Message] = []
    for message in similar:
        if message.id in seen:
            continue
        seen.add(message.id)
        extra.append(message)
    return [*recent, *extra[: max(0, similar_k - recent_k)]]


def to_chat_messages(context: Sequence[Message]) -> list[dict[str, str]]:
    """Turn context into LLM chat turns.

    User turns carry their author (``"nick: text"``); assistant turns have any
    leading ``nick:`` prefix removed, since older replies were stored with one.
    """
    turns = []
    for message in context:
        if message.role == "user":
            turns.append({"role": "user", "content": f"{message.author}: {message.text}"})
        else:
            turns.append({"role": "assistant", "content": _NICK_PREFIX.sub("", message.text).strip()})
    return turns


class HybridRetriever:
    def __init__(
        self,
        store: MessageStore,
        index: VectorIndex,
        provider: EmbeddingProvider,
        recent_k: int = 5,
        similar_k: int = 15,
        timeout: float | None = 10.0,
    ):
        self.store = store
        self.index = index
        self.provider = provider
        self.recent_k = recent_k
        self.similar_k = similar_k
        self.timeout = timeout

    async def get_context(
        self,
        channel: str,
        query_text: str,
        recent_k: int | None = None,
        similar_k: int | None = None,
    ) -> list[Message]:
        """Relevant context for ``query_text`` in ``channel``; ``[]`` on failure or timeout."""
        recent_k = self.recent_k if recent_k is None else recent_k
        similar_k = self.similar_k if similar_k is None else similar_k
        try:
            return await asyncio.wait_for(
                self._gather(channel, query_text, recent_k, similar_k), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            print(f"[relay-memory] Context timed out after {self.timeout}s in {channel}", file=sys.stderr)
        except Exception as e:
            print(f"[relay-memory] Failed to get context in {channel}: {e}", file=sys.stderr)
        return []

    async def _gather(
        self, channel: str, query_text: str, recent_k: int, similar_k: int
    ) -> list[Message]:
        recent, similar = await asyncio.gather(
            asyncio.to_thread(self.store.recent, channel, recent_k),
            self.search_similar(channel, query_text, similar_k),
        )
        combined = merge_context(recent, similar, recent_k, similar_k)
        print(
            f"[relay-memory] Context: {len(recent)} recent + {len(combined) - len(recent)} similar "
            f"= {len(combined)} total in {channel}",
            file=sys.stderr,
        )
        return combined

    async def search_similar(self, channel: str, query_text: str, limit: int) -> list[Message]:
        """Similarity slice resolved to messages, most similar first.

        Failures here only empty this slice; the recency slice still stands.
        """
        if limit <= 0 or not query_text.strip():
            return []
        try:
            vector = await asyncio.to_thread(self.provider.embed, query_text)
            hits = await asyncio.to_thread(self.index.search, channel, vector, limit)
            if not hits:
                return []
            messages = await asyncio.to_thread(self.store.get_many, [h.message_id for h in hits])
        except Exception as e:
            print(
                f"[relay-memory] Similarity search unavailable for '{sanitize_for_log(query_text, 60)}': {e}",
                file=sys.stderr,
            )
            return []
        # A hit whose message was purged meanwhile is skipped
        return [messages[h.message_id] for h in hits if h.message_id in messages]
