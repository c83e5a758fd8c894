"""End-to-end tests for MemoryEngine, the boundary used by the chat relay."""

import asyncio

import pytest

from conftest import DIM
from embeddings import HashingProvider
from engine import DISABLED_ID, MemoryEngine
from errors import DimensionMismatch, InvalidMessage
from models import MemoryStats


class TestLifecycle:
    async def test_ready_after_initialize(self, engine):
        assert engine.is_ready()
        assert engine.pipeline.running

    async def test_initialize_is_idempotent(self, engine):
        pipeline = engine.pipeline
        await engine.initialize()
        assert engine.pipeline is pipeline

    async def test_not_ready_before_initialize(self, make_config):
        engine = MemoryEngine(make_config(), provider=HashingProvider(DIM))
        assert not engine.is_ready()
        assert await engine.store_message("#a", "alice", "hello") == DISABLED_ID
        assert await engine.get_context("#a", "hello") == []
        assert engine.get_stats() == MemoryStats()

    async def test_close(self, engine):
        await engine.close()
        assert not engine.is_ready()
        assert not engine.pipeline.running

    async def test_provider_dimension_must_match_index(self, make_config):
        engine = MemoryEngine(make_config(), provider=HashingProvider(DIM * 2))
        with pytest.raises(DimensionMismatch):
            await engine.initialize()
        assert not engine.is_ready()

    async def test_provider_built_from_config(self, make_config):
        engine = MemoryEngine(make_config())
        await engine.initialize()
        assert isinstance(engine.provider, HashingProvider)
        await engine.close()


class TestDisabled:
    async def test_disabled_engine(self, make_config):
        """Disabled: store returns -1 and context is empty."""
        engine = MemoryEngine(make_config(enabled=False), provider=HashingProvider(DIM))
        await engine.initialize()
        assert not engine.is_ready()
        assert await engine.store_message("#a", "alice", "hello", "user") == DISABLED_ID
        assert await engine.get_context("#a", "hello") == []
        assert await engine.get_context_messages("#a", "hello") == []
        assert await engine.sweep() == 0


class TestStoreMessage:
    async def test_returns_increasing_ids(self, engine):
        ids = [await engine.store_message("#a", "alice", f"message {i}") for i in range(3)]
        assert ids == sorted(ids)
        assert all(i > 0 for i in ids)

    async def test_concurrent_stores_get_unique_ids(self, engine):
        ids = await asyncio.gather(
            *(engine.store_message(f"#{i % 3}", "alice", f"message {i}") for i in range(12))
        )
        assert len(set(ids)) == 12
        for channel in ["#0", "#1", "#2"]:
            channel_ids = [m.id for m in engine.store.recent(channel, 10)]
            assert channel_ids == sorted(channel_ids)

    async def test_text_is_stripped_and_trimmed(self, engine):
        await engine.store_message("#a", "alice", "  " + "x" * 800 + "  ")
        [message] = engine.store.recent("#a", 1)
        assert message.text == "x" * engine.config.trim_message_to

    @pytest.mark.parametrize(
        ("channel", "author", "text", "role"),
        [
            ("", "alice", "hello", "user"),
            ("#a", "", "hello", "user"),
            ("#a", "alice", "", "user"),
            ("#a", "alice", "   ", "user"),
            ("#a", "alice", "x" * 1001, "user"),
            ("#a", "a" * 101, "hello", "user"),
            ("#a", "alice", "hello", "system"),
        ],
    )
    async def test_invalid_input_rejected(self, engine, channel, author, text, role):
        with pytest.raises(InvalidMessage):
            await engine.store_message(channel, author, text, role)
        assert engine.get_stats().total_count == 0

    async def test_ingestion_does_not_wait_for_embedding(self, make_config, slow_provider):
        engine = MemoryEngine(make_config(), provider=slow_provider(0.3))
        await engine.initialize()
        try:
            message_id = await engine.store_message("#a", "alice", "hello")
            assert not engine.index.has(message_id)
            assert [m.id for m in engine.store.recent("#a", 1)] == [message_id]
            await engine.drain()
            assert engine.index.has(message_id)
        finally:
            await engine.close()


class TestGetContext:
    async def test_semantic_memory_across_turns(self, make_config, outcomes):
        engine = MemoryEngine(
            make_config(recent_k=0, similar_k=1), provider=HashingProvider(DIM), sink=outcomes.append
        )
        await engine.initialize()
        try:
            await engine.store_message("#a", "alice", "my favorite color is red")
            await engine.store_message("#a", "bob", "the weather is sunny today")
            await engine.drain()
            context = await engine.get_context_messages("#a", "what is my favorite color?")
        finally:
            await engine.close()

        assert [c["text"] for c in context] == ["my favorite color is red"]
        assert set(context[0]) == {"author", "text", "role", "timestamp"}
        assert all(o.status == "stored" for o in outcomes)

    async def test_identical_texts_tie_deterministically(self, engine):
        first = await engine.store_message("#a", "alice", "ping pong")
        second = await engine.store_message("#a", "bob", "ping pong")
        await engine.drain()
        vector = engine.provider.embed("ping pong")
        runs = [engine.index.search("#a", vector, 2) for _ in range(3)]
        assert [h.message_id for h in runs[0]] == [first, second]
        assert all(h.distance == pytest.approx(0.0, abs=1e-5) for h in runs[0])
        assert runs[0] == runs[1] == runs[2]

    async def test_assistant_replies_are_remembered(self, engine):
        await engine.store_message("#a", "alice", "hi bot")
        await engine.store_message("#a", "bot", "hello alice", "assistant")
        context = await engine.get_context("#a", "hi")
        assert [m.role for m in context[:2]] == ["user", "assistant"]


class TestDegradedMode:
    async def test_failing_provider(self, make_config, failing_provider, outcomes):
        """Storage succeeds and recency still answers when embeddings always fail."""
        engine = MemoryEngine(make_config(recent_k=2), provider=failing_provider, sink=outcomes.append)
        await engine.initialize()
        try:
            ids = [await engine.store_message("#a", "alice", text) for text in ["one", "two", "three"]]
            await engine.drain()
            assert all(i > 0 for i in ids)
            context = await engine.get_context("#a", "two")
        finally:
            await engine.close()

        assert [m.text for m in context] == ["two", "three"]
        assert [o.status for o in outcomes] == ["failed"] * 3


class TestStatsAndRetention:
    async def test_stats(self, engine):
        for channel in ["#a", "#b", "#a"]:
            await engine.store_message(channel, "alice", "hello")
        assert engine.get_stats() == MemoryStats(total_count=3, per_channel_counts={"#a": 2, "#b": 1})

    async def test_purge_everything(self, engine):
        for channel in ["#a", "#b"]:
            await engine.store_message(channel, "alice", "hello there")
        await engine.drain()
        future = engine.store.recent("#a", 1)[0].timestamp + 10**9

        assert await engine.purge_older_than(future) == 2
        for channel in ["#a", "#b"]:
            assert await engine.get_context(channel, "hello there") == []
        assert engine.index.count() == 0

    async def test_unbounded_sweep(self, engine):
        await engine.store_message("#a", "alice", "hello")
        assert await engine.sweep() == 0
        assert engine.get_stats().total_count == 1

    async def test_sweeper_runs_with_retention(self, make_config):
        engine = MemoryEngine(make_config(retention_days=30), provider=HashingProvider(DIM))
        await engine.initialize()
        try:
            assert engine.sweeper.running
            await engine.store_message("#a", "alice", "fresh")
            assert await engine.sweep() == 0
        finally:
            await engine.close()
        assert not engine.sweeper.running
