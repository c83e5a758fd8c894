"""Shared fixtures: isolated LanceDB per test and offline embedding providers."""

import time

import lancedb
import pytest

from config import Config
from embeddings import EmbeddingProvider, HashingProvider
from engine import MemoryEngine
from store import MessageStore
from vector_index import VectorIndex

DIM = 384


class FailingProvider(EmbeddingProvider):
    """Provider whose every embedding attempt blows up."""

    name = "failing"

    def _compute(self, text):
        raise RuntimeError("model exploded")


class SlowProvider(HashingProvider):
    """Hashing provider that takes ``delay`` seconds per text."""

    name = "slow"

    def __init__(self, dimension, delay):
        super().__init__(dimension)
        self.delay = delay

    def _compute(self, text):
        time.sleep(self.delay)
        return super()._compute(text)


@pytest.fixture
def db(tmp_path):
    return lancedb.connect(str(tmp_path / "lancedb"))


@pytest.fixture
def index(db):
    return VectorIndex(db, DIM)


@pytest.fixture
def store(db, index):
    return MessageStore(db, index=index)


@pytest.fixture
def provider():
    return HashingProvider(DIM)


@pytest.fixture
def failing_provider():
    return FailingProvider(DIM)


@pytest.fixture
def slow_provider():
    def _make(delay):
        return SlowProvider(DIM, delay)

    return _make


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        settings = {
            "db_path": tmp_path / "engine-db",
            "embedding_provider": "hash",
            "embedding_dim": DIM,
            "recent_k": 5,
            "similar_k": 15,
            "retention_days": 0,
            "context_timeout": 5.0,
        }
        settings.update(overrides)
        return Config(**settings)

    return _make


@pytest.fixture
def outcomes():
    return []


@pytest.fixture
async def engine(make_config, outcomes):
    """Initialized engine on an isolated database, outcomes collected in a list."""
    engine = MemoryEngine(make_config(), provider=HashingProvider(DIM), sink=outcomes.append)
    await engine.initialize()
    yield engine
    await engine.close()
