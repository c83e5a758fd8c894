"""Embedding providers.

A provider turns text into a unit-length vector of fixed dimension. Providers
are expensive to load and are created once per process, then shared
read-only by the pipeline and the retriever.
"""

from __future__ import annotations

import hashlib
import re
import sys
import threading
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import numpy as np

from config import Config
from errors import EmbeddingFailure

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

EMBEDDING_CACHE_SIZE = 128
_TOKEN_RE = re.compile(r"\w+")


def _normalize(values: Any) -> list[float]:
    embedding = np.asarray(values, dtype=np.float32)
    norm = np.linalg.norm(embedding)
    return (embedding / norm).tolist() if norm > 0 else embedding.tolist()


class EmbeddingProvider:
    """Base class: subclasses implement ``_load`` and ``_compute``."""

    name = "base"

    def __init__(self, dimension: int):
        self.dimension = dimension
        self._lock = threading.Lock()
        self._loaded = False
        self._cached = lru_cache(maxsize=EMBEDDING_CACHE_SIZE)(self._embed_uncached)

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        """Load model resources (thread-safe, idempotent)."""
        if self._loaded:
            return
        with self._lock:
            if not self._loaded:  # Double-check after acquiring lock
                self._load()
                self._loaded = True

    def embed(self, text: str) -> list[float]:
        """Embed ``text``, raising ``EmbeddingFailure`` on any provider error."""
        return list(self._cached(text))

    def _embed_uncached(self, text: str) -> tuple[float, ...]:
        try:
            self.load()
            vector = self._compute(text)
        except EmbeddingFailure:
            raise
        except Exception as e:
            raise EmbeddingFailure(f"{self.name} embedding error: {e}") from e
        return tuple(_normalize(vector))

    def _load(self) -> None:
        pass

    def _compute(self, text: str) -> Any:
        raise NotImplementedError


class SentenceTransformerProvider(EmbeddingProvider):
    """Local sentence-transformers model, mean-pooled (default all-MiniLM-L6-v2, 384-d)."""

    name = "sentence-transformers"

    def __init__(self, model_name: str, dimension: int):
        super().__init__(dimension)
        self.model_name = model_name
        self._model = None

    def _load(self) -> None:
        from sentence_transformers import SentenceTransformer

        print(f"[relay-memory] Loading embedding model {self.model_name}...", file=sys.stderr)
        self._model = SentenceTransformer(self.model_name)
        print(f"[relay-memory] Embedding model loaded: {self.model_name}", file=sys.stderr)

    def _compute(self, text: str) -> Any:
        return self._model.encode(text, normalize_embeddings=True)


class OllamaProvider(EmbeddingProvider):
    """Embeddings from a local Ollama server."""

    name = "ollama"

    def __init__(self, model_name: str, dimension: int, base_url: str, timeout: float = 30):
        super().__init__(dimension)
        self.model_name = model_name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _compute(self, text: str) -> Any:
        import requests

        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model_name, "prompt": text},
            timeout=self.timeout,
        )
        response.raise_for_status()
        embedding = response.json().get("embedding")
        if not embedding:
            raise EmbeddingFailure("Ollama returned no embedding")
        return embedding


class GoogleProvider(EmbeddingProvider):
    """Embeddings from the Google GenAI API."""

    name = "google"

    def __init__(self, model_name: str, dimension: int, api_key: str | None = None):
        super().__init__(dimension)
        self.model_name = model_name
        self._api_key = api_key
        self._client: GenAIClient | None = None

    def _load(self) -> None:
        import os

        from google import genai

        key = self._api_key or os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
        if not key:
            raise EmbeddingFailure("GOOGLE_API_KEY not found. Set environment variable.")
        self._client = genai.Client(api_key=key)

    def _compute(self, text: str) -> Any:
        from google.genai import types

        response = self._client.models.embed_content(
            model=self.model_name,
            contents=text,
            config=types.EmbedContentConfig(
                task_type="SEMANTIC_SIMILARITY", output_dimensionality=self.dimension
            ),
        )
        return response.embeddings[0].values


class HashingProvider(EmbeddingProvider):
    """Deterministic feature-hashed bag of words.

    No model download and no network: texts sharing words land close
    together. Useful offline and as a stand-in for a real model in tests.
    """

    name = "hash"

    def _compute(self, text: str) -> Any:
        values = np.zeros(self.dimension, dtype=np.float32)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.md5(token.encode()).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dimension
            sign = 1.0 if digest[4] & 1 else -1.0
            values[bucket] += sign
        return values


def create_provider(config: Config) -> EmbeddingProvider:
    """Build the provider named by ``config.embedding_provider``."""
    provider = config.embedding_provider.lower()
    if provider == "sentence-transformers":
        return SentenceTransformerProvider(config.embedding_model, config.embedding_dim)
    if provider == "ollama":
        return OllamaProvider(config.embedding_model, config.embedding_dim, config.ollama_base_url)
    if provider == "google":
        return GoogleProvider(config.embedding_model, config.embedding_dim)
    if provider == "hash":
        return HashingProvider(config.embedding_dim)
    raise ValueError(
        f"Unknown embedding provider '{config.embedding_provider}'. "
        "Valid: sentence-transformers, ollama, google, hash"
    )
