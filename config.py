"""Configuration for relay-memory."""

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class Config:
    """Engine configuration with sensible defaults.

    Defaults are read from the environment when this module is imported.
    Components accept an explicit ``Config(...)`` for anything else.
    """

    db_path: Path = Path(os.environ.get("MEMORY_DB_PATH", Path.home() / ".relay-memory" / "lancedb"))
    messages_table: str = "messages"
    embeddings_table: str = "embeddings"
    enabled: bool = os.environ.get("MEMORY_ENABLED", "true").lower() != "false"
    recent_k: int = int(os.environ.get("MEMORY_RECENT_COUNT", "5"))
    similar_k: int = int(os.environ.get("MEMORY_TOP_K", "15"))
    retention_days: int = int(os.environ.get("MEMORY_RETENTION_DAYS", "90"))  # 0 = keep forever
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "sentence-transformers")
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "all-MiniLM-L6-v2")
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "384"))
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    queue_size: int = int(os.environ.get("MEMORY_QUEUE_SIZE", "256"))
    embedding_workers: int = 1
    cleanup_interval_hours: float = 24
    context_timeout: float = float(os.environ.get("MEMORY_CONTEXT_TIMEOUT", "10"))
    max_message_length: int = 1000
    trim_message_to: int = 500
    max_author_length: int = 100
    max_channel_length: int = 100


CONFIG = Config()
