"""Error taxonomy for relay-memory.

Only ``StorageFailure`` (and ``InvalidMessage`` for bad input) ever reaches
the caller of ``store_message``. Everything else is recovered where it
happens and turned into "no data".
"""


class RelayMemoryError(Exception):
    """Base class for all engine errors."""


class StorageFailure(RelayMemoryError):
    """The durable message log could not be read or written."""


class EmbeddingFailure(RelayMemoryError):
    """A vector could not be produced or persisted for a message."""


class IndexUnavailable(EmbeddingFailure):
    """The vector index backend rejected a write or a query."""


class DimensionMismatch(EmbeddingFailure):
    """A vector does not have the index's fixed dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected vector of dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class QueryFailure(RelayMemoryError):
    """A read (recency scan, similarity search or their merge) failed."""


class InvalidMessage(RelayMemoryError, ValueError):
    """Input rejected at the ingestion boundary."""
