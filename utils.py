"""Shared utility functions for relay-memory."""

import re
import time

from config import Config
from errors import InvalidMessage
from models import VALID_ROLES

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def now_ms() -> int:
    """Current wall-clock time in milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


def days_to_ms(days: float) -> int:
    return int(days * 24 * 3600 * 1000)


def sanitize_for_log(text: str, limit: int = 200) -> str:
    """Strip control characters so user text cannot forge log lines."""
    cleaned = _CONTROL_CHARS.sub("", text)
    return cleaned[:limit] + "..." if len(cleaned) > limit else cleaned


def validate_message(config: Config, channel: str, author: str, text: str, role: str) -> str:
    """Validate an inbound message and return its stored (stripped, trimmed) text."""
    if not isinstance(channel, str) or not 0 < len(channel) <= config.max_channel_length:
        raise InvalidMessage("Missing or invalid channel")
    if not isinstance(author, str) or not 0 < len(author) <= config.max_author_length:
        raise InvalidMessage("Missing or invalid author")
    if not isinstance(text, str) or not 0 < len(text) <= config.max_message_length:
        raise InvalidMessage("Missing or invalid text")
    if role not in VALID_ROLES:
        raise InvalidMessage(f"Invalid role '{role}'. Valid: {sorted(VALID_ROLES)}")
    trimmed = text.strip()[: config.trim_message_to]
    if not trimmed:
        raise InvalidMessage("Missing or invalid text")
    return trimmed
