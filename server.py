#!/usr/bin/env python3
"""
Relay Memory MCP Server - conversational memory for a chat-relay bot

Every channel message is stored durably and embedded in the background;
context queries merge the latest messages with semantically similar older ones:
- FastMCP for the tool surface (stdio transport)
- LanceDB for the message log and the per-channel vector index
- sentence-transformers (all-MiniLM-L6-v2, 384-dim) for local embeddings,
  Ollama / Google Gemini / feature hashing as alternatives
"""

from __future__ import annotations

import asyncio
import json

from mcp.server.fastmcp import FastMCP

from config import CONFIG
from engine import DISABLED_ID, MemoryEngine
from errors import InvalidMessage, StorageFailure
from retriever import to_chat_messages
from utils import days_to_ms, now_ms

_engine: MemoryEngine | None = None


def get_engine() -> MemoryEngine:
    """Get or create the process-wide engine."""
    global _engine
    if _engine is None:
        _engine = MemoryEngine(CONFIG)
    return _engine


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(
    "relay-memory",
    instructions="Per-channel chat memory: recency window + semantic recall over LanceDB",
)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
    }
)
async def memory_store(channel: str, author: str, text: str, role: str = "user") -> str:
    """Store a chat message. Its embedding is computed in the background.

    Args:
        channel: Channel the message was seen in (e.g. '#lobby')
        author: Nick of the sender
        text: Message body (trimmed to 500 chars)
        role: 'user' for humans, 'assistant' for bot replies
    """
    try:
        message_id = await get_engine().store_message(channel, author, text, role)
    except InvalidMessage as e:
        return f"Error: {e}"
    except StorageFailure as e:
        return f"Error: Failed to store message: {e}"
    if message_id == DISABLED_ID:
        return "Memory disabled"
    return f"Stored (ID: {message_id}, {channel})"


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_context(channel: str, query: str, as_chat: bool = False) -> str:
    """Relevant context for a new message: recent messages, then similar older ones.

    Args:
        channel: Channel to search (results never cross channels)
        query: The incoming message text
        as_chat: Return JSON chat turns ready to send to a language model
    """
    if not query.strip():
        return "Error: query is required"

    engine = get_engine()
    context = await engine.get_context(channel, query)
    if as_chat:
        return json.dumps(to_chat_messages(context))
    if not context:
        return f"No memories found for '{query}' in {channel}"

    lines = [f"Found {len(context)} messages in {channel}:\n"]
    for i, message in enumerate(context, 1):
        lines.append(f"[{i}] {message.role} {message.author} (ID: {message.id}, ts: {message.timestamp})")
        lines.append(f"    {message.text}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_stats() -> str:
    """Get memory statistics - total and per channel."""
    stats = get_engine().get_stats()
    if stats.total_count == 0:
        return "No messages stored yet."

    lines = [
        "=== Memory Statistics ===",
        f"Total: {stats.total_count} messages",
        "",
        "By Channel:",
    ]
    for channel, count in sorted(stats.per_channel_counts.items(), key=lambda x: x[1], reverse=True):
        lines.append(f"  {channel}: {count}")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": True,
        "destructiveHint": False,
        "idempotentHint": True,
    }
)
async def memory_health() -> str:
    """Get memory system health - readiness, storage, embedding queue, retention."""
    engine = get_engine()
    config = engine.config
    ready = engine.is_ready()

    lines = [
        "=== Memory Health Status ===",
        f"Ready: {'✓' if ready else '✗'}{'' if config.enabled else ' (disabled)'}",
        f"Database: {config.db_path}",
        f"Embedding: {config.embedding_provider} / {config.embedding_model} ({config.embedding_dim}D)",
        f"Context: {config.recent_k} recent, top {config.similar_k}",
    ]
    if ready:
        stats = engine.get_stats()
        lines.append(f"Messages: {stats.total_count}")
        try:
            lines.append(f"Embeddings: {engine.index.count()}")
        except Exception as e:
            lines.append(f"Embeddings: ✗ unavailable ({e})")
        lines.append(f"Embedding queue: {engine.pipeline.pending} pending")
    if config.retention_days <= 0:
        lines.append("Retention: unbounded")
    elif engine.sweeper is not None and engine.sweeper.running:
        lines.append(
            f"Retention: {config.retention_days} days, ✓ sweeping every {config.cleanup_interval_hours}h"
        )
    else:
        lines.append(f"Retention: {config.retention_days} days, ✗ sweeper not active")
    return "\n".join(lines)


@mcp.tool(
    annotations={
        "readOnlyHint": False,
        "destructiveHint": True,
        "idempotentHint": True,
    }
)
async def memory_purge(days: float | None = None) -> str:
    """Delete messages (and their embeddings) older than a number of days.

    Args:
        days: Age threshold; defaults to the configured retention window
    """
    engine = get_engine()
    if days is None:
        if engine.config.retention_days <= 0:
            return "Retention is unbounded; nothing to purge"
        days = engine.config.retention_days
    if days < 0:
        return f"Error: days must not be negative, got {days}"
    try:
        deleted = await engine.purge_older_than(now_ms() - days_to_ms(days))
    except StorageFailure as e:
        return f"Error: {e}"
    return f"Purged {deleted} messages older than {days} days"


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server():
    """Run the MCP server with engine initialization and background tasks."""
    engine = get_engine()
    await engine.initialize()
    try:
        await mcp.run_stdio_async()
    finally:
        await engine.close()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
