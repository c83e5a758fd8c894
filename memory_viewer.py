#!/usr/bin/env python3
"""Web viewer for stored channel messages - accessible in browser."""

from __future__ import annotations

import lancedb
from flask import Flask, render_template_string, request

from config import CONFIG, Config
from store import MessageStore

ITEMS_PER_PAGE = 10


def open_store(config: Config = CONFIG) -> MessageStore:
    db = lancedb.connect(str(config.db_path))
    return MessageStore(db, table_name=config.messages_table)


def get_page_links(current: int, total: int) -> list:
    """Generate smart pagination links with ellipsis for gaps."""
    if total <= 7:
        return list(range(1, total + 1))

    links = []
    for p in range(1, total + 1):
        show_page = (
            p <= 3  # First 3 pages
            or p >= total - 2  # Last 3 pages
            or abs(p - current) <= 1  # Pages around current
        )
        if show_page:
            links.append(p)
        elif links[-1] != "...":
            links.append("...")
    return links


HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>Relay Memory</title>
    <style>
        body { font-family: system-ui; max-width: 900px; margin: 0 auto; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        .header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 20px; flex-wrap: wrap; gap: 10px; }
        .pagination { display: flex; gap: 6px; align-items: center; flex-wrap: wrap; }
        .pagination a, .pagination span { padding: 6px 12px; background: #0f3460; color: #00d9ff; text-decoration: none; border-radius: 5px; display: inline-block; }
        .pagination span.current { background: #00d9ff; color: #1a1a2e; font-weight: bold; }
        .pagination span.ellipsis { color: #888; background: transparent; }
        .pagination a.disabled { color: #666; pointer-events: none; }
        .channels a { color: #00d9ff; margin-right: 12px; }
        .message { background: #16213e; padding: 12px 15px; margin: 10px 0; border-radius: 8px; border-left: 4px solid #4a90d9; }
        .message.assistant { border-left-color: #2ecc71; }
        .author { font-weight: bold; }
        .meta { color: #888; font-size: 12px; margin-top: 6px; }
    </style>
</head>
<body>
    <div class="header">
        <h1>Relay Memory{% if channel %} - {{ channel }}{% endif %}</h1>
        <div class="pagination">
            {% if page > 1 %}
            <a href="?page={{ page-1 }}&channel={{ channel|urlencode }}">← Prev</a>
            {% else %}
            <a class="disabled">← Prev</a>
            {% endif %}

            {% for p in page_links %}
            {% if p == "..." %}
            <span class="ellipsis">...</span>
            {% elif p == page %}
            <span class="current">{{ p }}</span>
            {% else %}
            <a href="?page={{ p }}&channel={{ channel|urlencode }}">{{ p }}</a>
            {% endif %}
            {% endfor %}

            {% if page < total_pages %}
            <a href="?page={{ page+1 }}&channel={{ channel|urlencode }}">Next →</a>
            {% else %}
            <a class="disabled">Next →</a>
            {% endif %}
        </div>
    </div>
    <p>{{ total_messages }} messages total</p>
    <div class="channels">
        <a href="/">all</a>
        {% for name, count in channels %}
        <a href="/?channel={{ name|urlencode }}">{{ name }} ({{ count }})</a>
        {% endfor %}
    </div>
    <div id="messages">
        {% for m in messages %}
        <div class="message {{ m.role }}">
            <span class="author">{{ m.author }}</span> {{ m.text }}
            <div class="meta">#{{ m.id }} | {{ m.channel }} | {{ m.role }} | {{ m.timestamp }}</div>
        </div>
        {% endfor %}
    </div>
</body>
</html>
"""


def create_app(config: Config = CONFIG) -> Flask:
    app = Flask(__name__)
    store = open_store(config)

    @app.route("/")
    def index():
        channel = request.args.get("channel") or None
        page = max(1, request.args.get("page", 1, type=int))
        all_messages = store.all_messages(channel)
        stats = store.stats()

        total = len(all_messages)
        start = (page - 1) * ITEMS_PER_PAGE
        messages = all_messages[start : start + ITEMS_PER_PAGE]
        total_pages = (total + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE

        return render_template_string(
            HTML,
            messages=messages,
            channel=channel or "",
            channels=sorted(stats.per_channel_counts.items()),
            page=page,
            total_pages=total_pages,
            total_messages=total,
            page_links=get_page_links(page, total_pages),
        )

    return app


def main():
    print("Open http://localhost:5000 in your browser")
    create_app().run(port=5000)


if __name__ == "__main__":
    main()
