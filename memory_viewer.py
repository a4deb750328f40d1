#!/usr/bin/env python3
"""Web viewer for memories - accessible in browser."""

from __future__ import annotations

from flask import Flask, render_template_string, request

from config import CONFIG
from models import MemoryEntry, SearchOptions
from search import search_memories
from server import open_store
from store import MemoryStore

ITEMS_PER_PAGE = 10
SEARCH_THRESHOLD = 0.1


def get_memories(store: MemoryStore, query: str = "") -> list[tuple[MemoryEntry, float | None]]:
    """All memories newest first, or search hits best first when `query` is set."""
    if query.strip():
        results = search_memories(
            store, query, SearchOptions(limit=store.count() or 1, threshold=SEARCH_THRESHOLD)
        )
        return [(r.entry, r.score) for r in results]
    entries = sorted(store.all(), key=lambda m: m.created_at, reverse=True)
    return [(entry, None) for entry in entries]


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
    <title>Memory Viewer</title>
    <style>
        body { font-family: system-ui; max-width: 900px; margin: 0 auto; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        .header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 20px; flex-wrap: wrap; gap: 10px; }
        .pagination { display: flex; gap: 6px; align-items: center; flex-wrap: wrap; }
        .pagination a, .pagination span { padding: 6px 12px; background: #0f3460; color: #00d9ff; text-decoration: none; border-radius: 5px; display: inline-block; }
        .pagination span.current { background: #00d9ff; color: #1a1a2e; font-weight: bold; }
        .pagination span.ellipsis { color: #888; background: transparent; }
        .pagination a.disabled { color: #666; pointer-events: none; }
        .memory { background: #16213e; padding: 15px; margin: 10px 0; border-radius: 8px; border-left: 4px solid #00d9ff; }
        .kind { display: inline-block; padding: 2px 8px; border-radius: 4px; font-size: 12px; font-weight: bold; }
        .conversation { background: #4a90d9; }
        .code { background: #9b59b6; }
        .decision { background: #e74c3c; }
        .pattern { background: #f39c12; }
        .issue { background: #e91e63; }
        .solution { background: #2ecc71; }
        .tag { background: #0f3460; padding: 2px 6px; border-radius: 3px; font-size: 11px; margin-right: 5px; }
        .meta { color: #888; font-size: 12px; margin-top: 8px; }
        input { padding: 10px; width: 100%; border-radius: 5px; border: none; background: #0f3460; color: #fff; }
    </style>
</head>
<body>
    <div class="header">
        <h1>Memory Viewer</h1>
        <div class="pagination">
            {% if page > 1 %}
            <a href="/?page={{ page-1 }}&q={{ query|urlencode }}">← Prev</a>
            {% else %}
            <a class="disabled">← Prev</a>
            {% endif %}

            {% for p in page_links %}
            {% if p == "..." %}
            <span class="ellipsis">...</span>
            {% elif p == page %}
            <span class="current">{{ p }}</span>
            {% else %}
            <a href="/?page={{ p }}&q={{ query|urlencode }}">{{ p }}</a>
            {% endif %}
            {% endfor %}

            {% if page < total_pages %}
            <a href="/?page={{ page+1 }}&q={{ query|urlencode }}">Next →</a>
            {% else %}
            <a class="disabled">Next →</a>
            {% endif %}
        </div>
    </div>
    <p>{{ total_memories }} {% if query %}matches for "{{ query }}"{% else %}memories total{% endif %}</p>
    <form method="get" action="/">
        <input type="text" name="q" value="{{ query }}" placeholder="Semantic search...">
    </form>
    <div id="memories">
        {% for m, score in memories %}
        <div class="memory">
            <span class="kind {{ m.kind.value }}">{{ m.kind.value }}</span>
            <p>{{ m.content }}</p>
            <div class="tags">
                {% for t in m.tags|sort %}
                <span class="tag">{{ t }}</span>
                {% endfor %}
            </div>
            <div class="meta">{{ m.context[:50] }} | {{ m.created_at.isoformat()[:19] }} | importance {{ "%.2f"|format(m.importance) }}{% if score is not none %} | similarity {{ "%.0f"|format(score * 100) }}%{% endif %}</div>
        </div>
        {% endfor %}
    </div>
</body>
</html>
"""


def create_app(store: MemoryStore) -> Flask:
    app = Flask(__name__)

    @app.route("/")
    def index():
        query = request.args.get("q", "")
        all_memories = get_memories(store, query)

        total = len(all_memories)
        page = max(request.args.get("page", 1, type=int), 1)
        start = (page - 1) * ITEMS_PER_PAGE
        end = start + ITEMS_PER_PAGE
        memories = all_memories[start:end]
        total_pages = (total + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE
        page_links = get_page_links(page, total_pages)

        return render_template_string(
            HTML,
            memories=memories,
            page=page,
            total_pages=total_pages,
            total_memories=total,
            page_links=page_links,
            query=query,
        )

    return app


def main():
    store = open_store(CONFIG)
    print("Open http://localhost:5000 in your browser")
    try:
        create_app(store).run(port=5000)
    finally:
        store.close()


if __name__ == "__main__":
    main()
