"""Query engine: filter, score, threshold, rank and limit memories."""

from __future__ import annotations

from embedder import cosine_similarity
from models import MemoryEntry, SearchOptions, SearchResult
from store import MemoryStore


def _passes_filters(entry: MemoryEntry, options: SearchOptions) -> bool:
    if options.kinds and entry.kind not in options.kinds:
        return False
    # Any matching tag is enough
    if options.tags and not (entry.tags & options.tags):
        return False
    if options.time_range is not None and not options.time_range.contains(entry.created_at):
        return False
    return True


def matched_fields(query: str, entry: MemoryEntry) -> list[str]:
    """Fields containing the raw query as a case-insensitive substring."""
    if not query.strip():
        return []
    needle = query.lower()
    fields = []
    if needle in entry.content.lower():
        fields.append("content")
    if any(needle in tag.lower() for tag in entry.tags):
        fields.append("tags")
    if needle in entry.context.lower():
        fields.append("context")
    return fields


def search_memories(
    store: MemoryStore, query: str, options: SearchOptions | None = None
) -> list[SearchResult]:
    """Rank stored memories by cosine similarity to `query`.

    Entries rejected by the kind/tag/time filters are never scored. Scores
    below `options.threshold` are dropped outright, so fewer than `limit`
    (possibly zero) results is a normal outcome. Equal scores are ordered
    most recent first.
    """
    options = options or SearchOptions()
    if options.limit <= 0:
        return []

    query_embedding = store.embedder.embed(query)

    scored: list[tuple[float, MemoryEntry]] = []
    for entry in store.all():
        if not _passes_filters(entry, options):
            continue
        score = cosine_similarity(query_embedding, entry.embedding)
        if score < options.threshold:
            continue
        scored.append((score, entry))

    scored.sort(key=lambda item: (item[0], item[1].created_at), reverse=True)

    return [
        SearchResult(entry=entry, score=score, matched_fields=matched_fields(query, entry))
        for score, entry in scored[: options.limit]
    ]
