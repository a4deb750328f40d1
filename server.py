#!/usr/bin/env python3
"""
Context Memory MCP Server - semantic memory with hashing-trick embeddings

Provides in-process semantic memory over MCP:
- FastMCP for the tool surface
- Deterministic hashing-trick embeddings (optional Ollama model embeddings)
- Linear-scan cosine search with kind/tag/time filters and a hard threshold
- LanceDB whole-snapshot persistence
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime

from mcp.server.fastmcp import FastMCP

from config import CONFIG, Config
from context import ContextAggregator, DecisionHistory, ProjectRegistry
from embedder import Embedder, HashingEmbedder, OllamaEmbedder
from models import VALID_KINDS, MemoryKind, SearchOptions, TimeRange
from patterns import PatternLibrary
from search import search_memories
from store import MemoryStore, SnapshotStore
from utils import LOG_PREFIX

ID_PREFIX_MATCH_LIMIT = 100

READ_ONLY = {"readOnlyHint": True, "destructiveHint": False, "idempotentHint": True}
WRITE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": False}
WRITE_IDEMPOTENT = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": True}
DESTRUCTIVE = {"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True}


# =============================================================================
# Construction
# =============================================================================


def build_embedder(config: Config = CONFIG) -> Embedder:
    """Embedder selected by `config.embedding_provider`."""
    provider = config.embedding_provider.lower()
    if provider == "ollama":
        return OllamaEmbedder(
            base_url=config.ollama_base_url,
            model=config.embedding_model,
            dimension=config.embedding_dim,
        )
    if provider != "hash":
        print(f"{LOG_PREFIX} Unknown embedding provider '{provider}', using hash", file=sys.stderr)
    return HashingEmbedder(config.embedding_dim)


def open_store(config: Config = CONFIG, persist: bool = True) -> MemoryStore:
    """Construct the store the host passes to every consumer."""
    snapshot = None
    if persist:
        snapshot = SnapshotStore(config.db_path, config.table_name, config.embedding_dim)
    return MemoryStore(embedder=build_embedder(config), snapshot=snapshot)


# =============================================================================
# Helpers
# =============================================================================


def _normalize_kind(kind: str | None) -> tuple[MemoryKind | None, str | None]:
    """Normalize and validate a kind string."""
    if kind is None:
        return None, None
    normalized = kind.lower()
    if normalized not in VALID_KINDS:
        return None, f"Error: Invalid kind '{kind}'. Valid: {sorted(VALID_KINDS)}"
    return MemoryKind(normalized), None


def _parse_time(value: str | None, name: str) -> tuple[datetime | None, str | None]:
    if value is None:
        return None, None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None, f"Error: Invalid {name} '{value}', expected ISO format"
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed, None


class MemoryTools:
    """MCP tool implementations over an injected store."""

    def __init__(self, store: MemoryStore, config: Config = CONFIG):
        self.store = store
        self.config = config
        self.projects = ProjectRegistry()
        self.decisions = DecisionHistory(store, self.projects)
        self.patterns = PatternLibrary(store)
        self.aggregator = ContextAggregator(
            store,
            sources=[self.patterns, self.decisions, self.projects],
            projects=self.projects,
            limit=config.context_limit,
            threshold=config.default_threshold,
        )

    def _find_memory_id(self, memory_id: str) -> tuple[str | None, str | None]:
        """Resolve a full or partial id, with ambiguity detection."""
        matches = self.store.find_by_prefix(memory_id, limit=ID_PREFIX_MATCH_LIMIT)
        if not memory_id or not matches:
            return None, f"Memory {memory_id} not found"
        if len(matches) > 1:
            ids = ", ".join(matches)
            if len(matches) >= ID_PREFIX_MATCH_LIMIT:
                return (
                    None,
                    "Error: Ambiguous ID prefix. Showing first "
                    f"{ID_PREFIX_MATCH_LIMIT} matches: {ids}... Provide full 32-char ID.",
                )
            return None, f"Error: Ambiguous ID prefix. Matches: {ids}. Provide full 32-char ID."
        return matches[0], None

    async def memory_save(
        self,
        content: str,
        kind: str = "conversation",
        context: str = "",
        importance: float = 0.5,
        tags: list[str] | None = None,
        related_ids: list[str] | None = None,
    ) -> str:
        """Save a memory with semantic embedding.

        Args:
            content: Memory content
            kind: One of conversation, code, decision, pattern, issue, solution
            context: Where or why this memory was captured
            importance: Weight in [0, 1]
            tags: Optional tags for categorization
            related_ids: Ids of related memories
        """
        if not content.strip():
            return "Error: content is required"
        normalized_kind, error = _normalize_kind(kind)
        if error:
            return error
        if not 0.0 <= importance <= 1.0:
            return f"Error: importance must be within [0, 1], got {importance}"

        tags = tags or []
        memory_id = self.store.insert(
            kind=normalized_kind,
            content=content,
            context=context,
            importance=importance,
            tags=tags,
            related_ids=related_ids or [],
        )
        return f"Saved (ID: {memory_id[:8]}..., {normalized_kind.value})\nTags: {sorted(set(tags))}"

    async def memory_recall(
        self,
        query: str,
        kinds: list[str] | None = None,
        tags: list[str] | None = None,
        since: str | None = None,
        until: str | None = None,
        limit: int | None = None,
        threshold: float | None = None,
    ) -> str:
        """Semantic search across stored memories.

        Args:
            query: Search query
            kinds: Optional kind filter (any of)
            tags: Optional tag filter (any of)
            since: Only memories created at or after this ISO timestamp
            until: Only memories created at or before this ISO timestamp
            limit: Max results (default 10, max 50)
            threshold: Minimum cosine similarity (default 0.7)
        """
        limit = self.config.default_limit if limit is None else limit
        if limit <= 0:
            return f"Error: limit must be positive, got {limit}"
        if limit > self.config.max_limit:
            return f"Error: limit cannot exceed {self.config.max_limit}, got {limit}"

        kind_filter = set()
        for kind in kinds or []:
            normalized_kind, error = _normalize_kind(kind)
            if error:
                return error
            kind_filter.add(normalized_kind)

        start, error = _parse_time(since, "since")
        if error:
            return error
        end, error = _parse_time(until, "until")
        if error:
            return error
        time_range = None
        if start is not None or end is not None:
            time_range = TimeRange(start=start or datetime.min, end=end or datetime.max)

        options = SearchOptions(
            limit=limit,
            threshold=self.config.default_threshold if threshold is None else threshold,
            kinds=kind_filter,
            tags=set(tags or []),
            time_range=time_range,
        )
        results = search_memories(self.store, query, options)
        if not results:
            return f"No memories found for '{query}'"

        lines = [f"Found {len(results)} memories:\n"]
        for i, result in enumerate(results, 1):
            entry = result.entry
            lines.append(f"[{i}] {entry.kind.value} (ID: {entry.id[:8]}...)")
            lines.append(f"    {entry.content}")
            if entry.tags:
                lines.append(f"    Tags: {', '.join(sorted(entry.tags))}")
            lines.append(f"    Created: {entry.created_at.isoformat()[:19]} | Importance: {entry.importance:.2f}")
            lines.append(f"    Similarity: {result.score:.0%}")
            if result.matched_fields:
                lines.append(f"    Matched: {', '.join(result.matched_fields)}")
            lines.append("")
        return "\n".join(lines)

    async def memory_get(self, memory_id: str) -> str:
        """Show one memory.

        Args:
            memory_id: The ID of the memory (full or partial UUID)
        """
        full_id, error = self._find_memory_id(memory_id)
        if error:
            return error
        entry = self.store.get(full_id)
        lines = [
            f"{entry.kind.value} (ID: {entry.id})",
            entry.content,
            f"Context: {entry.context}" if entry.context else "Context: -",
            f"Tags: {', '.join(sorted(entry.tags)) or '-'}",
            f"Importance: {entry.importance:.2f}",
            f"Created: {entry.created_at.isoformat()}",
        ]
        related = self.store.related(full_id)
        if related:
            lines.append("Related: " + ", ".join(r.id[:8] for r in related))
        return "\n".join(lines)

    async def memory_update(
        self,
        memory_id: str,
        content: str | None = None,
        kind: str | None = None,
        context: str | None = None,
        importance: float | None = None,
        tags: list[str] | None = None,
        related_ids: list[str] | None = None,
    ) -> str:
        """Update an existing memory.

        Args:
            memory_id: The ID of the memory to update (full or partial UUID)
            content: New content (re-embeds)
            kind: New kind
            context: New context (re-embeds)
            importance: New importance in [0, 1]
            tags: New tags, replacing existing (re-embeds)
            related_ids: New related ids, replacing existing
        """
        full_id, error = self._find_memory_id(memory_id)
        if error:
            return error

        normalized_kind, error = _normalize_kind(kind)
        if error:
            return error
        if importance is not None and not 0.0 <= importance <= 1.0:
            return f"Error: importance must be within [0, 1], got {importance}"

        fields = {
            "content": content,
            "kind": normalized_kind,
            "context": context,
            "importance": importance,
            "tags": tags,
            "related_ids": related_ids,
        }
        fields = {name: value for name, value in fields.items() if value is not None}
        if not fields:
            return "Error: nothing to update"
        if not self.store.update(full_id, **fields):
            return f"Memory {memory_id} not found"
        return f"Updated memory {full_id[:8]}..."

    async def memory_delete(self, memory_id: str) -> str:
        """Delete a memory by ID.

        Args:
            memory_id: The ID of the memory to delete (full or partial UUID)
        """
        full_id, error = self._find_memory_id(memory_id)
        if error:
            return error
        self.store.delete(full_id)
        return f"Deleted memory {full_id[:8]}..."

    async def memory_stats(self) -> str:
        """Get memory system statistics - total and by kind."""
        entries = self.store.all()
        if not entries:
            return "No memories stored yet."

        kind_counts: dict[str, int] = {}
        tag_counts: dict[str, int] = {}
        for entry in entries:
            kind_counts[entry.kind.value] = kind_counts.get(entry.kind.value, 0) + 1
            for tag in entry.tags:
                tag_counts[tag] = tag_counts.get(tag, 0) + 1
        top_tags = sorted(tag_counts.items(), key=lambda x: (-x[1], x[0]))[:5]

        lines = [
            "=== Memory Statistics ===",
            f"Total: {len(entries)} memories",
            f"Embedding: {type(self.store.embedder).__name__} ({self.store.dimension}D)",
            f"Persistence: {'LanceDB snapshot' if self.store.snapshot is not None else 'in-memory only'}",
            "",
            "By Kind:",
        ]
        for kind, count in sorted(kind_counts.items()):
            lines.append(f"  {kind}: {count}")
        lines.append("\nTop Tags:")
        for tag, count in top_tags:
            lines.append(f"  {tag}: {count}")
        return "\n".join(lines)

    async def memory_context(self, query: str, current_file: str | None = None) -> str:
        """Build context for a query: top memories, related patterns/decisions/projects, suggestions.

        Args:
            query: What the context is for
            current_file: File being worked on, if any
        """
        bundle = self.aggregator.build_context(query, current_file=current_file)
        lines = [f"Context for '{query}':", "", f"Memories ({len(bundle.memories)}):"]
        for result in bundle.memories:
            lines.append(f"  - {result.summary} [{result.score:.0%}]")
        lines.append(f"\nRelated records ({len(bundle.related_records)}):")
        for record in bundle.related_records:
            label = getattr(record, "name", None) or getattr(record, "decision", "")
            lines.append(f"  - {type(record).__name__}: {label}")
        if bundle.suggestions:
            lines.append("\nSuggestions:")
            lines.extend(f"  - {s}" for s in bundle.suggestions)
        return "\n".join(lines)

    async def decision_record(
        self,
        decision: str,
        context: str = "",
        rationale: str = "",
        alternatives: list[str] | None = None,
        impact: str = "medium",
        related_files: list[str] | None = None,
    ) -> str:
        """Record a decision and remember it.

        Args:
            decision: What was decided
            context: Situation the decision was made in
            rationale: Why
            alternatives: Options that were considered
            impact: high, medium or low
            related_files: Files the decision touches
        """
        if not decision.strip():
            return "Error: decision is required"
        if impact not in ("high", "medium", "low"):
            return f"Error: Invalid impact '{impact}'. Valid: ['high', 'low', 'medium']"
        record = self.decisions.record(
            decision=decision,
            context=context,
            rationale=rationale,
            alternatives=alternatives or [],
            impact=impact,
            related_files=related_files or [],
        )
        return f"Recorded decision (ID: {record.id[:8]}..., memory {record.memory_id[:8]}...)"

    async def pattern_analyze(self, code: str, file_path: str) -> str:
        """Extract code patterns from source and remember new ones.

        Args:
            code: Source text
            file_path: Where the code came from
        """
        patterns = self.patterns.analyze(code, file_path)
        if not patterns:
            return f"No patterns found in {file_path}"
        lines = [f"Found {len(patterns)} patterns in {file_path}:"]
        for pattern in patterns:
            lines.append(f"  - {pattern.type}: {pattern.name} (seen {pattern.frequency}x)")
        return "\n".join(lines)


# =============================================================================
# FastMCP Server
# =============================================================================


def create_server(tools: MemoryTools) -> FastMCP:
    """FastMCP server exposing `tools`."""
    mcp = FastMCP(
        "context-memory",
        instructions="Semantic context memory: hashing-trick embeddings, cosine search with filters",
    )
    mcp.add_tool(tools.memory_save, annotations=WRITE)
    mcp.add_tool(tools.memory_recall, annotations=READ_ONLY)
    mcp.add_tool(tools.memory_get, annotations=READ_ONLY)
    mcp.add_tool(tools.memory_update, annotations=WRITE_IDEMPOTENT)
    mcp.add_tool(tools.memory_delete, annotations=DESTRUCTIVE)
    mcp.add_tool(tools.memory_stats, annotations=READ_ONLY)
    mcp.add_tool(tools.memory_context, annotations=READ_ONLY)
    mcp.add_tool(tools.decision_record, annotations=WRITE)
    mcp.add_tool(tools.pattern_analyze, annotations=WRITE)
    return mcp


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server(config: Config = CONFIG):
    """Run the MCP server, flushing the store on the way out."""
    store = open_store(config)
    print(f"{LOG_PREFIX} Server ready ({store.count()} memories)", file=sys.stderr)
    try:
        await create_server(MemoryTools(store, config)).run_stdio_async()
    finally:
        store.close()


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
