"""Shared data models for context-memory."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any

import pyarrow as pa
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from utils import snippet


class MemoryKind(str, Enum):
    CONVERSATION = "conversation"
    CODE = "code"
    DECISION = "decision"
    PATTERN = "pattern"
    ISSUE = "issue"
    SOLUTION = "solution"


VALID_KINDS = frozenset(kind.value for kind in MemoryKind)

# Fields a caller may change through MemoryStore.update
MUTABLE_FIELDS = frozenset({"kind", "content", "context", "importance", "tags", "related_ids"})
# Fields whose change invalidates the embedding
EMBEDDED_FIELDS = frozenset({"content", "context", "tags"})


class MemoryEntry(BaseModel):
    """A stored memory with its embedding.

    Instances are frozen: the store replaces an entry on update rather than
    mutating it, so a reader never sees content out of step with its embedding.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    kind: MemoryKind
    content: str
    context: str = ""
    created_at: datetime
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    tags: frozenset[str] = frozenset()
    related_ids: frozenset[str] = frozenset()
    embedding: tuple[float, ...] = ()

    def embedding_text(self) -> str:
        return embedding_text(self.content, self.context, self.tags)


def embedding_text(content: str, context: str, tags: frozenset[str] | set[str]) -> str:
    """Text an entry is embedded from. Tags are sorted so their order never matters."""
    return f"{content} {context} {' '.join(sorted(tags))}"


class TimeRange(BaseModel):
    """Inclusive creation-time window."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _naive_local(cls, value: datetime) -> datetime:
        # Stored timestamps are naive local time
        if value.tzinfo is not None:
            return value.astimezone().replace(tzinfo=None)
        return value

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class SearchOptions(BaseModel):
    limit: int = 10
    threshold: float = 0.7
    kinds: frozenset[MemoryKind] = frozenset()
    tags: frozenset[str] = frozenset()
    time_range: TimeRange | None = None


class SearchResult(BaseModel):
    entry: MemoryEntry
    score: float
    matched_fields: list[str] = Field(default_factory=list)
    summary: str = ""

    @model_validator(mode="after")
    def _fill_summary(self) -> SearchResult:
        if not self.summary:
            self.summary = (
                f"{self.entry.kind.value}: {snippet(self.entry.content)} "
                f"({self.entry.created_at.date().isoformat()})"
            )
        return self


# =============================================================================
# Snapshot schema (LanceDB)
# =============================================================================


def snapshot_schema(embedding_dim: int) -> pa.Schema:
    """Arrow schema of the persisted snapshot.

    IMPORTANT: the embedding column is fixed-size; changing EMBEDDING_DIM makes
    stored vectors unusable and they are recomputed on load.
    """
    return pa.schema(
        [
            pa.field("id", pa.string()),
            pa.field("kind", pa.string()),
            pa.field("content", pa.string()),
            pa.field("context", pa.string()),
            pa.field("created_at", pa.string()),
            pa.field("importance", pa.float64()),
            pa.field("tags", pa.string()),  # JSON array as string
            pa.field("related_ids", pa.string()),  # JSON array as string
            pa.field("embedding", pa.list_(pa.float64(), embedding_dim)),
        ]
    )


def entry_to_row(entry: MemoryEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "kind": entry.kind.value,
        "content": entry.content,
        "context": entry.context,
        "created_at": entry.created_at.isoformat(),
        "importance": entry.importance,
        "tags": json.dumps(sorted(entry.tags)),
        "related_ids": json.dumps(sorted(entry.related_ids)),
        "embedding": list(entry.embedding),
    }


def row_to_entry(row: dict[str, Any]) -> MemoryEntry:
    return MemoryEntry(
        id=row["id"],
        kind=MemoryKind(row["kind"]),
        content=row["content"],
        context=row.get("context") or "",
        created_at=datetime.fromisoformat(row["created_at"]),
        importance=row["importance"],
        tags=frozenset(json.loads(row["tags"]) if row.get("tags") else []),
        related_ids=frozenset(json.loads(row["related_ids"]) if row.get("related_ids") else []),
        embedding=tuple(row.get("embedding") or ()),
    )
