"""Memory store: owns every MemoryEntry and keeps embeddings in step with content.

Persistence is a whole-snapshot LanceDB table, loaded in full at construction
and overwritten in full on flush. Snapshot I/O failures are logged and the
store carries on in memory only.
"""

from __future__ import annotations

import sys
import threading
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterable

import lancedb
import pyarrow as pa

from embedder import Embedder, HashingEmbedder
from models import (
    EMBEDDED_FIELDS,
    MUTABLE_FIELDS,
    VALID_KINDS,
    MemoryEntry,
    MemoryKind,
    embedding_text,
    entry_to_row,
    row_to_entry,
    snapshot_schema,
)
from utils import LOG_PREFIX, now


def _validate_kind(kind: MemoryKind | str) -> MemoryKind:
    value = kind.value if isinstance(kind, MemoryKind) else kind
    if value not in VALID_KINDS:
        raise ValueError(f"Invalid kind '{kind}'. Valid: {sorted(VALID_KINDS)}")
    return MemoryKind(value)


def _validate_importance(importance: float) -> float:
    if not 0.0 <= importance <= 1.0:
        raise ValueError(f"importance must be within [0, 1], got {importance}")
    return float(importance)


def _validate_text(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    return value


def _as_set(values: Iterable[str], name: str) -> frozenset[str]:
    """Collect tags or ids; a bare string is rejected rather than split into characters."""
    if isinstance(values, str):
        raise ValueError(f"{name} must be a collection of strings, not a single string")
    return frozenset(values)


# =============================================================================
# Snapshot persistence (LanceDB)
# =============================================================================


class SnapshotStore:
    """Whole-table snapshot of memory entries in LanceDB."""

    def __init__(self, db_path: Path | str, table_name: str = "memories", embedding_dim: int = 384):
        self.db_path = Path(db_path)
        self.table_name = table_name
        self.schema = snapshot_schema(embedding_dim)
        self._db: lancedb.DBConnection | None = None

    def _connect(self) -> lancedb.DBConnection:
        if self._db is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.db_path))
        return self._db

    def _table_names(self, db: lancedb.DBConnection) -> list[str]:
        try:
            names = db.list_tables()
        except AttributeError:
            names = db.table_names()
        # Newer lancedb returns a paginated response object
        return list(getattr(names, "tables", names))

    def load(self) -> list[dict[str, Any]]:
        """Read all snapshot rows; an absent table is an empty snapshot."""
        db = self._connect()
        if self.table_name not in self._table_names(db):
            return []
        return db.open_table(self.table_name).to_arrow().to_pylist()

    def save(self, rows: list[dict[str, Any]]) -> None:
        """Overwrite the snapshot with `rows`."""
        db = self._connect()
        data = pa.Table.from_pylist(rows, schema=self.schema)
        db.create_table(self.table_name, data=data, mode="overwrite")

    def close(self) -> None:
        self._db = None


# =============================================================================
# Memory store
# =============================================================================


class MemoryStore:
    """Thread-safe in-memory collection of memory entries.

    Entries are frozen models, so `get` and `all` hand out the stored
    instances themselves; callers cannot alter them in place.
    """

    def __init__(
        self,
        embedder: Embedder | None = None,
        snapshot: SnapshotStore | None = None,
        autoflush: bool = True,
    ):
        self.embedder = embedder or HashingEmbedder()
        self.snapshot = snapshot
        self.autoflush = autoflush
        self._entries: dict[str, MemoryEntry] = {}
        self._lock = threading.RLock()
        self._last_created_at = None
        if snapshot is not None:
            self._load()

    @property
    def dimension(self) -> int:
        return self.embedder.dimension

    def _embed(self, content: str, context: str, tags: Iterable[str]) -> tuple[float, ...]:
        return self.embedder.embed(embedding_text(content, context, frozenset(tags)))

    def _next_timestamp(self):
        """Current time, bumped past the last one handed out so creation order is total."""
        timestamp = now()
        if self._last_created_at is not None and timestamp <= self._last_created_at:
            timestamp = self._last_created_at + timedelta(microseconds=1)
        self._last_created_at = timestamp
        return timestamp

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        try:
            rows = self.snapshot.load()
        except Exception as e:
            print(f"{LOG_PREFIX} Failed to load snapshot, starting empty: {e}", file=sys.stderr)
            return

        reembedded = 0
        with self._lock:
            for row in rows:
                try:
                    entry = row_to_entry(row)
                except Exception as e:
                    print(f"{LOG_PREFIX} Skipping unreadable snapshot row: {e}", file=sys.stderr)
                    continue
                if len(entry.embedding) != self.dimension:
                    entry = entry.model_copy(
                        update={"embedding": self._embed(entry.content, entry.context, entry.tags)}
                    )
                    reembedded += 1
                self._entries[entry.id] = entry
                if self._last_created_at is None or entry.created_at > self._last_created_at:
                    self._last_created_at = entry.created_at

        print(f"{LOG_PREFIX} Loaded {len(self._entries)} memories from snapshot", file=sys.stderr)
        if reembedded:
            print(f"{LOG_PREFIX} Re-embedded {reembedded} memories (dimension changed)", file=sys.stderr)

    def flush(self) -> bool:
        """Write the full snapshot. Returns False when there is no backend or the write failed."""
        if self.snapshot is None:
            return False
        with self._lock:
            rows = [entry_to_row(entry) for entry in self._entries.values()]
            try:
                self.snapshot.save(rows)
            except Exception as e:
                print(f"{LOG_PREFIX} Failed to save snapshot, keeping in-memory state: {e}", file=sys.stderr)
                return False
        return True

    def _after_mutation(self) -> None:
        if self.autoflush:
            self.flush()

    def close(self) -> None:
        self.flush()
        if self.snapshot is not None:
            self.snapshot.close()

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def insert(
        self,
        kind: MemoryKind | str,
        content: str,
        context: str = "",
        importance: float = 0.5,
        tags: Iterable[str] = (),
        related_ids: Iterable[str] = (),
    ) -> str:
        """Store a new memory and return its id.

        Raises:
            ValueError: kind outside the closed set, importance outside [0, 1],
                non-string text, or a bare string for tags or related_ids.
                Nothing is stored in that case.
        """
        kind = _validate_kind(kind)
        importance = _validate_importance(importance)
        content = _validate_text(content, "content")
        context = _validate_text(context, "context")
        tags = _as_set(tags, "tags")
        related_ids = _as_set(related_ids, "related_ids")
        embedding = self._embed(content, context, tags)

        with self._lock:
            memory_id = uuid.uuid4().hex
            while memory_id in self._entries:
                memory_id = uuid.uuid4().hex
            self._entries[memory_id] = MemoryEntry(
                id=memory_id,
                kind=kind,
                content=content,
                context=context,
                created_at=self._next_timestamp(),
                importance=importance,
                tags=tags,
                related_ids=related_ids,
                embedding=embedding,
            )
            self._after_mutation()
        return memory_id

    def update(self, memory_id: str, **fields: Any) -> bool:
        """Merge `fields` into an existing memory.

        Returns False if the id is unknown. Re-embeds when content, context
        or tags are part of the update.

        Raises:
            ValueError: unknown or immutable field names, or invalid values.
        """
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}. Mutable: {sorted(MUTABLE_FIELDS)}")
        if "kind" in fields:
            fields["kind"] = _validate_kind(fields["kind"])
        if "importance" in fields:
            fields["importance"] = _validate_importance(fields["importance"])
        for name in ("tags", "related_ids"):
            if name in fields:
                fields[name] = _as_set(fields[name], name)
        for name in ("content", "context"):
            if name in fields:
                _validate_text(fields[name], name)

        with self._lock:
            existing = self._entries.get(memory_id)
            if existing is None:
                return False
            # Full validation before the swap; a bad value leaves the entry untouched
            updated = MemoryEntry.model_validate({**existing.model_dump(), **fields})
            if EMBEDDED_FIELDS & set(fields):
                updated = updated.model_copy(
                    update={"embedding": self._embed(updated.content, updated.context, updated.tags)}
                )
            self._entries[memory_id] = updated
            self._after_mutation()
        return True

    def get(self, memory_id: str) -> MemoryEntry | None:
        with self._lock:
            return self._entries.get(memory_id)

    def delete(self, memory_id: str) -> bool:
        """Remove a memory. Other entries' related_ids pointing at it are left as is."""
        with self._lock:
            if self._entries.pop(memory_id, None) is None:
                return False
            self._after_mutation()
        return True

    def all(self) -> list[MemoryEntry]:
        with self._lock:
            return list(self._entries.values())

    def count(self) -> int:
        with self._lock:
            return len(self._entries)

    def related(self, memory_id: str) -> list[MemoryEntry]:
        """Resolve an entry's related ids, skipping ones that no longer exist."""
        with self._lock:
            entry = self._entries.get(memory_id)
            if entry is None:
                return []
            return [self._entries[rid] for rid in sorted(entry.related_ids) if rid in self._entries]

    def find_by_prefix(self, prefix: str, limit: int = 100) -> list[str]:
        """Ids starting with `prefix`, at most `limit` of them."""
        with self._lock:
            if prefix in self._entries:
                return [prefix]
            matches = []
            for memory_id in self._entries:
                if memory_id.startswith(prefix):
                    matches.append(memory_id)
                    if len(matches) >= limit:
                        break
            return matches
