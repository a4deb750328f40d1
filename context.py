"""Context aggregation: top memories plus related records from collaborators.

Collaborators are anything exposing `find_by_keyword(text) -> list`. Two
in-process ones live here (project contexts and decision history); the
pattern library in `patterns.py` is a third.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, Literal, Protocol, Sequence

from pydantic import BaseModel, Field

from models import MemoryKind, SearchOptions, SearchResult
from patterns import CodePattern
from search import search_memories
from store import MemoryStore
from utils import now

Impact = Literal["high", "medium", "low"]
ArchitectureType = Literal["monorepo", "microservices", "monolith", "spa", "ssr", "mobile", "desktop"]

IMPACT_IMPORTANCE: dict[str, float] = {"high": 0.9, "medium": 0.7, "low": 0.5}


class KeywordSource(Protocol):
    """An external holder of structured records the aggregator can consult."""

    def find_by_keyword(self, text: str) -> list[Any]: ...


# =============================================================================
# Decision history
# =============================================================================


class DecisionRecord(BaseModel):
    id: str
    timestamp: datetime
    decision: str
    context: str = ""
    rationale: str = ""
    alternatives: list[str] = Field(default_factory=list)
    impact: Impact = "medium"
    status: Literal["active", "deprecated", "replaced"] = "active"
    related_files: list[str] = Field(default_factory=list)
    memory_id: str | None = None
    project_id: str | None = None


class DecisionHistory:
    """Decisions taken on a project; each one is also remembered as a `decision` memory."""

    def __init__(self, store: MemoryStore, projects: ProjectRegistry | None = None):
        self.store = store
        self.projects = projects
        self._decisions: list[DecisionRecord] = []
        self._lock = threading.Lock()

    def record(
        self,
        decision: str,
        context: str = "",
        rationale: str = "",
        alternatives: Sequence[str] = (),
        impact: Impact = "medium",
        related_files: Sequence[str] = (),
    ) -> DecisionRecord:
        """Remember a decision and attach it to the current project, if there is one."""
        if impact not in IMPACT_IMPORTANCE:
            raise ValueError(f"Invalid impact '{impact}'. Valid: {sorted(IMPACT_IMPORTANCE)}")
        memory_id = self.store.insert(
            kind=MemoryKind.DECISION,
            content=decision,
            context=context,
            importance=IMPACT_IMPORTANCE[impact],
            tags=["decision", impact, *related_files],
        )
        record = DecisionRecord(
            id=uuid.uuid4().hex,
            timestamp=now(),
            decision=decision,
            context=context,
            rationale=rationale,
            alternatives=list(alternatives),
            impact=impact,
            related_files=list(related_files),
            memory_id=memory_id,
        )
        project = self.projects.current() if self.projects is not None else None
        if project is not None:
            record = record.model_copy(update={"project_id": project.id})
            self.projects.add_decision(project.id, record)
        with self._lock:
            self._decisions.append(record)
        return record

    def all(self) -> list[DecisionRecord]:
        with self._lock:
            return list(self._decisions)

    def find_by_keyword(self, text: str) -> list[DecisionRecord]:
        needle = text.lower()
        return [
            d
            for d in self.all()
            if needle in d.decision.lower() or needle in d.context.lower() or needle in d.rationale.lower()
        ]


# =============================================================================
# Project contexts
# =============================================================================


class ProjectContext(BaseModel):
    id: str
    name: str
    path: str
    architecture: ArchitectureType = "monolith"
    framework: str = ""
    language: str = ""
    conventions: list[str] = Field(default_factory=list)
    last_updated: datetime
    version: str = "1.0.0"
    decisions: list[DecisionRecord] = Field(default_factory=list)


def increment_version(version: str) -> str:
    """Bump the patch component: 1.0.3 -> 1.0.4."""
    major, minor, patch = (int(part) for part in version.split("."))
    return f"{major}.{minor}.{patch + 1}"


class ProjectRegistry:
    """Known projects, keyed by id."""

    def __init__(self):
        self._projects: dict[str, ProjectContext] = {}
        self._lock = threading.RLock()

    def create(self, name: str, path: str, **fields: Any) -> str:
        project_id = uuid.uuid4().hex
        project = ProjectContext(id=project_id, name=name, path=path, last_updated=now(), **fields)
        with self._lock:
            self._projects[project_id] = project
        return project_id

    def update(self, project_id: str, **fields: Any) -> bool:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                return False
            merged = project.model_dump() | fields
            merged.update(
                id=project.id,
                last_updated=now(),
                version=increment_version(project.version),
            )
            self._projects[project_id] = ProjectContext(**merged)
        return True

    def add_decision(self, project_id: str, record: DecisionRecord) -> bool:
        with self._lock:
            project = self._projects.get(project_id)
            if project is None:
                return False
            return self.update(project_id, decisions=[*project.decisions, record])

    def get(self, project_id: str) -> ProjectContext | None:
        with self._lock:
            return self._projects.get(project_id)

    def all(self) -> list[ProjectContext]:
        with self._lock:
            return list(self._projects.values())

    def current(self) -> ProjectContext | None:
        """The first registered project."""
        projects = self.all()
        return projects[0] if projects else None

    def find_by_keyword(self, text: str) -> list[ProjectContext]:
        needle = text.lower()
        return [
            p
            for p in self.all()
            if needle in p.name.lower() or needle in p.path.lower() or (p.framework and needle in p.framework.lower())
        ]


# =============================================================================
# Aggregator
# =============================================================================


class ContextBundle(BaseModel):
    query: str
    memories: list[SearchResult] = Field(default_factory=list)
    related_records: list[Any] = Field(default_factory=list)
    project: ProjectContext | None = None
    suggestions: list[str] = Field(default_factory=list)


def build_suggestions(
    related_records: Sequence[Any], project: ProjectContext | None, current_file: str | None = None
) -> list[str]:
    suggestions = []
    if current_file:
        for record in related_records:
            if isinstance(record, CodePattern) and current_file in record.usage:
                suggestions.append(f"{current_file} already uses the {record.name} pattern")
            elif isinstance(record, DecisionRecord) and current_file in record.related_files:
                suggestions.append(f"Decision affecting {current_file}: {record.decision}")
    pattern = next((r for r in related_records if isinstance(r, CodePattern)), None)
    if pattern is not None:
        suggestions.append(f"Consider using the {pattern.name} pattern found in your codebase")
    decision = next((r for r in related_records if isinstance(r, DecisionRecord)), None)
    if decision is not None:
        suggestions.append(f"Previous decision: {decision.decision}")
    if project is not None:
        suggestions.append(f"Based on your {project.architecture} architecture")
    return suggestions


class ContextAggregator:
    """Bundles the best-matching memories with whatever collaborators know about the query."""

    def __init__(
        self,
        store: MemoryStore,
        sources: Sequence[KeywordSource] = (),
        projects: ProjectRegistry | None = None,
        limit: int = 5,
        threshold: float = 0.7,
    ):
        self.store = store
        self.sources = list(sources)
        self.projects = projects
        self.limit = limit
        self.threshold = threshold

    def build_context(self, query: str, current_file: str | None = None) -> ContextBundle:
        memories = search_memories(
            self.store, query, SearchOptions(limit=self.limit, threshold=self.threshold)
        )
        related_records: list[Any] = []
        # A blank query carries no keywords to match on
        if query.strip():
            for source in self.sources:
                related_records.extend(source.find_by_keyword(query))
        project = self.projects.current() if self.projects is not None else None
        return ContextBundle(
            query=query,
            memories=memories,
            related_records=related_records,
            project=project,
            suggestions=build_suggestions(related_records, project, current_file),
        )
