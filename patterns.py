"""Code pattern recognition backed by `pattern` memories."""

from __future__ import annotations

import re
from collections import defaultdict
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from models import MemoryEntry, MemoryKind
from store import MemoryStore
from utils import now

PatternType = Literal["component", "hook", "utility", "api", "test", "config"]

PATTERN_IMPORTANCE = 0.8

_COMPONENT_RE = re.compile(
    r"(?:function\s+(?P<fn>[A-Z]\w*)\s*\([^)]*\)|const\s+(?P<arrow>[A-Z]\w*)\s*=\s*\([^)]*\)\s*=>)"
    r"\s*\{.*?return\s*\(.*?\)",
    re.DOTALL,
)
_HOOK_RE = re.compile(
    r"(?:function\s+(?P<fn>use[A-Z]\w*)\s*\([^)]*\)|const\s+(?P<arrow>use[A-Z]\w*)\s*=\s*\([^)]*\)\s*=>)"
    r"\s*\{.*?\}",
    re.DOTALL,
)
_UTILITY_RE = re.compile(
    r"(?:function\s+(?P<fn>[a-z]\w*)\s*\([^)]*\)|const\s+(?P<arrow>[a-z]\w*)\s*=\s*\([^)]*\)\s*=>)"
    r"\s*\{.*?\}",
    re.DOTALL,
)
_API_RE = re.compile(r"(?:app|router)\.(get|post|put|delete|patch)\s*\(\s*['\"`]([^'\"`]+)['\"`]")


class CodePattern(BaseModel):
    name: str
    type: PatternType
    description: str
    code: str
    tags: list[str] = Field(default_factory=list)
    usage: list[str] = Field(default_factory=list)
    frequency: int = 1
    last_used: datetime = Field(default_factory=now)
    memory_id: str | None = None


def _name(match: re.Match) -> str:
    return match.group("fn") or match.group("arrow")


def extract_patterns(code: str) -> list[CodePattern]:
    """Find components, hooks, utility functions and API routes in source text."""
    patterns: list[CodePattern] = []

    for match in _COMPONENT_RE.finditer(code):
        name = _name(match)
        patterns.append(
            CodePattern(
                name=name,
                type="component",
                description=f"React component: {name}",
                code=match.group(0),
                tags=["react", "component", "jsx"],
            )
        )

    for match in _HOOK_RE.finditer(code):
        name = _name(match)
        patterns.append(
            CodePattern(
                name=name,
                type="hook",
                description=f"Custom hook: {name}",
                code=match.group(0),
                tags=["react", "hook", "custom"],
            )
        )

    for match in _UTILITY_RE.finditer(code):
        name = _name(match)
        if name.startswith("use"):
            continue
        patterns.append(
            CodePattern(
                name=name,
                type="utility",
                description=f"Utility function: {name}",
                code=match.group(0),
                tags=["utility", "function"],
            )
        )

    for match in _API_RE.finditer(code):
        method, route = match.group(1), match.group(2)
        name = f"{method.upper()} {route}"
        patterns.append(
            CodePattern(
                name=name,
                type="api",
                description=f"API endpoint: {name}",
                code=match.group(0),
                tags=["api", "endpoint", method.lower()],
            )
        )

    return patterns


class PatternLibrary:
    """Stores recognised code patterns as memories and tracks where they recur."""

    def __init__(self, store: MemoryStore):
        self.store = store
        self._usage: dict[str, list[str]] = defaultdict(list)

    def _pattern_memories(self) -> list[MemoryEntry]:
        return [entry for entry in self.store.all() if entry.kind == MemoryKind.PATTERN]

    def find_existing(self, pattern: CodePattern) -> MemoryEntry | None:
        for entry in self._pattern_memories():
            if entry.content == pattern.code or pattern.name in entry.content:
                return entry
        return None

    def analyze(self, code: str, file_path: str) -> list[CodePattern]:
        """Extract patterns from `code`, remembering new ones and counting known ones."""
        patterns = extract_patterns(code)
        for pattern in patterns:
            existing = self.find_existing(pattern)
            if existing is not None:
                self._usage[existing.id].append(file_path)
                pattern.memory_id = existing.id
                pattern.usage = list(self._usage[existing.id])
                pattern.frequency = len(pattern.usage) + 1
            else:
                pattern.memory_id = self.store.insert(
                    kind=MemoryKind.PATTERN,
                    content=pattern.code,
                    context=f"Pattern found in {file_path}",
                    importance=PATTERN_IMPORTANCE,
                    tags=[pattern.type, *pattern.tags],
                )
        return patterns

    def usage(self, memory_id: str) -> list[str]:
        return list(self._usage.get(memory_id, []))

    def find_by_keyword(self, text: str) -> list[CodePattern]:
        """Stored patterns whose content or tags contain `text` (case-insensitive)."""
        needle = text.lower()
        results = []
        for entry in self._pattern_memories():
            if needle in entry.content.lower() or any(needle in tag.lower() for tag in entry.tags):
                pattern_type = next(
                    (t for t in ("component", "hook", "utility", "api", "test", "config") if t in entry.tags),
                    "utility",
                )
                results.append(
                    CodePattern(
                        name=entry.content.split("\n")[0] or "Unknown",
                        type=pattern_type,
                        description=entry.content,
                        code=entry.content,
                        tags=sorted(entry.tags),
                        usage=self.usage(entry.id),
                        frequency=len(self.usage(entry.id)) + 1,
                        last_used=entry.created_at,
                        memory_id=entry.id,
                    )
                )
        return results
