"""Configuration for context-memory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class Config:
    """Store configuration with sensible defaults."""

    db_path: Path = Path(
        os.environ.get("CONTEXT_MEMORY_DB_PATH", Path.home() / ".context-memory" / "lancedb-memory")
    )
    table_name: str = "memories"
    embedding_dim: int = int(os.environ.get("EMBEDDING_DIM", "384"))
    embedding_provider: str = os.environ.get("EMBEDDING_PROVIDER", "hash")  # hash | ollama
    embedding_model: str = os.environ.get("EMBEDDING_MODEL", "nomic-embed-text")
    ollama_base_url: str = os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    default_limit: int = 10
    max_limit: int = 50
    default_threshold: float = 0.7
    context_limit: int = 5


CONFIG = Config()
