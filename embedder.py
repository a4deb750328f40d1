"""Embedding and similarity for context-memory.

Two embedders share one capability (`embed(text) -> tuple[float, ...]` plus a
`dimension`):
- HashingEmbedder: deterministic hashing-trick bag of words, no model needed
- OllamaEmbedder: local model over HTTP, hash fallback when unreachable
"""

from __future__ import annotations

import sys
from functools import lru_cache
from typing import Protocol, Sequence

import numpy as np

from utils import LOG_PREFIX, string_hash, tokenize

DEFAULT_DIMENSION = 384


class Embedder(Protocol):
    """Anything that maps text to a fixed-length vector."""

    dimension: int

    def embed(self, text: str) -> tuple[float, ...]: ...


def _normalize(vector: np.ndarray) -> tuple[float, ...]:
    norm = np.linalg.norm(vector)
    return tuple((vector / norm).tolist()) if norm > 0 else tuple(vector.tolist())


@lru_cache(maxsize=1024)
def hash_embedding(text: str, dimension: int = DEFAULT_DIMENSION) -> tuple[float, ...]:
    """Hashing-trick embedding: token counts bucketed by hash, unit-normalized.

    Empty or whitespace-only text gives the all-zero vector.
    """
    vector = np.zeros(dimension, dtype=np.float64)
    for token in tokenize(text):
        vector[string_hash(token) % dimension] += 1.0
    return _normalize(vector)


class HashingEmbedder:
    """Deterministic, side-effect-free embedder."""

    def __init__(self, dimension: int = DEFAULT_DIMENSION):
        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        self.dimension = dimension

    def embed(self, text: str) -> tuple[float, ...]:
        return hash_embedding(text, self.dimension)


class OllamaEmbedder:
    """Embeddings from a local Ollama server, resized and normalized to `dimension`."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimension: int = DEFAULT_DIMENSION,
        timeout: float = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.dimension = dimension
        self.timeout = timeout
        self._fallback = HashingEmbedder(dimension)

    def _request(self, text: str) -> tuple[float, ...] | None:
        try:
            import requests

            response = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout,
            )
            response.raise_for_status()
            embedding = np.array(response.json().get("embedding", []), dtype=np.float64)
        except Exception as e:
            print(f"{LOG_PREFIX} Ollama embedding error: {e}", file=sys.stderr)
            return None

        # Handle dimension mismatch by truncation/padding
        if len(embedding) > self.dimension:
            embedding = embedding[: self.dimension]
        elif len(embedding) < self.dimension:
            embedding = np.concatenate([embedding, np.zeros(self.dimension - len(embedding))])
        return _normalize(embedding)

    def embed(self, text: str) -> tuple[float, ...]:
        if not text.strip():
            return tuple([0.0] * self.dimension)
        result = self._request(text)
        if result is None:
            print(f"{LOG_PREFIX} Using hash fallback embedding (poor semantic quality)", file=sys.stderr)
            return self._fallback.embed(text)
        return result


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1].

    Returns 0.0 for vectors of unequal length and when either magnitude is zero.
    """
    if len(a) != len(b):
        print(
            f"{LOG_PREFIX} Dimension mismatch in similarity: {len(a)} vs {len(b)}",
            file=sys.stderr,
        )
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / (norm_a * norm_b), -1.0, 1.0))
