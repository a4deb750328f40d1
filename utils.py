"""Shared utility functions for context-memory."""

from __future__ import annotations

from datetime import datetime

LOG_PREFIX = "[context-memory]"


def tokenize(text: str) -> list[str]:
    """Split text on whitespace into lower-cased tokens."""
    return text.lower().split()


def string_hash(token: str) -> int:
    """Stable 32-bit polynomial rolling hash, reduced to a non-negative int.

    Examples:
        string_hash("") -> 0
        string_hash("a") -> 97
        string_hash("ab") -> 3105
    """
    h = 0
    for ch in token:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    # Interpret as signed 32-bit before taking the magnitude
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def now() -> datetime:
    """Get current local time."""
    return datetime.now()


def snippet(text: str, length: int = 200) -> str:
    """First `length` characters of text, with an ellipsis when truncated."""
    if len(text) <= length:
        return text
    return f"{text[:length]}..."
