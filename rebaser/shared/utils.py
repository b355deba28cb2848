"""
REBASER — Shared Utilities
"""

from typing import Sequence, TypeVar

T = TypeVar("T")

_DURATION_UNITS = ((3600, "h"), (60, "m"))


def format_duration(seconds: float) -> str:
    """Render a wait such as 30.0s, 1.5m or 1.5h for log lines."""
    for size, suffix in _DURATION_UNITS:
        if seconds >= size:
            return f"{seconds / size:.1f}{suffix}"
    return f"{seconds:.1f}s"


def chunk_list(items: Sequence[T], chunk_size: int) -> list[list[T]]:
    """Split a sequence into consecutive chunks of at most chunk_size, preserving order."""
    if chunk_size < 1:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [list(items[start:start + chunk_size]) for start in range(0, len(items), chunk_size)]
