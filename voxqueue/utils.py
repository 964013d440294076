"""
voxqueue.utils - Shared utility functions.

Contains common functions used across multiple modules to avoid duplication.
"""

from __future__ import annotations

import re
from datetime import datetime

_SENTENCE_BREAK = re.compile(r"[.!?]")


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS or MM:SS.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (HH:MM:SS if >= 1 hour, otherwise MM:SS)
    """
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def timestamped_filename(backend: str, now: datetime | None = None) -> str:
    """Build a filename like ``2026-02-15_12-00-00_local``."""
    now = now or datetime.now()
    return f"{now.strftime('%Y-%m-%d_%H-%M-%S')}_{backend}"


def split_sentences(text: str) -> list[str]:
    """Split text on sentence punctuation, dropping empty pieces."""
    return [part.strip() for part in _SENTENCE_BREAK.split(text) if part.strip()]


def clamp(value: float, lower: float = 0.0, upper: float = 1.0) -> float:
    return max(lower, min(value, upper))
