"""
voxqueue.analytics - Observability events.

Records job completions, failures and cloud fallbacks in memory (bounded)
and, optionally, to a JSON-lines file.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any

from voxqueue.io import append_jsonl

logger = logging.getLogger(__name__)

JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"
CLOUD_FALLBACK = "cloud_fallback"


class EventRecorder:
    """Thread-safe event sink shared by the scheduler and engines."""

    def __init__(self, path: Path | None = None, max_events: int = 500) -> None:
        self.path = path
        self._events: deque[dict[str, Any]] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(self, kind: str, **fields: Any) -> dict[str, Any]:
        event = {"event": kind, "at": datetime.now().isoformat(timespec="seconds"), **fields}
        with self._lock:
            self._events.append(event)
        logger.info("event %s %s", kind, fields)
        if self.path is not None:
            try:
                append_jsonl(self.path, event)
            except OSError as e:
                logger.warning("Could not write event log %s: %s", self.path, e)
        return event

    def events(self, kind: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            snapshot = list(self._events)
        if kind is None:
            return snapshot
        return [e for e in snapshot if e["event"] == kind]

    def count(self, kind: str) -> int:
        return len(self.events(kind))
