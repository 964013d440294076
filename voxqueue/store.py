"""
voxqueue.store - Observable job store.

Holds job records in queue order, hands out copies, notifies subscribers
with a fresh snapshot after every mutation, and optionally persists the
whole list to a JSON file whenever more than progress or stage changed.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from pathlib import Path

from pydantic import ValidationError

from voxqueue.exceptions import WorkspaceError
from voxqueue.io import read_json, write_json
from voxqueue.models import Job

logger = logging.getLogger(__name__)

DEFAULT_MAILBOX_SIZE = 256

# Fields a running job rewrites often; changes to only these are not persisted.
VOLATILE_FIELDS = {"progress", "stage"}


class JobSubscription:
    """Iterator of job snapshots. Each item is a list of Job copies.

    At most maxsize snapshots are buffered; a slow reader loses the oldest
    ones and always sees the latest state.
    """

    _CLOSED = object()

    def __init__(self, store: JobStore, maxsize: int = DEFAULT_MAILBOX_SIZE) -> None:
        self._store = store
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, maxsize))
        self._closed = False

    def _offer(self, item: object) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def _push(self, snapshot: list[Job]) -> None:
        if not self._closed:
            self._offer(snapshot)

    def get(self, timeout: float | None = None) -> list[Job] | None:
        """Return the next snapshot, or None on timeout or after close."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._unsubscribe(self)
        self._offer(self._CLOSED)

    def __iter__(self) -> JobSubscription:
        return self

    def __next__(self) -> list[Job]:
        if self._closed and self._queue.empty():
            raise StopIteration
        item = self._queue.get()
        if item is self._CLOSED:
            raise StopIteration
        return item

    def __enter__(self) -> JobSubscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class JobStore:
    """Thread-safe, ordered collection of jobs.

    Args:
        path: Optional JSON file. When set, existing jobs are loaded from it
            and every durable mutation rewrites it atomically. Updates that
            only move progress or stage stay in memory.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._jobs: dict[str, Job] = {}
        self._cond = threading.Condition()
        self._subscribers: list[JobSubscription] = []
        if path is not None and path.exists():
            self._load(path)

    def _load(self, path: Path) -> None:
        try:
            data = read_json(path)
            jobs = [Job.from_dict(item) for item in data]
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            raise WorkspaceError(f"Invalid job file {path}: {e}") from e
        self._jobs = {job.id: job for job in jobs}
        logger.debug("Loaded %d jobs from %s", len(jobs), path)

    def _snapshot_locked(self) -> list[Job]:
        return [job.model_copy(deep=True) for job in self._jobs.values()]

    def _changed_locked(self, persist: bool = True) -> None:
        if persist and self.path is not None:
            write_json(self.path, [job.to_dict() for job in self._jobs.values()])
        self._cond.notify_all()
        for subscriber in list(self._subscribers):
            subscriber._push(self._snapshot_locked())

    def add_job(self, job: Job, front: bool = False) -> Job:
        with self._cond:
            stored = job.model_copy(deep=True)
            if front:
                rest = {k: v for k, v in self._jobs.items() if k != job.id}
                self._jobs = {job.id: stored, **rest}
            else:
                self._jobs[job.id] = stored
            self._changed_locked()
            return stored.model_copy(deep=True)

    def update_job(self, job: Job) -> bool:
        """Replace a stored job by id. Returns False if the id is unknown."""
        with self._cond:
            previous = self._jobs.get(job.id)
            if previous is None:
                return False
            self._jobs[job.id] = job.model_copy(deep=True)
            self._changed_locked(persist=self._is_durable_change(previous, job))
            return True

    @staticmethod
    def _is_durable_change(previous: Job, job: Job) -> bool:
        return previous.model_dump(exclude=VOLATILE_FIELDS) != job.model_dump(exclude=VOLATILE_FIELDS)

    def move_to_front(self, job_id: str) -> bool:
        with self._cond:
            if job_id not in self._jobs:
                return False
            job = self._jobs.pop(job_id)
            self._jobs = {job_id: job, **self._jobs}
            self._changed_locked()
            return True

    def remove_job(self, job_id: str) -> bool:
        with self._cond:
            if self._jobs.pop(job_id, None) is None:
                return False
            self._changed_locked()
            return True

    def clear(self) -> None:
        with self._cond:
            self._jobs.clear()
            self._changed_locked()

    def get(self, job_id: str) -> Job | None:
        with self._cond:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def snapshot(self) -> list[Job]:
        with self._cond:
            return self._snapshot_locked()

    def __len__(self) -> int:
        with self._cond:
            return len(self._jobs)

    def subscribe(self, maxsize: int = DEFAULT_MAILBOX_SIZE) -> JobSubscription:
        """Subscribe to snapshots. The current snapshot is delivered first."""
        subscription = JobSubscription(self, maxsize)
        with self._cond:
            self._subscribers.append(subscription)
            subscription._push(self._snapshot_locked())
        return subscription

    def _unsubscribe(self, subscription: JobSubscription) -> None:
        with self._cond:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def wait_for_terminal(self, job_id: str, timeout: float | None = None) -> Job | None:
        """Block until a job reaches a terminal status.

        Returns:
            A copy of the terminal job, or None on timeout or if the job
            was removed
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                job = self._jobs.get(job_id)
                if job is None:
                    return None
                if job.is_terminal:
                    return job.model_copy(deep=True)
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None
                self._cond.wait(remaining)
