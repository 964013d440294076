"""
voxqueue.storage - Workspace directory management.

Handles workspace creation, directory structure, and staging of imported
recordings.
"""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path

from voxqueue.config import CONFIG_FILENAME, create_default_config, write_config

logger = logging.getLogger(__name__)


class Workspace:
    """Represents a Voxqueue workspace directory."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.config_path = path / CONFIG_FILENAME
        self.jobs_path = path / "jobs.json"
        self.events_path = path / "events.jsonl"
        self.recordings_dir = path / "recordings"
        self.prepared_dir = path / "prepared"
        self.transcripts_dir = path / "transcripts"

    def exists(self) -> bool:
        return self.config_path.exists()

    def create(self, provider: str = "local") -> None:
        """Create the workspace directory structure and default config."""
        self.path.mkdir(parents=True, exist_ok=True)
        self.create_directories()
        write_config(create_default_config(provider), self.config_path)

    def create_directories(self) -> None:
        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        self.prepared_dir.mkdir(parents=True, exist_ok=True)
        self.transcripts_dir.mkdir(parents=True, exist_ok=True)

    def make_recording_path(self, filename: str) -> Path:
        """Return a path in recordings/ for filename that does not exist yet."""
        name = Path(filename).name or "audio_file"
        candidate = self.recordings_dir / name
        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = self.recordings_dir / f"{stem}-{counter}{suffix}"
            counter += 1
        return candidate

    def stage_file(self, source: Path, filename: str) -> Path:
        """Copy an imported file into recordings/ and return the staged path."""
        self.create_directories()
        target = self.make_recording_path(filename)
        shutil.copy2(source, target)
        logger.debug("Staged %s -> %s", source, target)
        return target

    def cleanup_recordings(self, older_than_seconds: float, keep: set[Path] | None = None) -> int:
        """Delete staged and prepared audio older than the given age.

        Files listed in keep (audio still referenced by jobs) are never removed.

        Returns:
            Number of files removed
        """
        if older_than_seconds <= 0:
            return 0
        cutoff = time.time() - older_than_seconds
        keep = {p.resolve() for p in keep} if keep else set()
        removed = 0
        for directory in (self.recordings_dir, self.prepared_dir):
            if not directory.exists():
                continue
            for path in directory.iterdir():
                if path.resolve() in keep:
                    continue
                if path.is_file() and path.stat().st_mtime < cutoff:
                    path.unlink(missing_ok=True)
                    removed += 1
        if removed:
            logger.info("Removed %d recordings older than %.0fs", removed, older_than_seconds)
        return removed


def find_workspace_dir(start: Path | None = None) -> Path | None:
    """Find the workspace directory by looking for voxqueue.yaml."""
    current = (start or Path.cwd()).resolve()
    while True:
        if (current / CONFIG_FILENAME).exists():
            return current
        if current == current.parent:
            return None
        current = current.parent
