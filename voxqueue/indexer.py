"""
voxqueue.indexer - Hand-off of finished transcripts to a retrieval index.

The scheduler calls ``Indexer.index`` on a background thread after a job
completes; whatever the indexer does, it never changes the job's state.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Protocol

from voxqueue.io import write_json
from voxqueue.models import TranscriptionResult
from voxqueue.utils import timestamped_filename

logger = logging.getLogger(__name__)


class Indexer(Protocol):
    def index(self, result: TranscriptionResult, metadata: dict[str, Any]) -> None: ...


class NullIndexer:
    """Indexer that discards everything."""

    def index(self, result: TranscriptionResult, metadata: dict[str, Any]) -> None:
        logger.debug("Skipping index for %s", metadata.get("filename"))


class TranscriptArchiveIndexer:
    """Writes each finished transcript as ``<job_id>.json`` in a directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, metadata: dict[str, Any]) -> Path:
        name = metadata.get("job_id") or timestamped_filename("transcript")
        return self.directory / f"{name}.json"

    def index(self, result: TranscriptionResult, metadata: dict[str, Any]) -> None:
        path = self.path_for(metadata)
        document = {
            "metadata": metadata,
            "text": result.text,
            "language": result.language,
            "duration": result.duration,
            "segments": [s.model_dump() for s in result.segments],
        }
        write_json(path, document)
        logger.info("Indexed %s -> %s", metadata.get("filename"), path.name)
