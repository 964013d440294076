"""
voxqueue.runtime - Composition root.

Builds the services for one workspace once and wires them together: the
job store, event recorder, indexer, engine factory, job manager, and live
sessions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from voxqueue.analytics import EventRecorder
from voxqueue.audio import AudioPreparer, prepare_for_transcription
from voxqueue.config import VoxqueueConfig, load_config
from voxqueue.engines.base import EngineType, TranscriptionEngine
from voxqueue.engines.factory import EngineFactory, engine_factory_from_config
from voxqueue.indexer import Indexer, TranscriptArchiveIndexer
from voxqueue.jobs import JobManager
from voxqueue.live import LiveSession, LiveSessionDelegate, StreamingRecognizer, create_live_session
from voxqueue.models import EngineContext
from voxqueue.resolver import resolve_engine
from voxqueue.storage import Workspace
from voxqueue.store import JobStore

logger = logging.getLogger(__name__)


class Runtime:
    """Services for one workspace."""

    def __init__(
        self,
        workspace: Workspace,
        config: VoxqueueConfig,
        engine_factory: EngineFactory | None = None,
        preparer: AudioPreparer = prepare_for_transcription,
        indexer: Indexer | None = None,
        autostart: bool = True,
        recover: bool = True,
    ) -> None:
        self.workspace = workspace
        self.config = config
        workspace.create_directories()

        self.store = JobStore(workspace.jobs_path)
        self.events = EventRecorder(workspace.events_path)
        self.indexer = indexer or TranscriptArchiveIndexer(workspace.transcripts_dir)
        self.engine_factory = engine_factory or engine_factory_from_config(config)
        self.jobs = JobManager(
            self.store,
            workspace,
            config=config,
            preparer=preparer,
            engine_factory=self.engine_factory,
            indexer=self.indexer,
            events=self.events,
            autostart=autostart,
            recover=recover,
        )

    @classmethod
    def open(cls, path: Path, **kwargs) -> Runtime:
        """Load config from a workspace directory and build its services."""
        workspace = Workspace(path)
        config = load_config(path)
        return cls(workspace, config, **kwargs)

    def live_engine_factory(self) -> Callable[[], TranscriptionEngine]:
        """Engine factory for live windows, resolved like a job would be."""
        resolution = resolve_engine(self.config.engine_selection())
        context = EngineContext(
            model_ref=self.config.model_path,
            preferred_task="transcribe",
            credential=resolution.credential,
        )
        engine_type: EngineType = resolution.engine_type

        def factory() -> TranscriptionEngine:
            return self.engine_factory(engine_type, context)

        return factory

    def live_session(
        self,
        delegate: LiveSessionDelegate | None = None,
        recognizer: StreamingRecognizer | None = None,
    ) -> LiveSession:
        return create_live_session(
            self.live_engine_factory(),
            delegate,
            config=self.config,
            recognizer=recognizer,
            work_dir=self.workspace.prepared_dir,
        )

    def close(self, timeout: float | None = None) -> None:
        self.jobs.shutdown(timeout)
        self.jobs.wait_for_indexing(timeout)
