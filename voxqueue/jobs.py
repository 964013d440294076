"""
voxqueue.jobs - Single-flight transcription scheduler.

Imported recordings are staged, prepared and queued; one background thread
takes the first queued job, resolves an engine for it and runs it to a
terminal state. At most one job is transcribing at any time. Remote
failures may fall back once to the local engine.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from voxqueue.analytics import CLOUD_FALLBACK, JOB_COMPLETED, JOB_FAILED, EventRecorder
from voxqueue.audio import AudioPreparer, audio_duration, prepare_for_transcription
from voxqueue.config import VoxqueueConfig
from voxqueue.engines.base import EngineType
from voxqueue.engines.factory import EngineFactory, engine_factory_from_config
from voxqueue.exceptions import AudioPreparationError, JobCancelledError, MissingSourceFileError
from voxqueue.indexer import Indexer, NullIndexer
from voxqueue.models import (
    EngineAttempt,
    EngineContext,
    Job,
    JobStatus,
    Segment,
    TranscriptionResult,
    TranscriptionSettings,
)
from voxqueue.resolver import resolve_engine, stage_name
from voxqueue.storage import Workspace
from voxqueue.store import JobStore
from voxqueue.utils import split_sentences

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "cancelled by user"
MAX_PROGRESS_BEFORE_DONE = 0.95


def segments_from_text(text: str, duration: float) -> list[Segment]:
    """Spread the sentences of text evenly over duration."""
    sentences = split_sentences(text)
    if not sentences:
        return [Segment(start=0.0, end=duration, text=text.strip())] if text.strip() else []
    step = duration / len(sentences)
    return [
        Segment(start=i * step, end=min((i + 1) * step, duration), text=sentence)
        for i, sentence in enumerate(sentences)
    ]


class JobManager:
    """Owns the job queue and the processing loop.

    Args:
        store: Job store; its order is the queue order
        workspace: Workspace for staged and prepared audio
        config: Workspace configuration (engine selection, settings)
        preparer: Converts a staged file to engine-ready audio
        engine_factory: Builds an engine for a type and context
        indexer: Receives finished transcripts on a background thread
        events: Observability event sink
        poll_interval: Seconds between scheduler iterations
        autostart: Start the loop automatically when work is queued
        recover: Purge orphaned jobs and requeue interrupted ones on startup;
            off for processes that only inspect or edit the queue
    """

    def __init__(
        self,
        store: JobStore,
        workspace: Workspace,
        config: VoxqueueConfig | None = None,
        preparer: AudioPreparer = prepare_for_transcription,
        engine_factory: EngineFactory | None = None,
        indexer: Indexer | None = None,
        events: EventRecorder | None = None,
        poll_interval: float | None = None,
        autostart: bool = True,
        recover: bool = True,
    ) -> None:
        self.store = store
        self.workspace = workspace
        self.config = config or VoxqueueConfig()
        self.preparer = preparer
        self.engine_factory = engine_factory or engine_factory_from_config(self.config)
        self.indexer = indexer or NullIndexer()
        self.events = events or EventRecorder()
        self.autostart = autostart
        self.poll_interval = poll_interval if poll_interval is not None else self.config.poll_interval

        self._lock = threading.RLock()
        self._thread_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._active_id: str | None = None
        self._index_threads: list[threading.Thread] = []

        if recover:
            self._recover()

    def _mutate(self, job_id: str, change: Callable[[Job], bool | None]) -> Job | None:
        """Apply change to the stored job under the manager lock.

        change may return False to leave the job untouched.
        """
        with self._lock:
            job = self.store.get(job_id)
            if job is None:
                return None
            if change(job) is False:
                return None
            self.store.update_job(job)
            return job

    def _recover(self) -> None:
        """Drop jobs whose audio is gone and requeue interrupted ones."""
        purged = 0
        for job in self.store.snapshot():
            if not Path(job.source_ref).exists():
                self.store.remove_job(job.id)
                purged += 1
                continue
            if job.status is JobStatus.TRANSCRIBING:

                def requeue(j: Job) -> None:
                    j.status = JobStatus.QUEUED
                    j.progress = 0.0
                    j.stage = "queued"

                self._mutate(job.id, requeue)
                logger.info("Requeued interrupted job %s", job.filename)
        if purged:
            logger.info("Purged %d orphaned jobs", purged)

    def _cleanup_old_recordings(self) -> None:
        days = self.config.recording_retention_days
        if days <= 0:
            return
        keep = set()
        for job in self.store.snapshot():
            keep.add(Path(job.source_ref))
            if job.staged_ref:
                keep.add(Path(job.staged_ref))
        self.workspace.cleanup_recordings(days * 24 * 60 * 60, keep=keep)

    @property
    def active_job_id(self) -> str | None:
        return self._active_id

    @property
    def is_processing(self) -> bool:
        with self._thread_lock:
            return self._thread is not None and self._thread.is_alive()

    def jobs(self) -> list[Job]:
        return self.store.snapshot()

    def get_job(self, job_id: str) -> Job | None:
        return self.store.get(job_id)

    def add_job(self, audio_path: Path, filename: str | None = None) -> Job | None:
        """Stage, prepare and enqueue an audio file.

        Returns:
            The queued job, or None if the source is missing, empty, or
            could not be prepared. Nothing is queued in that case.
        """
        source = Path(audio_path)
        filename = filename or source.name
        if not source.is_file() or source.stat().st_size == 0:
            logger.warning("Skipping %s: file is missing or empty", source)
            return None

        self._cleanup_old_recordings()
        try:
            staged = self.workspace.stage_file(source, filename)
        except OSError as e:
            logger.error("Failed to stage recording %s: %s", source, e)
            return None

        try:
            prepared = self.preparer(staged, self.workspace.prepared_dir)
        except AudioPreparationError as e:
            logger.error("Audio preparation failed for %s: %s", filename, e)
            staged.unlink(missing_ok=True)
            return None

        job = Job(
            filename=filename,
            source_ref=str(prepared.path),
            staged_ref=str(staged),
            duration=prepared.duration,
        )
        job = self.store.add_job(job)
        logger.info("Job queued for %s (%.2fs) id=%s", filename, prepared.duration, job.id)
        if self.autostart:
            self.ensure_processing("auto-start")
        return job

    def add_completed_item(self, audio_path: Path, filename: str, text: str) -> Job | None:
        """Store an already-transcribed recording as a completed job.

        Used for live sessions: the audio is staged, the text is split into
        sentence segments spread over the recording, and the result is
        indexed like any finished job.
        """
        source = Path(audio_path)
        if not source.is_file():
            logger.warning("Skipping completed item %s: file is missing", source)
            return None

        duration = audio_duration(source)
        try:
            staged = self.workspace.stage_file(source, filename)
        except OSError as e:
            logger.error("Failed to stage completed item %s: %s", source, e)
            return None

        total = duration or 0.0
        result = TranscriptionResult(
            text=text.strip(),
            segments=segments_from_text(text, total),
            duration=total,
        )
        job = Job(
            filename=filename,
            source_ref=str(staged),
            staged_ref=str(staged),
            status=JobStatus.COMPLETED,
            progress=1.0,
            stage="completed",
            duration=duration,
            result=result,
        )
        job = self.store.add_job(job)
        logger.info("Completed item added: %s (%.2fs, %d segments)", filename, total, len(result.segments))
        self._dispatch_index(job)
        return job

    def cancel_job(self, job_id: str) -> Job | None:
        """Cancel a queued or transcribing job.

        Cancellation is advisory: an engine call already in flight still
        runs to completion and its outcome replaces the cancelled state.

        Returns:
            The cancelled job, or None if nothing changed
        """

        def cancel(job: Job) -> bool | None:
            if not job.status.is_active:
                return False
            job.status = JobStatus.CANCELLED
            job.error = CANCELLED_MESSAGE
            job.stage = "cancelled"

        job = self._mutate(job_id, cancel)
        if job is not None:
            logger.info("Job cancelled: %s", job.filename)
        return job

    def retry_job(self, job_id: str) -> Job | None:
        """Requeue a finished job, promoting it to the front of the queue.

        Raises:
            MissingSourceFileError: If the job's audio no longer exists; the
                job is marked failed with this message
        """
        with self._lock:
            job = self.store.get(job_id)
            if job is None or job.status.is_active:
                return job

            if not Path(job.source_ref).exists():
                error = MissingSourceFileError(job.source_ref)
                job.status = JobStatus.FAILED
                job.error = str(error)
                job.stage = "error"
                self.store.update_job(job)
                logger.warning("Retry aborted, missing file for %s", job.filename)
                raise error

            job.status = JobStatus.QUEUED
            job.progress = 0.0
            job.error = None
            job.stage = "queued"
            job.result = None
            self.store.update_job(job)
            if job_id != self._active_id:
                self.store.move_to_front(job_id)

        logger.info("Job retried: %s", job.filename)
        if self.autostart:
            self.ensure_processing("retry")
        return self.store.get(job_id)

    def remove_job(self, job_id: str) -> bool:
        with self._lock:
            removed = self.store.remove_job(job_id)
        if removed:
            logger.info("Job removed: %s", job_id)
        return removed

    def wait_for_job(self, job_id: str, timeout: float | None = None) -> Job | None:
        """Block until the job is terminal. Returns None on timeout."""
        return self.store.wait_for_terminal(job_id, timeout)

    def wait_for_indexing(self, timeout: float | None = None) -> None:
        """Block until dispatched indexer threads have finished."""
        with self._lock:
            threads = [t for t in self._index_threads if t.ident is not None]
        for thread in threads:
            thread.join(timeout)

    def _next_queued(self) -> Job | None:
        for job in self.store.snapshot():
            if job.status is JobStatus.QUEUED:
                return job
        return None

    def ensure_processing(self, reason: str = "manual") -> bool:
        """Start the loop if there is queued work and no loop is running.

        Returns:
            True if a new loop thread was started
        """
        with self._thread_lock:
            if self._thread is not None and self._thread.is_alive():
                logger.debug("ensure_processing(%s) ignored, already running", reason)
                return False
            if self._next_queued() is None:
                return False
            self._stop.clear()
            self._thread = threading.Thread(
                target=self._run_loop, name="voxqueue-scheduler", daemon=True
            )
            self._thread.start()
        logger.debug("Processing started (reason=%s)", reason)
        return True

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop the loop after the current job finishes."""
        self._stop.set()
        with self._thread_lock:
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _run_loop(self) -> None:
        try:
            while not self._stop.is_set():
                job = self._next_queued()
                if job is None:
                    # Give up the thread slot under the same lock ensure_processing checks.
                    with self._thread_lock:
                        if self._stop.is_set() or self._next_queued() is None:
                            if self._thread is threading.current_thread():
                                self._thread = None
                            break
                    continue
                self._process(job.id)
                self._stop.wait(self.poll_interval)
        finally:
            with self._thread_lock:
                if self._thread is threading.current_thread():
                    self._thread = None
            logger.debug("Processing loop ended")

    def _process(self, job_id: str) -> None:
        with self._lock:
            job = self.store.get(job_id)
            if job is None or job.status is not JobStatus.QUEUED:
                return
            job.status = JobStatus.TRANSCRIBING
            job.stage = "transcribing"
            self.store.update_job(job)
            self._active_id = job_id
        logger.info("Job started: %s", job.filename)

        try:
            result = self._perform_transcription(job)
        except JobCancelledError:
            logger.info("Job cancelled before fallback: %s", job.filename)
        except Exception as e:
            message = str(e) or e.__class__.__name__

            def fail(j: Job) -> None:
                j.status = JobStatus.FAILED
                j.error = message
                j.stage = "error"

            with self._lock:
                if self.store.get(job_id) is not None:
                    self.events.record(JOB_FAILED, job_id=job_id, filename=job.filename, reason=message)
                self._mutate(job_id, fail)
            logger.error("Job failed: %s: %s", job.filename, message)
        else:

            def complete(j: Job) -> None:
                j.status = JobStatus.COMPLETED
                j.progress = 1.0
                j.result = result
                j.error = None
                j.stage = "completed"

            # Waiters woken by the completion block on the lock until the indexer is dispatched.
            with self._lock:
                if self.store.get(job_id) is not None:
                    self.events.record(
                        JOB_COMPLETED, job_id=job_id, filename=job.filename, duration=result.duration
                    )
                finished = self._mutate(job_id, complete)
                if finished is not None:
                    self._dispatch_index(finished)
            if finished is not None:
                logger.info("Job completed: %s", job.filename)
            else:
                logger.info("Job removed before completion: %s", job.filename)
        finally:
            self._active_id = None

    def _settings_for(self, job: Job) -> TranscriptionSettings:
        estimate = job.duration or audio_duration(Path(job.source_ref))
        return self.config.transcription_settings(duration_estimate=estimate)

    def _progress_handler(self, job_id: str) -> Callable[[float], None]:
        def on_progress(fraction: float) -> None:
            def advance(job: Job) -> bool | None:
                if job.status is not JobStatus.TRANSCRIBING:
                    return False
                progress = max(job.progress, min(fraction, MAX_PROGRESS_BEFORE_DONE))
                if progress == job.progress:
                    return False
                job.progress = progress

            self._mutate(job_id, advance)

        return on_progress

    def _set_stage(self, job_id: str, stage: str) -> None:
        def change(job: Job) -> bool | None:
            if job.status is not JobStatus.TRANSCRIBING:
                return False
            job.stage = stage

        self._mutate(job_id, change)

    def _record_attempt(self, job_id: str, attempt: EngineAttempt) -> None:
        def append(job: Job) -> None:
            job.attempts.append(attempt)

        self._mutate(job_id, append)

    def _transcribe_with(
        self,
        engine_type: EngineType,
        context: EngineContext,
        settings: TranscriptionSettings,
        job: Job,
    ) -> TranscriptionResult:
        engine = self.engine_factory(engine_type, context)
        engine.progress_handler = self._progress_handler(job.id)
        return engine.transcribe(Path(job.source_ref), settings)

    def _perform_transcription(self, job: Job) -> TranscriptionResult:
        resolution = resolve_engine(self.config.engine_selection())
        settings = self._settings_for(job)
        context = EngineContext(
            model_ref=self.config.model_path,
            preferred_task=self.config.preferred_task,
            credential=resolution.credential,
        )
        preferred = resolution.engine_type
        self._set_stage(job.id, stage_name(preferred))

        try:
            result = self._transcribe_with(preferred, context, settings, job)
        except Exception as e:
            self._record_attempt(
                job.id, EngineAttempt(engine=preferred.value, succeeded=False, error=str(e))
            )
            if not (resolution.allow_fallback and preferred.is_remote):
                raise
            current = self.store.get(job.id)
            if current is None or current.status is JobStatus.CANCELLED:
                raise JobCancelledError(CANCELLED_MESSAGE) from e
            logger.warning("Cloud transcription failed (%s); falling back: %s", preferred.value, e)
            self.events.record(CLOUD_FALLBACK, provider=preferred.value, job_id=job.id, reason=str(e))
        else:
            self._record_attempt(job.id, EngineAttempt(engine=preferred.value, succeeded=True))
            return result

        self._set_stage(job.id, "fallback")
        fallback_context = context.model_copy(update={"credential": None})
        try:
            result = self._transcribe_with(EngineType.LOCAL, fallback_context, settings, job)
        except Exception as e:
            self._record_attempt(
                job.id,
                EngineAttempt(engine=EngineType.LOCAL.value, succeeded=False, error=str(e), fallback=True),
            )
            raise
        self._record_attempt(
            job.id, EngineAttempt(engine=EngineType.LOCAL.value, succeeded=True, fallback=True)
        )
        return result

    def _dispatch_index(self, job: Job) -> None:
        if job.result is None:
            return
        metadata = {
            "filename": job.filename,
            "duration": job.duration or 0.0,
            "timestamp": job.created_at.isoformat(),
            "job_id": job.id,
        }
        thread = threading.Thread(
            target=self._index,
            args=(job.result, metadata),
            name=f"voxqueue-index-{job.id[:8]}",
            daemon=True,
        )
        thread.start()
        with self._lock:
            self._index_threads = [t for t in self._index_threads if t.is_alive()]
            self._index_threads.append(thread)

    def _index(self, result: TranscriptionResult, metadata: dict) -> None:
        try:
            self.indexer.index(result, metadata)
        except Exception:
            logger.exception("Indexing failed for %s", metadata.get("filename"))
