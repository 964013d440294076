"""
voxqueue.live - Live transcription over a rolling audio buffer.

The windowed session re-transcribes the most recent window of audio every
hop and reports the segments as a partial update. Windows overlap and are
decoded independently, so consecutive partials may repeat words near the
window edges; callers that stitch partials together must handle that.

Where a push-based streaming recognizer is available it is used instead,
through the same start/ingest/stop/finish surface.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

import numpy as np

from voxqueue.audio import SAMPLE_RATE, write_wav
from voxqueue.config import VoxqueueConfig
from voxqueue.engines.base import TranscriptionEngine
from voxqueue.models import Segment, TranscriptionResult, TranscriptionSettings

logger = logging.getLogger(__name__)


class LiveSessionDelegate(Protocol):
    def on_partial(self, segments: list[Segment]) -> None: ...

    def on_eta(self, seconds: float) -> None: ...

    def on_complete(self, result: TranscriptionResult) -> None: ...

    def on_error(self, error: Exception) -> None: ...


class RollingAudioBuffer:
    """Append-only buffer of mono float32 chunks.

    Appends and tail snapshots may run on different threads. A snapshot
    copies the chunk list under the lock and concatenates outside it, so
    later appends never change a slice already taken. Chunks older than
    retain_seconds are dropped.
    """

    def __init__(self, sample_rate: int = SAMPLE_RATE, retain_seconds: float | None = None) -> None:
        self.sample_rate = sample_rate
        self.retain_seconds = retain_seconds
        self._chunks: list[np.ndarray] = []
        self._retained_frames = 0
        self._total_frames = 0
        self._lock = threading.Lock()

    def append(self, samples: np.ndarray) -> float:
        """Append samples and return the accumulated duration in seconds."""
        chunk = np.array(samples, dtype=np.float32).reshape(-1)
        with self._lock:
            if chunk.size:
                self._chunks.append(chunk)
                self._retained_frames += chunk.size
                self._total_frames += chunk.size
                self._trim_locked()
            return self._total_frames / self.sample_rate

    def _trim_locked(self) -> None:
        if self.retain_seconds is None:
            return
        keep = int(self.retain_seconds * self.sample_rate)
        while self._chunks and self._retained_frames - self._chunks[0].size >= keep:
            self._retained_frames -= self._chunks.pop(0).size

    @property
    def duration(self) -> float:
        """Total seconds appended since the last clear."""
        with self._lock:
            return self._total_frames / self.sample_rate

    def tail(self, seconds: float) -> np.ndarray:
        """Return a copy of the most recent seconds of audio."""
        with self._lock:
            chunks = list(self._chunks)
        wanted = int(round(seconds * self.sample_rate))
        if wanted <= 0 or not chunks:
            return np.zeros(0, dtype=np.float32)

        collected = []
        frames = 0
        for chunk in reversed(chunks):
            collected.append(chunk)
            frames += chunk.size
            if frames >= wanted:
                break
        joined = np.concatenate(collected[::-1])
        return joined[-wanted:].copy()

    def clear(self) -> None:
        with self._lock:
            self._chunks = []
            self._retained_frames = 0
            self._total_frames = 0


class LiveTranscriptionSession:
    """Windowed live transcription.

    Args:
        engine_factory: Builds the engine used for every window
        delegate: Receives partials, ETA updates, the final result and errors
        window_seconds: Length of audio transcribed per iteration
        hop_seconds: Pause between iterations
        sample_rate: Sample rate of ingested audio
        eta_factor: Multiplier for the remaining-audio ETA heuristic
        settings_factory: Builds per-window settings from the window length
        work_dir: Directory for temporary window WAV files
    """

    def __init__(
        self,
        engine_factory: Callable[[], TranscriptionEngine],
        delegate: LiveSessionDelegate | None = None,
        window_seconds: float = 12.0,
        hop_seconds: float = 3.0,
        sample_rate: int = SAMPLE_RATE,
        eta_factor: float = 2.0,
        preserve_timestamps: bool = False,
        settings_factory: Callable[[float], TranscriptionSettings] | None = None,
        work_dir: Path | None = None,
    ) -> None:
        if window_seconds <= 0 or hop_seconds <= 0:
            raise ValueError("window_seconds and hop_seconds must be positive")
        self.engine_factory = engine_factory
        self.delegate = delegate
        self.window_seconds = window_seconds
        self.hop_seconds = hop_seconds
        self.sample_rate = sample_rate
        self.eta_factor = eta_factor
        self.settings_factory = settings_factory or (
            lambda seconds: TranscriptionSettings.for_live_window(
                seconds, preserve_timestamps=preserve_timestamps
            )
        )
        self.work_dir = work_dir

        self.buffer = RollingAudioBuffer(sample_rate, retain_seconds=window_seconds)
        self.last_error: Exception | None = None
        self.windows_processed = 0

        self._lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._worker: threading.Thread | None = None
        # Worker of a stopped run that may still be inside the engine.
        self._retired: threading.Thread | None = None
        self._engine: TranscriptionEngine | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._stop_event = threading.Event()
            self._worker = None
            self.last_error = None
        logger.debug("Live session started (window=%.1fs, hop=%.1fs)", self.window_seconds, self.hop_seconds)

    def ingest(self, samples: np.ndarray) -> None:
        """Append 16kHz mono float samples. Ignored unless started."""
        if not self._running:
            return
        accumulated = self.buffer.append(samples)
        with self._lock:
            if not self._running or self._worker is not None:
                return
            if accumulated < self.window_seconds:
                return
            if self._retired is not None:
                if self._retired.is_alive():
                    return
                self._retired = None
            self._worker = threading.Thread(
                target=self._loop,
                args=(self._stop_event,),
                name="voxqueue-live",
                daemon=True,
            )
            self._worker.start()
        logger.debug("Live worker started at %.2fs of audio", accumulated)

    def stop(self) -> None:
        """End the loop at the next iteration boundary and discard audio."""
        with self._lock:
            self._running = False
            self._stop_event.set()
            if self._worker is not None and self._worker is not threading.current_thread():
                self._retired = self._worker
            self._worker = None
        self.buffer.clear()
        logger.debug("Live session stopped")

    def finish(self, timeout: float | None = None) -> TranscriptionResult | None:
        """Transcribe the final window once, report it, then stop.

        Returns:
            The final result, or None if there was no audio or it failed
        """
        with self._lock:
            if not self._running:
                return None
            self._stop_event.set()
            workers = [w for w in (self._retired, self._worker) if w is not None]
        for worker in workers:
            if worker is not threading.current_thread():
                worker.join(timeout)

        result = None
        if self.buffer.duration > 0:
            result = self._transcribe_window()
            if result is not None and self.delegate is not None:
                self.delegate.on_complete(result)
        self.stop()
        return result

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            result = self._transcribe_window(stop_event)
            if result is not None and not stop_event.is_set():
                if self.delegate is not None:
                    self.delegate.on_partial(result.segments)
                    self.delegate.on_eta(self._eta(result.duration))
            stop_event.wait(self.hop_seconds)

    def _eta(self, window_used: float) -> float:
        return max(0.0, (self.buffer.duration - window_used) * self.eta_factor)

    def _window_seconds(self) -> float:
        return min(self.window_seconds, self.buffer.duration)

    def _transcribe_window(self, stop_event: threading.Event | None = None) -> TranscriptionResult | None:
        seconds = self._window_seconds()
        if seconds <= 0:
            return None
        samples = self.buffer.tail(seconds)
        if samples.size == 0:
            return None
        seconds = samples.size / self.sample_rate

        fd, name = tempfile.mkstemp(prefix="live-window-", suffix=".wav", dir=self.work_dir)
        os.close(fd)
        path = Path(name)
        try:
            write_wav(path, samples, self.sample_rate)
            if self._engine is None:
                self._engine = self.engine_factory()
            result = self._engine.transcribe(path, self.settings_factory(seconds))
            self.windows_processed += 1
            return result.model_copy(update={"duration": seconds})
        except Exception as e:
            self.last_error = e
            logger.warning("Live window failed: %s", e)
            if self.delegate is not None and not (stop_event is not None and stop_event.is_set()):
                self.delegate.on_error(e)
            return None
        finally:
            path.unlink(missing_ok=True)


class StreamingRecognizer(Protocol):
    """Push-based recognizer producing partial and final text."""

    def supports(self, language: str | None) -> bool: ...

    def start(self, on_partial: Callable[[str], None], on_final: Callable[[str], None]) -> None: ...

    def accept(self, samples: np.ndarray) -> None: ...

    def finish(self) -> None: ...

    def cancel(self) -> None: ...


class StreamingLiveSession:
    """Adapts a StreamingRecognizer to the live session surface."""

    def __init__(
        self,
        recognizer: StreamingRecognizer,
        delegate: LiveSessionDelegate | None = None,
        sample_rate: int = SAMPLE_RATE,
    ) -> None:
        self.recognizer = recognizer
        self.delegate = delegate
        self.sample_rate = sample_rate
        self.last_error: Exception | None = None
        self._finals: list[Segment] = []
        self._frames = 0
        self._running = False
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def elapsed(self) -> float:
        return self._frames / self.sample_rate

    def _segment_start(self) -> float:
        return self._finals[-1].end if self._finals else 0.0

    def _on_partial(self, text: str) -> None:
        if not text.strip() or self.delegate is None:
            return
        segment = Segment(start=self._segment_start(), end=self.elapsed, text=text.strip())
        self.delegate.on_partial(list(self._finals) + [segment])

    def _on_final(self, text: str) -> None:
        if not text.strip():
            return
        with self._lock:
            self._finals.append(
                Segment(start=self._segment_start(), end=self.elapsed, text=text.strip())
            )
            finals = list(self._finals)
        if self.delegate is not None:
            self.delegate.on_partial(finals)

    def _fail(self, error: Exception) -> None:
        self.last_error = error
        logger.warning("Streaming recognizer failed: %s", error)
        if self.delegate is not None:
            self.delegate.on_error(error)

    def start(self) -> None:
        if self._running:
            return
        self._finals = []
        self._frames = 0
        self.last_error = None
        try:
            self.recognizer.start(self._on_partial, self._on_final)
        except Exception as e:
            self._fail(e)
            return
        self._running = True

    def ingest(self, samples: np.ndarray) -> None:
        if not self._running:
            return
        chunk = np.asarray(samples, dtype=np.float32).reshape(-1)
        self._frames += chunk.size
        try:
            self.recognizer.accept(chunk)
        except Exception as e:
            self._fail(e)

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        try:
            self.recognizer.cancel()
        except Exception as e:
            self._fail(e)

    def finish(self, timeout: float | None = None) -> TranscriptionResult | None:
        if not self._running:
            return None
        self._running = False
        try:
            self.recognizer.finish()
        except Exception as e:
            self._fail(e)
            return None
        with self._lock:
            segments = list(self._finals)
        result = TranscriptionResult(
            text=" ".join(s.text for s in segments),
            segments=segments,
            duration=self.elapsed,
        )
        if self.delegate is not None:
            self.delegate.on_complete(result)
        return result


LiveSession = LiveTranscriptionSession | StreamingLiveSession


def create_live_session(
    engine_factory: Callable[[], TranscriptionEngine],
    delegate: LiveSessionDelegate | None = None,
    config: VoxqueueConfig | None = None,
    recognizer: StreamingRecognizer | None = None,
    work_dir: Path | None = None,
) -> LiveSession:
    """Build a live session, preferring a streaming recognizer.

    The recognizer is used when one is supplied, the configured backend is
    "streaming" and it supports the configured language; otherwise the
    windowed session is returned.
    """
    config = config or VoxqueueConfig()
    language = config.language or None
    if (
        recognizer is not None
        and config.live_backend == "streaming"
        and recognizer.supports(language)
    ):
        logger.info("Using streaming recognizer for live transcription")
        return StreamingLiveSession(recognizer, delegate)

    return LiveTranscriptionSession(
        engine_factory,
        delegate,
        window_seconds=config.live_window_seconds,
        hop_seconds=config.live_hop_seconds,
        eta_factor=config.live_eta_factor,
        settings_factory=config.live_transcription_settings,
        work_dir=work_dir,
    )
