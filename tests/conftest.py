"""
Test configuration and shared fixtures.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from voxqueue.audio import SAMPLE_RATE, audio_duration, write_wav
from voxqueue.config import VoxqueueConfig
from voxqueue.engines.base import (
    EngineCapabilities,
    EngineType,
    TranscriptionEngine,
    finalize_result,
)
from voxqueue.engines.remote import GeminiEngine, RemoteEngine
from voxqueue.jobs import JobManager
from voxqueue.models import EngineContext, Segment, TranscriptionResult, TranscriptionSettings
from voxqueue.storage import Workspace
from voxqueue.store import JobStore


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    """Poll predicate until it is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeEngine(TranscriptionEngine):
    """Engine double that records calls and optionally blocks or fails."""

    capabilities = EngineCapabilities(on_device=True, requires_credential=False)

    def __init__(
        self,
        engine_type: EngineType = EngineType.LOCAL,
        text: str = "Hello world. This is a test.",
        error: Exception | None = None,
        gate: threading.Event | None = None,
        progress: tuple[float, ...] = (0.25, 0.5, 0.75, 1.0),
    ) -> None:
        super().__init__()
        self.engine_type = engine_type
        self.text = text
        self.error = error
        self.gate = gate
        self.progress = progress
        self.calls: list[tuple[Path, TranscriptionSettings]] = []
        self.durations: list[float | None] = []
        self.started = threading.Event()

    def transcribe(self, audio_path: Path, settings: TranscriptionSettings) -> TranscriptionResult:
        self.calls.append((audio_path, settings))
        self.durations.append(audio_duration(audio_path))
        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)
        for fraction in self.progress:
            self.report_progress(fraction)
        if self.error is not None:
            raise self.error
        return finalize_result(self.text, [], settings)


class FakeEngineFactory:
    """Engine factory returning preconfigured engines per type."""

    def __init__(self, engines: dict[EngineType, Any] | None = None) -> None:
        self.engines = engines or {}
        self.calls: list[tuple[EngineType, EngineContext]] = []

    def __call__(self, engine_type: EngineType, context: EngineContext) -> TranscriptionEngine:
        self.calls.append((engine_type, context))
        engine = self.engines.get(engine_type)
        if isinstance(engine, Exception):
            raise engine
        if engine is None:
            engine = FakeEngine(engine_type)
            self.engines[engine_type] = engine
        return engine

    @property
    def types(self) -> list[EngineType]:
        return [engine_type for engine_type, _ in self.calls]


class RecordingIndexer:
    def __init__(self) -> None:
        self.items: list[tuple[TranscriptionResult, dict]] = []

    def index(self, result: TranscriptionResult, metadata: dict) -> None:
        self.items.append((result, metadata))


class RecordingDelegate:
    """Live session delegate that keeps every callback."""

    def __init__(self) -> None:
        self.partials: list[list[Segment]] = []
        self.etas: list[float] = []
        self.completed: list[TranscriptionResult] = []
        self.errors: list[Exception] = []
        self.partial_event = threading.Event()

    def on_partial(self, segments: list[Segment]) -> None:
        self.partials.append(segments)
        self.partial_event.set()

    def on_eta(self, seconds: float) -> None:
        self.etas.append(seconds)

    def on_complete(self, result: TranscriptionResult) -> None:
        self.completed.append(result)

    def on_error(self, error: Exception) -> None:
        self.errors.append(error)


def tone(seconds: float, sample_rate: int = SAMPLE_RATE, frequency: float = 440.0) -> np.ndarray:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (0.3 * np.sin(2 * np.pi * frequency * t)).astype(np.float32)


@pytest.fixture(autouse=True)
def reset_model_cache() -> Iterator[None]:
    GeminiEngine.clear_model_cache()
    yield
    RemoteEngine.clear_model_cache()
    GeminiEngine.clear_model_cache()


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    """Create a temporary workspace with default local config."""
    ws = Workspace(tmp_path / "workspace")
    ws.create(provider="local")
    return ws


@pytest.fixture
def local_config() -> VoxqueueConfig:
    return VoxqueueConfig(
        model_path="/models/whisper-small",
        offline_mode=True,
        cloud_provider="local",
        poll_interval=0.01,
        recording_retention_days=0,
    )


@pytest.fixture
def make_wav(tmp_path: Path) -> Callable[..., Path]:
    """Write a 16kHz mono tone WAV and return its path."""

    def _make(name: str = "clip.wav", seconds: float = 1.0) -> Path:
        return write_wav(tmp_path / "inputs" / name, tone(seconds))

    return _make


@pytest.fixture
def make_manager(
    workspace: Workspace, local_config: VoxqueueConfig
) -> Iterator[Callable[..., JobManager]]:
    """Build JobManagers over an in-memory store; stopped at teardown."""
    managers: list[JobManager] = []

    def _make(
        config: VoxqueueConfig | None = None,
        engine_factory: FakeEngineFactory | None = None,
        store: JobStore | None = None,
        **kwargs: Any,
    ) -> JobManager:
        manager = JobManager(
            store if store is not None else JobStore(),
            workspace,
            config=config or local_config,
            engine_factory=engine_factory or FakeEngineFactory(),
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        manager.shutdown(timeout=5)
        manager.wait_for_indexing(timeout=5)
