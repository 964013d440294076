"""Tests for voxqueue.live module."""

from __future__ import annotations

import threading
import time

import numpy as np
import pytest
from conftest import FakeEngine, RecordingDelegate, tone, wait_until

from voxqueue.audio import SAMPLE_RATE
from voxqueue.config import VoxqueueConfig
from voxqueue.exceptions import InferenceError
from voxqueue.live import (
    LiveTranscriptionSession,
    RollingAudioBuffer,
    StreamingLiveSession,
    create_live_session,
)


class TestRollingAudioBuffer:
    def test_append_returns_accumulated_duration(self) -> None:
        buffer = RollingAudioBuffer(sample_rate=10)
        assert buffer.append(np.zeros(5)) == pytest.approx(0.5)
        assert buffer.append(np.zeros(15)) == pytest.approx(2.0)
        assert buffer.duration == pytest.approx(2.0)

    def test_tail_returns_most_recent_samples(self) -> None:
        buffer = RollingAudioBuffer(sample_rate=10)
        buffer.append(np.arange(10, dtype=np.float32))
        buffer.append(np.arange(10, 20, dtype=np.float32))

        tail = buffer.tail(0.5)

        assert tail.tolist() == [15, 16, 17, 18, 19]

    def test_tail_longer_than_buffer_returns_everything(self) -> None:
        buffer = RollingAudioBuffer(sample_rate=10)
        buffer.append(np.ones(4))

        assert buffer.tail(10.0).size == 4

    def test_tail_is_not_affected_by_later_appends(self) -> None:
        buffer = RollingAudioBuffer(sample_rate=10)
        buffer.append(np.zeros(10))
        snapshot = buffer.tail(1.0)
        buffer.append(np.ones(10))

        assert snapshot.sum() == 0

    def test_retention_drops_old_chunks_but_counts_duration(self) -> None:
        buffer = RollingAudioBuffer(sample_rate=10, retain_seconds=1.0)
        for value in range(5):
            buffer.append(np.full(10, value, dtype=np.float32))

        assert buffer.duration == pytest.approx(5.0)
        assert buffer.tail(5.0).tolist() == [4.0] * 10

    def test_clear(self) -> None:
        buffer = RollingAudioBuffer(sample_rate=10)
        buffer.append(np.ones(10))
        buffer.clear()

        assert buffer.duration == 0.0
        assert buffer.tail(1.0).size == 0


class TestLiveTranscriptionSession:
    def make_session(self, engine: FakeEngine, delegate: RecordingDelegate, tmp_path, **kwargs):
        values = {"window_seconds": 1.0, "hop_seconds": 0.2, "work_dir": tmp_path}
        values.update(kwargs)
        return LiveTranscriptionSession(lambda: engine, delegate, **values)

    def test_rejects_non_positive_window(self) -> None:
        with pytest.raises(ValueError):
            LiveTranscriptionSession(FakeEngine, window_seconds=0)

    def test_ingest_before_start_is_ignored(self, tmp_path) -> None:
        session = self.make_session(FakeEngine(), RecordingDelegate(), tmp_path)
        session.ingest(tone(2.0))

        assert session.buffer.duration == 0.0

    def test_no_partial_before_window_is_reached(self, tmp_path) -> None:
        engine = FakeEngine()
        delegate = RecordingDelegate()
        session = self.make_session(engine, delegate, tmp_path)
        session.start()
        session.ingest(tone(0.5))

        time.sleep(0.3)

        assert delegate.partials == []
        assert engine.calls == []
        session.stop()

    def test_first_partial_within_a_hop_of_the_window(self, tmp_path) -> None:
        engine = FakeEngine(text="Live words.")
        delegate = RecordingDelegate()
        session = self.make_session(engine, delegate, tmp_path, hop_seconds=0.3)
        session.start()
        session.ingest(tone(0.6))
        started = time.monotonic()
        session.ingest(tone(0.6))

        assert delegate.partial_event.wait(2.0)
        assert time.monotonic() - started <= 0.3 + 0.5
        assert delegate.partials[0][0].text == "Live words."
        assert delegate.etas and all(eta >= 0.0 for eta in delegate.etas)
        session.stop()

    def test_windows_never_exceed_window_length(self, tmp_path) -> None:
        engine = FakeEngine()
        delegate = RecordingDelegate()
        session = self.make_session(engine, delegate, tmp_path, hop_seconds=0.05)
        session.start()
        for _ in range(6):
            session.ingest(tone(0.5))
        assert wait_until(lambda: len(engine.calls) >= 3)
        session.stop()

        assert all(d is not None and d <= 1.0 + 1e-3 for d in engine.durations)
        assert all(s.duration_estimate <= 1.0 + 1e-3 for _, s in engine.calls)
        assert all(s.temperature == 0.0 and s.beam_size == 1 for _, s in engine.calls)

    def test_engine_is_built_once_per_session(self, tmp_path) -> None:
        built = []
        engine = FakeEngine()

        def factory() -> FakeEngine:
            built.append(1)
            return engine

        session = LiveTranscriptionSession(
            factory, RecordingDelegate(), window_seconds=0.5, hop_seconds=0.05, work_dir=tmp_path
        )
        session.start()
        session.ingest(tone(1.0))
        assert wait_until(lambda: len(engine.calls) >= 2)
        session.stop()

        assert len(built) == 1

    def test_stop_clears_buffer_and_silences_partials(self, tmp_path) -> None:
        engine = FakeEngine()
        delegate = RecordingDelegate()
        session = self.make_session(engine, delegate, tmp_path)
        session.start()
        session.ingest(tone(1.5))
        assert delegate.partial_event.wait(2.0)

        session.stop()
        count = len(delegate.partials)
        time.sleep(0.4)

        assert not session.is_running
        assert session.buffer.duration == 0.0
        assert len(delegate.partials) == count
        session.ingest(tone(1.5))
        assert session.buffer.duration == 0.0

    def test_restart_does_not_overlap_stopped_worker(self, tmp_path) -> None:
        class CountingEngine(FakeEngine):
            def __init__(self, **kwargs) -> None:
                super().__init__(**kwargs)
                self.active = 0
                self.peak = 0
                self.count_lock = threading.Lock()

            def transcribe(self, audio_path, settings):
                with self.count_lock:
                    self.active += 1
                    self.peak = max(self.peak, self.active)
                try:
                    return super().transcribe(audio_path, settings)
                finally:
                    with self.count_lock:
                        self.active -= 1

        gate = threading.Event()
        engine = CountingEngine(gate=gate)
        session = self.make_session(engine, RecordingDelegate(), tmp_path, hop_seconds=0.05)
        session.start()
        session.ingest(tone(1.2))
        assert engine.started.wait(2)

        session.stop()
        session.start()
        session.ingest(tone(1.2))
        time.sleep(0.1)
        assert len(engine.calls) == 1

        gate.set()

        def feed() -> bool:
            session.ingest(tone(0.1))
            return len(engine.calls) >= 2

        assert wait_until(feed)
        session.stop()
        assert engine.peak == 1

    def test_finish_reports_final_result(self, tmp_path) -> None:
        engine = FakeEngine(text="Final words.")
        delegate = RecordingDelegate()
        session = self.make_session(engine, delegate, tmp_path)
        session.start()
        session.ingest(tone(0.5))

        result = session.finish(timeout=2)

        assert result is not None
        assert result.text == "Final words."
        assert result.duration == pytest.approx(0.5, abs=0.01)
        assert delegate.completed == [result]
        assert not session.is_running

    def test_finish_without_audio_returns_none(self, tmp_path) -> None:
        delegate = RecordingDelegate()
        session = self.make_session(FakeEngine(), delegate, tmp_path)
        session.start()

        assert session.finish() is None
        assert delegate.completed == []

    def test_window_errors_reach_delegate(self, tmp_path) -> None:
        engine = FakeEngine(error=InferenceError("decoder crashed"))
        delegate = RecordingDelegate()
        session = self.make_session(engine, delegate, tmp_path)
        session.start()
        session.ingest(tone(1.2))

        assert wait_until(lambda: bool(delegate.errors))
        session.stop()

        assert isinstance(session.last_error, InferenceError)
        assert delegate.partials == []
        assert wait_until(lambda: list(tmp_path.glob("live-window-*.wav")) == [])


class FakeRecognizer:
    def __init__(self, languages: set[str | None] | None = None) -> None:
        self.languages = languages
        self.accepted = 0
        self.finished = False
        self.cancelled = False
        self.on_partial = None
        self.on_final = None

    def supports(self, language: str | None) -> bool:
        return self.languages is None or language in self.languages

    def start(self, on_partial, on_final) -> None:
        self.on_partial = on_partial
        self.on_final = on_final

    def accept(self, samples: np.ndarray) -> None:
        self.accepted += samples.size

    def finish(self) -> None:
        self.finished = True
        self.on_final("and goodbye")

    def cancel(self) -> None:
        self.cancelled = True


class TestStreamingLiveSession:
    def test_partials_include_finalized_segments(self) -> None:
        recognizer = FakeRecognizer()
        delegate = RecordingDelegate()
        session = StreamingLiveSession(recognizer, delegate)
        session.start()

        session.ingest(tone(1.0))
        recognizer.on_partial("hello")
        recognizer.on_final("hello there")
        session.ingest(tone(1.0))
        recognizer.on_partial("and")

        assert recognizer.accepted == 2 * SAMPLE_RATE
        assert [s.text for s in delegate.partials[0]] == ["hello"]
        assert [s.text for s in delegate.partials[-1]] == ["hello there", "and"]
        assert delegate.partials[-1][1].start == pytest.approx(1.0)

    def test_finish_collects_final_segments(self) -> None:
        recognizer = FakeRecognizer()
        delegate = RecordingDelegate()
        session = StreamingLiveSession(recognizer, delegate)
        session.start()
        session.ingest(tone(0.5))
        recognizer.on_final("hello there")

        result = session.finish()

        assert recognizer.finished
        assert result.text == "hello there and goodbye"
        assert result.duration == pytest.approx(0.5)
        assert delegate.completed == [result]
        assert not session.is_running

    def test_stop_cancels_recognizer(self) -> None:
        recognizer = FakeRecognizer()
        session = StreamingLiveSession(recognizer)
        session.start()
        session.stop()

        assert recognizer.cancelled
        assert session.finish() is None


class TestCreateLiveSession:
    def test_prefers_supported_streaming_recognizer(self) -> None:
        session = create_live_session(FakeEngine, config=VoxqueueConfig(), recognizer=FakeRecognizer())
        assert isinstance(session, StreamingLiveSession)

    def test_windowed_backend_ignores_recognizer(self) -> None:
        config = VoxqueueConfig(live_backend="windowed")
        session = create_live_session(FakeEngine, config=config, recognizer=FakeRecognizer())
        assert isinstance(session, LiveTranscriptionSession)

    def test_unsupported_language_uses_windowed_session(self) -> None:
        config = VoxqueueConfig(language="cy")
        session = create_live_session(
            FakeEngine, config=config, recognizer=FakeRecognizer(languages={"en"})
        )
        assert isinstance(session, LiveTranscriptionSession)

    def test_windowed_session_uses_configured_timing(self) -> None:
        config = VoxqueueConfig(live_window_seconds=8.0, live_hop_seconds=2.0)
        session = create_live_session(FakeEngine, config=config)

        assert isinstance(session, LiveTranscriptionSession)
        assert session.window_seconds == 8.0
        assert session.hop_seconds == 2.0
