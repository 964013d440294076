"""Tests for the engine contract, text cleanup and engine factory."""

from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeEngine

from voxqueue.config import VoxqueueConfig
from voxqueue.engines.base import EngineType, finalize_result
from voxqueue.engines.factory import create_engine, engine_factory_from_config
from voxqueue.engines.local import LocalEngine
from voxqueue.engines.remote import GeminiEngine, OpenAIEngine
from voxqueue.engines.sanitize import apply_suppress_pattern, sanitize_transcript_text
from voxqueue.exceptions import MissingCredentialError, ModelUnavailableError
from voxqueue.models import EngineContext, Segment, TranscriptionSettings


class TestSanitizeTranscriptText:
    def test_removes_control_and_timestamp_tokens(self) -> None:
        text = "<|startoftranscript|><|0.00|> Hello world<|2.50|><|endoftranscript|>"
        assert sanitize_transcript_text(text) == "Hello world"

    def test_removes_leading_time_ranges(self) -> None:
        text = "[00:00.000 --> 00:02.000] Hello\n[00:02.000 --> 00:04.000] again"
        assert sanitize_transcript_text(text) == "Hello again"

    def test_drops_cue_only_lines_and_inline_cues(self) -> None:
        text = "(music)\nWelcome (applause) back\n  (laughs)  "
        assert sanitize_transcript_text(text) == "Welcome back"

    def test_preserve_returns_text_unchanged(self) -> None:
        text = "[00:00.000 --> 00:02.000] Hello (music)"
        assert sanitize_transcript_text(text, preserve=True) == text


class TestApplySuppressPattern:
    def test_removes_matches(self) -> None:
        assert apply_suppress_pattern("um so um yes", r"\bum\b") == "so yes"

    def test_empty_pattern(self) -> None:
        assert apply_suppress_pattern("keep this", None) == "keep this"

    def test_invalid_pattern_is_ignored(self) -> None:
        assert apply_suppress_pattern("keep this", "([unclosed") == "keep this"


class TestFinalizeResult:
    def test_drops_empty_segments_and_sorts(self) -> None:
        segments = [
            Segment(start=2.0, end=3.0, text="second"),
            Segment(start=1.0, end=1.5, text="(music)"),
            Segment(start=0.0, end=1.0, text="first"),
        ]
        result = finalize_result("", segments, TranscriptionSettings())

        assert [s.text for s in result.segments] == ["first", "second"]
        assert result.text == "first second"
        assert result.duration == 3.0

    def test_text_without_segments_spans_estimate(self) -> None:
        settings = TranscriptionSettings(duration_estimate=7.5, language="en")
        result = finalize_result("Just text.", [], settings)

        assert len(result.segments) == 1
        assert result.segments[0].start == 0.0
        assert result.segments[0].end == 7.5
        assert result.duration == 7.5
        assert result.language == "en"

    def test_suppress_pattern_applies_to_segments(self) -> None:
        settings = TranscriptionSettings(suppress_pattern="Thanks for watching!?")
        segments = [
            Segment(start=0.0, end=1.0, text="Real speech"),
            Segment(start=1.0, end=2.0, text="Thanks for watching!"),
        ]
        result = finalize_result("Real speech Thanks for watching!", segments, settings)

        assert result.text == "Real speech"
        assert [s.text for s in result.segments] == ["Real speech"]

    def test_engine_language_wins(self) -> None:
        result = finalize_result("Hola", [], TranscriptionSettings(language="en"), language="es")
        assert result.language == "es"


class TestReportProgress:
    def test_progress_is_clamped(self) -> None:
        engine = FakeEngine()
        seen: list[float] = []
        engine.progress_handler = seen.append

        engine.report_progress(1.7)
        engine.report_progress(-0.2)

        assert seen == [1.0, 0.0]

    def test_handler_errors_are_contained(self) -> None:
        engine = FakeEngine()

        def broken(fraction: float) -> None:
            raise RuntimeError("ui gone")

        engine.progress_handler = broken
        engine.report_progress(0.5)

    def test_engine_type_properties(self) -> None:
        assert not EngineType.LOCAL.is_remote
        assert EngineType.OPENAI.is_remote
        assert FakeEngine(EngineType.GEMINI).name == "gemini"


class TestCreateEngine:
    def test_local_engine_uses_model_factory(self, tmp_path: Path) -> None:
        loaded: list[str] = []

        def loader(path: str) -> object:
            loaded.append(path)
            return object()

        context = EngineContext(model_ref=str(tmp_path))
        engine = create_engine(EngineType.LOCAL, context, model_factory=loader)

        assert isinstance(engine, LocalEngine)
        assert engine.capabilities.on_device
        assert loaded == [str(tmp_path)]

    def test_local_engine_without_model(self) -> None:
        with pytest.raises(ModelUnavailableError):
            create_engine(EngineType.LOCAL, EngineContext())

    def test_remote_engines_need_credentials(self) -> None:
        with pytest.raises(MissingCredentialError):
            create_engine(EngineType.OPENAI, EngineContext())

    def test_remote_engines_take_config_limits(self) -> None:
        config = VoxqueueConfig(request_timeout=30.0, max_retries=5, stream_threshold_bytes=1024)
        factory = engine_factory_from_config(config)

        openai = factory(EngineType.OPENAI, EngineContext(credential="sk-test"))
        gemini = factory(EngineType.GEMINI, EngineContext(credential="g-key", preferred_task="translate"))

        assert isinstance(openai, OpenAIEngine)
        assert openai.request_timeout == (30.0, 30.0)
        assert openai.max_retries == 5
        assert openai.uploader.threshold == 1024
        assert isinstance(gemini, GeminiEngine)
        assert gemini.preferred_task == "translate"
        assert gemini.capabilities.requires_credential
