"""
voxqueue.engines.local - On-device Whisper engine.

Runs a CTranslate2 Whisper model through faster-whisper. The model
directory is checked and loaded when the engine is constructed, so a bad
model reference fails before any job audio is touched.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from voxqueue.engines.base import (
    EngineCapabilities,
    EngineType,
    TranscriptionEngine,
    finalize_result,
)
from voxqueue.exceptions import (
    DependencyError,
    InferenceError,
    ModelLoadingError,
    ModelUnavailableError,
)
from voxqueue.models import Segment, TranscriptionResult, TranscriptionSettings

logger = logging.getLogger(__name__)

ModelFactory = Callable[[str], Any]


def check_faster_whisper() -> str:
    """Return the installed faster-whisper version.

    Raises:
        DependencyError: If faster-whisper is not installed
    """
    try:
        import faster_whisper
    except ImportError as e:
        raise DependencyError(
            "faster-whisper",
            "faster-whisper not installed",
            install_hint="pip install 'voxqueue[local]'",
        ) from e
    return getattr(faster_whisper, "__version__", "unknown")


def load_faster_whisper(model_ref: str) -> Any:
    """Load a faster-whisper model from a local directory."""
    check_faster_whisper()
    from faster_whisper import WhisperModel

    return WhisperModel(model_ref, device="auto", compute_type="auto")


def validate_model_ref(model_ref: str | None) -> Path:
    """Check that a model reference points at a usable model directory.

    Raises:
        ModelUnavailableError: If no model is configured
        ModelLoadingError: If the path is missing or holds GGML weights
    """
    if not model_ref:
        raise ModelUnavailableError(
            "No on-device model configured. Set model_path in voxqueue.yaml or enable cloud offload."
        )
    path = Path(model_ref).expanduser()
    if not path.exists():
        raise ModelLoadingError(f"Model not found: {path}")
    if path.is_file() and path.suffix.lower() == ".bin":
        raise ModelLoadingError(
            "GGML weights currently require Whisper.cpp bindings. "
            "Please choose a CTranslate2 model directory or enable cloud offload."
        )
    if not path.is_dir():
        raise ModelLoadingError(f"Model path is not a directory: {path}")
    return path


class LocalEngine(TranscriptionEngine):
    """Whisper inference on this machine."""

    engine_type = EngineType.LOCAL
    capabilities = EngineCapabilities(on_device=True, requires_credential=False)

    def __init__(
        self,
        model_ref: str | None,
        preferred_task: str = "transcribe",
        model_factory: ModelFactory | None = None,
    ) -> None:
        super().__init__()
        self.model_path = validate_model_ref(model_ref)
        self.preferred_task = preferred_task

        factory = model_factory or load_faster_whisper
        try:
            self._model = factory(str(self.model_path))
        except DependencyError:
            raise
        except Exception as e:
            raise ModelLoadingError(f"Failed to load model {self.model_path}: {e}") from e
        logger.info("Loaded local model %s", self.model_path)

    def _decode_options(self, settings: TranscriptionSettings) -> dict[str, Any]:
        translate = settings.translate or self.preferred_task == "translate"
        kwargs: dict[str, Any] = {
            "task": "translate" if translate else "transcribe",
            "vad_filter": settings.vad,
        }
        if settings.language:
            kwargs["language"] = settings.language
        if settings.temperature is not None:
            kwargs["temperature"] = settings.temperature
        if settings.beam_size:
            kwargs["beam_size"] = settings.beam_size
        if settings.best_of:
            kwargs["best_of"] = settings.best_of
        if settings.initial_prompt:
            kwargs["initial_prompt"] = settings.initial_prompt
        return kwargs

    def transcribe(self, audio_path: Path, settings: TranscriptionSettings) -> TranscriptionResult:
        if settings.diarize:
            logger.debug("Diarization is not available on-device; ignoring")

        self.report_progress(0.1)
        try:
            segments_iter, info = self._model.transcribe(
                str(audio_path), **self._decode_options(settings)
            )
            total = getattr(info, "duration", None) or settings.duration_estimate or 0.0
            segments = []
            for raw in segments_iter:
                segments.append(Segment(start=raw.start, end=raw.end, text=raw.text.strip()))
                if total > 0:
                    self.report_progress(raw.end / total)
        except Exception as e:
            raise InferenceError(f"Transcription failed: {e}") from e

        if info is None:
            raise InferenceError("No transcription results")

        text = " ".join(s.text for s in segments)
        result = finalize_result(text, segments, settings, language=getattr(info, "language", None))
        self.report_progress(1.0)
        return result
