"""
voxqueue.engines.base - Transcription engine contract.

Every engine, on-device or remote, turns a prepared WAV file into a
TranscriptionResult and reports progress in [0, 1] through an optional
handler. Capabilities are fixed when the engine is constructed.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from voxqueue.engines.sanitize import apply_suppress_pattern, sanitize_transcript_text
from voxqueue.models import Segment, TranscriptionResult, TranscriptionSettings
from voxqueue.utils import clamp

logger = logging.getLogger(__name__)

ProgressHandler = Callable[[float], None]


class EngineType(str, Enum):
    LOCAL = "local"
    OPENAI = "openai"
    GEMINI = "gemini"

    @property
    def is_remote(self) -> bool:
        return self is not EngineType.LOCAL


@dataclass(frozen=True)
class EngineCapabilities:
    """What an engine can do, resolved once at construction."""

    on_device: bool
    requires_credential: bool
    supports_segments: bool = True


class TranscriptionEngine(ABC):
    """Base class for all transcription engines."""

    engine_type: EngineType
    capabilities: EngineCapabilities

    def __init__(self) -> None:
        self.progress_handler: ProgressHandler | None = None

    @property
    def name(self) -> str:
        return self.engine_type.value

    def report_progress(self, fraction: float) -> None:
        if self.progress_handler is None:
            return
        try:
            self.progress_handler(clamp(fraction))
        except Exception:
            logger.exception("Progress handler raised")

    @abstractmethod
    def transcribe(self, audio_path: Path, settings: TranscriptionSettings) -> TranscriptionResult:
        """Transcribe a prepared 16kHz mono WAV file.

        Raises:
            VoxqueueError: Any engine failure, as one of its subclasses
        """


def finalize_result(
    text: str,
    segments: list[Segment],
    settings: TranscriptionSettings,
    language: str | None = None,
) -> TranscriptionResult:
    """Apply the post-processing shared by every engine.

    Text and segment text are sanitized (unless timestamps are preserved)
    and run through the suppress pattern; empty segments are dropped and the
    rest sorted by start. With no segment breakdown the whole text becomes a
    single segment spanning the estimated duration.
    """
    preserve = settings.preserve_timestamps

    def clean(value: str) -> str:
        value = sanitize_transcript_text(value, preserve=preserve)
        return apply_suppress_pattern(value, settings.suppress_pattern)

    cleaned_segments = []
    for segment in segments:
        segment_text = clean(segment.text)
        if not segment_text:
            continue
        cleaned_segments.append(segment.model_copy(update={"text": segment_text}))
    cleaned_segments.sort(key=lambda s: s.start)

    cleaned_text = clean(text)
    if not cleaned_text and cleaned_segments:
        cleaned_text = " ".join(s.text for s in cleaned_segments)

    estimate = settings.duration_estimate or 0.0
    if not cleaned_segments and cleaned_text:
        cleaned_segments = [Segment(start=0.0, end=estimate, text=cleaned_text)]

    duration = cleaned_segments[-1].end if cleaned_segments else estimate
    if duration <= 0:
        duration = estimate

    return TranscriptionResult(
        text=cleaned_text,
        segments=cleaned_segments,
        language=language or settings.language,
        duration=duration,
    )
