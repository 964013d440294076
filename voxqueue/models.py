"""
voxqueue.models - Job, result and settings models.

Pydantic models shared by the scheduler, the engines and the live session.
Job instances handed to callers are copies; only the JobManager replaces
the records it owns.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    QUEUED = "queued"
    TRANSCRIBING = "transcribing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.TRANSCRIBING)


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class Segment(BaseModel):
    """A timestamped span of transcribed text."""

    start: float = Field(ge=0.0)
    end: float = Field(ge=0.0)
    text: str
    speaker: str | None = None


class TranscriptionResult(BaseModel):
    """Result of one engine call."""

    text: str
    segments: list[Segment] = Field(default_factory=list)
    language: str | None = None
    duration: float = 0.0


class TranscriptionSettings(BaseModel):
    """Recognized per-call options passed to every engine."""

    model_config = ConfigDict(protected_namespaces=())

    model_ref: str | None = None
    language: str | None = None
    translate: bool = False
    temperature: float | None = None
    beam_size: int | None = None
    best_of: int | None = None
    suppress_pattern: str | None = None
    initial_prompt: str | None = None
    vad: bool = False
    diarize: bool = False
    duration_estimate: float | None = None
    preferred_task: str = "transcribe"
    preserve_timestamps: bool = False

    @classmethod
    def for_live_window(
        cls,
        seconds: float,
        preserve_timestamps: bool = False,
        language: str | None = None,
        model_ref: str | None = None,
    ) -> TranscriptionSettings:
        """Greedy decoding with VAD for one live window."""
        return cls(
            model_ref=model_ref,
            language=language,
            temperature=0.0,
            beam_size=1,
            best_of=1,
            vad=True,
            duration_estimate=seconds,
            preserve_timestamps=preserve_timestamps,
        )


class EngineContext(BaseModel):
    """Per-attempt engine construction context. Never persisted."""

    model_config = ConfigDict(protected_namespaces=())

    model_ref: str | None = None
    preferred_task: str = "transcribe"
    credential: str | None = None


class EngineAttempt(BaseModel):
    """One engine dispatch made while running a job."""

    engine: str
    succeeded: bool
    error: str | None = None
    fallback: bool = False


class Job(BaseModel):
    """A queued unit of work: one audio source transcribed to completion."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    filename: str
    source_ref: str
    staged_ref: str | None = None
    status: JobStatus = JobStatus.QUEUED
    progress: float = Field(default=0.0, ge=0.0, le=1.0)
    stage: str = "queued"
    error: str | None = None
    result: TranscriptionResult | None = None
    duration: float | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    attempts: list[EngineAttempt] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict) -> Job:
        return cls.model_validate(data)
