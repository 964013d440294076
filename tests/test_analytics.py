"""Tests for voxqueue.analytics and voxqueue.indexer modules."""

from __future__ import annotations

import json
from pathlib import Path

from voxqueue.analytics import CLOUD_FALLBACK, JOB_COMPLETED, EventRecorder
from voxqueue.indexer import NullIndexer, TranscriptArchiveIndexer
from voxqueue.models import Segment, TranscriptionResult


class TestEventRecorder:
    def test_records_and_filters(self) -> None:
        recorder = EventRecorder()
        recorder.record(JOB_COMPLETED, job_id="a")
        recorder.record(CLOUD_FALLBACK, provider="openai")
        recorder.record(JOB_COMPLETED, job_id="b")

        assert recorder.count(JOB_COMPLETED) == 2
        assert [e["job_id"] for e in recorder.events(JOB_COMPLETED)] == ["a", "b"]
        assert len(recorder.events()) == 3

    def test_memory_is_bounded(self) -> None:
        recorder = EventRecorder(max_events=2)
        for i in range(5):
            recorder.record(JOB_COMPLETED, n=i)

        assert [e["n"] for e in recorder.events()] == [3, 4]

    def test_writes_event_log(self, tmp_path: Path) -> None:
        path = tmp_path / "events.jsonl"
        recorder = EventRecorder(path)
        recorder.record(CLOUD_FALLBACK, provider="gemini", reason="timeout")

        event = json.loads(path.read_text().strip())
        assert event["event"] == CLOUD_FALLBACK
        assert event["provider"] == "gemini"
        assert "at" in event

    def test_unwritable_log_is_not_fatal(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("")
        recorder = EventRecorder(blocker / "events.jsonl")

        recorder.record(JOB_COMPLETED, job_id="a")

        assert recorder.count(JOB_COMPLETED) == 1


class TestTranscriptArchiveIndexer:
    def test_writes_transcript_by_job_id(self, tmp_path: Path) -> None:
        indexer = TranscriptArchiveIndexer(tmp_path / "transcripts")
        result = TranscriptionResult(
            text="Hello there.",
            segments=[Segment(start=0.0, end=1.0, text="Hello there.")],
            language="en",
            duration=1.0,
        )

        indexer.index(result, {"job_id": "abc123", "filename": "memo.wav"})

        document = json.loads((tmp_path / "transcripts" / "abc123.json").read_text())
        assert document["text"] == "Hello there."
        assert document["metadata"]["filename"] == "memo.wav"
        assert document["segments"][0]["end"] == 1.0

    def test_null_indexer_accepts_anything(self) -> None:
        NullIndexer().index(TranscriptionResult(text=""), {})
