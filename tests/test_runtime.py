"""Tests for voxqueue.runtime module."""

from __future__ import annotations

import json

import pytest
from conftest import FakeEngineFactory

from voxqueue.config import ENV_OVERRIDES
from voxqueue.engines.base import EngineType
from voxqueue.live import LiveTranscriptionSession
from voxqueue.models import JobStatus
from voxqueue.runtime import Runtime
from voxqueue.store import JobStore


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


class TestRuntime:
    def test_completed_job_is_persisted_and_archived(self, workspace, make_wav) -> None:
        factory = FakeEngineFactory()
        runtime = Runtime.open(workspace.path, engine_factory=factory)

        job = runtime.jobs.add_job(make_wav("memo.wav"))
        finished = runtime.jobs.wait_for_job(job.id, timeout=5)
        runtime.close(timeout=5)

        assert finished.status is JobStatus.COMPLETED
        assert factory.types == [EngineType.LOCAL]
        assert JobStore(workspace.jobs_path).get(job.id).status is JobStatus.COMPLETED
        archive = json.loads((workspace.transcripts_dir / f"{job.id}.json").read_text())
        assert archive["metadata"]["filename"] == "memo.wav"
        events = [json.loads(line) for line in workspace.events_path.read_text().splitlines()]
        assert [e["event"] for e in events] == ["job_completed"]

    def test_live_session_uses_resolved_engine(self, workspace) -> None:
        factory = FakeEngineFactory()
        runtime = Runtime.open(workspace.path, engine_factory=factory, autostart=False)
        runtime.config.live_backend = "windowed"

        session = runtime.live_session()
        engine = runtime.live_engine_factory()()

        assert isinstance(session, LiveTranscriptionSession)
        assert session.work_dir == workspace.prepared_dir
        assert engine.engine_type is EngineType.LOCAL
        assert factory.calls[-1][1].preferred_task == "transcribe"
