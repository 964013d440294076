"""Tests for voxqueue.resolver module."""

from __future__ import annotations

from voxqueue.config import EngineSelection
from voxqueue.engines.base import EngineType
from voxqueue.resolver import resolve_engine, stage_name


class TestResolveEngine:
    def test_offline_mode_is_local_without_fallback(self) -> None:
        resolution = resolve_engine(
            EngineSelection(offline_mode=True, selected_provider="openai", credential="sk", allow_fallback=True)
        )
        assert resolution.engine_type is EngineType.LOCAL
        assert resolution.credential is None
        assert not resolution.allow_fallback

    def test_local_provider(self) -> None:
        resolution = resolve_engine(EngineSelection(selected_provider="local", credential="sk"))
        assert resolution.engine_type is EngineType.LOCAL

    def test_blank_credential_runs_locally(self) -> None:
        resolution = resolve_engine(
            EngineSelection(selected_provider="gemini", credential="   ", allow_fallback=True)
        )
        assert resolution.engine_type is EngineType.LOCAL
        assert not resolution.allow_fallback

    def test_remote_provider_with_credential(self) -> None:
        resolution = resolve_engine(
            EngineSelection(selected_provider="gemini", credential=" g-key ", allow_fallback=True)
        )
        assert resolution.engine_type is EngineType.GEMINI
        assert resolution.credential == "g-key"
        assert resolution.allow_fallback

    def test_fallback_only_when_allowed(self) -> None:
        resolution = resolve_engine(EngineSelection(selected_provider="openai", credential="sk"))
        assert resolution.engine_type is EngineType.OPENAI
        assert not resolution.allow_fallback


class TestStageName:
    def test_stage_names(self) -> None:
        assert stage_name(EngineType.LOCAL) == "local"
        assert stage_name(EngineType.OPENAI) == "cloud-openai"
        assert stage_name(EngineType.GEMINI) == "cloud-gemini"
