"""
voxqueue.config - YAML config loading, environment overrides, validation.

Handles loading voxqueue.yaml from a workspace directory, applying
credential overrides from the environment, and validating all parameters.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from voxqueue.models import TranscriptionSettings

CONFIG_FILENAME = "voxqueue.yaml"

CLOUD_PROVIDERS = {"local", "openai", "gemini"}

ENV_OVERRIDES: dict[str, str] = {
    "OPENAI_API_KEY": "openai_api_key",
    "GEMINI_API_KEY": "gemini_api_key",
    "VOXQUEUE_OFFLINE": "offline_mode",
    "VOXQUEUE_MODEL_PATH": "model_path",
    "VOXQUEUE_PROVIDER": "cloud_provider",
}

_TRUTHY = {"1", "true", "yes", "on"}


class EngineSelection(BaseModel):
    """Global configuration consumed by the engine resolver."""

    offline_mode: bool = False
    selected_provider: str = "local"
    credential: str | None = None
    allow_fallback: bool = False


class VoxqueueConfig(BaseModel):
    """Resolved configuration for a Voxqueue workspace."""

    model_config = ConfigDict(protected_namespaces=())

    model_path: str | None = None
    preferred_task: str = "transcribe"
    language: str | None = None
    translate: bool = False
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)
    beam_size: int = Field(default=5, ge=0)
    best_of: int = Field(default=5, ge=0)
    suppress_pattern: str = ""
    initial_prompt: str = ""
    vad: bool = False
    diarize: bool = False
    show_timestamps: bool = False

    offline_mode: bool = False
    cloud_provider: str = "openai"
    openai_api_key: str | None = None
    gemini_api_key: str | None = None
    enable_cloud_fallback: bool = False

    request_timeout: float = Field(default=600.0, gt=0.0)
    max_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.2, ge=0.0)
    stream_threshold_bytes: int = Field(default=50 * 1024 * 1024, gt=0)

    poll_interval: float = Field(default=0.1, gt=0.0)
    recording_retention_days: int = Field(default=7, ge=0)

    live_window_seconds: float = Field(default=12.0, gt=0.0)
    live_hop_seconds: float = Field(default=3.0, gt=0.0)
    live_eta_factor: float = Field(default=2.0, ge=0.0)
    live_backend: str = "streaming"

    @field_validator("cloud_provider")
    @classmethod
    def validate_cloud_provider(cls, v: str) -> str:
        if v not in CLOUD_PROVIDERS:
            raise ValueError(f"cloud_provider must be one of: {CLOUD_PROVIDERS}")
        return v

    @field_validator("preferred_task")
    @classmethod
    def validate_preferred_task(cls, v: str) -> str:
        valid = {"transcribe", "translate"}
        if v not in valid:
            raise ValueError(f"preferred_task must be one of: {valid}")
        return v

    @field_validator("live_backend")
    @classmethod
    def validate_live_backend(cls, v: str) -> str:
        valid = {"windowed", "streaming"}
        if v not in valid:
            raise ValueError(f"live_backend must be one of: {valid}")
        return v

    def credential_for(self, provider: str) -> str | None:
        """Return the API key configured for a provider, or None if blank."""
        key = {
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
        }.get(provider)
        if key is None or not key.strip():
            return None
        return key.strip()

    def engine_selection(self) -> EngineSelection:
        return EngineSelection(
            offline_mode=self.offline_mode,
            selected_provider=self.cloud_provider,
            credential=self.credential_for(self.cloud_provider),
            allow_fallback=self.enable_cloud_fallback,
        )

    def transcription_settings(self, duration_estimate: float | None = None) -> TranscriptionSettings:
        """Build per-job engine settings. Zero or empty values mean "engine default"."""
        return TranscriptionSettings(
            model_ref=self.model_path,
            language=self.language or None,
            translate=self.translate,
            temperature=self.temperature if self.temperature > 0 else None,
            beam_size=self.beam_size if self.beam_size > 0 else None,
            best_of=self.best_of if self.best_of > 0 else None,
            suppress_pattern=self.suppress_pattern or None,
            initial_prompt=self.initial_prompt or None,
            vad=self.vad,
            diarize=self.diarize,
            duration_estimate=duration_estimate,
            preferred_task=self.preferred_task,
            preserve_timestamps=self.show_timestamps,
        )

    def live_transcription_settings(self, seconds: float) -> TranscriptionSettings:
        """Greedy, low-latency settings used for every live window."""
        return TranscriptionSettings.for_live_window(
            seconds,
            preserve_timestamps=self.show_timestamps,
            language=self.language or None,
            model_ref=self.model_path,
        )


def apply_env_overrides(raw: dict[str, Any], environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Overlay credentials and switches from the environment. Environment wins."""
    environ = os.environ if environ is None else environ
    merged = dict(raw)
    for env_name, key in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        if key == "offline_mode":
            merged[key] = value.strip().lower() in _TRUTHY
        else:
            merged[key] = value
    return merged


def load_config(workspace_dir: Path, environ: dict[str, str] | None = None) -> VoxqueueConfig:
    """Load and validate configuration from a workspace directory."""
    from voxqueue.exceptions import ConfigError

    config_file = workspace_dir / CONFIG_FILENAME
    if not config_file.exists():
        raise FileNotFoundError(f"No {CONFIG_FILENAME} found in {workspace_dir}")

    with open(config_file) as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ConfigError(f"{config_file} must contain a mapping")

    merged = apply_env_overrides(raw_config, environ)
    try:
        return VoxqueueConfig(**merged)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration in {config_file}: {e}") from e


def create_default_config(provider: str = "local") -> dict[str, Any]:
    """Create a default config for a new workspace.

    API keys are left out on purpose; they are read from the environment.
    """
    return {
        "cloud_provider": provider,
        "offline_mode": provider == "local",
        "enable_cloud_fallback": provider != "local",
        "model_path": None,
        "language": None,
        "preferred_task": "transcribe",
        "show_timestamps": False,
        "live_window_seconds": 12.0,
        "live_hop_seconds": 3.0,
    }


def write_config(config: dict[str, Any], path: Path) -> None:
    """Write configuration to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)
