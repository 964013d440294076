"""
voxqueue.resolver - Engine resolution policy.

Pure function from the global engine selection to the engine that should
run a job and whether a local fallback is allowed.
"""

from __future__ import annotations

from pydantic import BaseModel

from voxqueue.config import EngineSelection
from voxqueue.engines.base import EngineType


class EngineResolution(BaseModel):
    engine_type: EngineType
    credential: str | None = None
    allow_fallback: bool = False


def resolve_engine(selection: EngineSelection) -> EngineResolution:
    """Pick the engine for a job.

    - offline mode always runs locally, without fallback
    - a remote provider with no credential silently runs locally
    - a remote provider with a credential runs remotely, falling back to
      the local engine only when allowed
    """
    if selection.offline_mode:
        return EngineResolution(engine_type=EngineType.LOCAL)

    provider = EngineType(selection.selected_provider)
    if provider is EngineType.LOCAL:
        return EngineResolution(engine_type=EngineType.LOCAL)

    credential = (selection.credential or "").strip()
    if not credential:
        return EngineResolution(engine_type=EngineType.LOCAL)

    return EngineResolution(
        engine_type=provider,
        credential=credential,
        allow_fallback=selection.allow_fallback,
    )


def stage_name(engine_type: EngineType) -> str:
    """Job stage label shown while an engine is running."""
    if engine_type is EngineType.LOCAL:
        return "local"
    return f"cloud-{engine_type.value}"
