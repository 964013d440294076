"""
voxqueue.engines.factory - Engine construction.

Builds the engine for a resolved engine type from the per-attempt context
and the workspace configuration.
"""

from __future__ import annotations

from collections.abc import Callable

from voxqueue.config import VoxqueueConfig
from voxqueue.engines.base import EngineType, TranscriptionEngine
from voxqueue.engines.local import LocalEngine, ModelFactory
from voxqueue.engines.remote import GeminiEngine, OpenAIEngine
from voxqueue.engines.upload import ChunkedUploader
from voxqueue.models import EngineContext

EngineFactory = Callable[[EngineType, EngineContext], TranscriptionEngine]


def create_engine(
    engine_type: EngineType,
    context: EngineContext,
    config: VoxqueueConfig | None = None,
    model_factory: ModelFactory | None = None,
) -> TranscriptionEngine:
    """Create a transcription engine.

    Args:
        engine_type: Engine to build
        context: Model reference, task and credential for this attempt
        config: Workspace config for timeouts and retry settings
        model_factory: Loader for local models (faster-whisper by default)

    Raises:
        ModelUnavailableError, ModelLoadingError: Local model problems
        MissingCredentialError: Remote engine without an API key
    """
    config = config or VoxqueueConfig()

    if engine_type is EngineType.LOCAL:
        return LocalEngine(
            context.model_ref,
            preferred_task=context.preferred_task,
            model_factory=model_factory,
        )

    remote_kwargs = {
        "preferred_task": context.preferred_task,
        "timeout": config.request_timeout,
        "max_retries": config.max_retries,
        "retry_base_delay": config.retry_base_delay,
        "uploader": ChunkedUploader(config.stream_threshold_bytes),
    }
    if engine_type is EngineType.OPENAI:
        return OpenAIEngine(context.credential, **remote_kwargs)
    if engine_type is EngineType.GEMINI:
        return GeminiEngine(context.credential, **remote_kwargs)
    raise ValueError(f"Unknown engine type: {engine_type}")


def engine_factory_from_config(
    config: VoxqueueConfig, model_factory: ModelFactory | None = None
) -> EngineFactory:
    """Bind config into a two-argument factory for the scheduler and live sessions."""

    def factory(engine_type: EngineType, context: EngineContext) -> TranscriptionEngine:
        return create_engine(engine_type, context, config, model_factory=model_factory)

    return factory
