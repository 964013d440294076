"""
voxqueue.exceptions - Custom exception classes.

All Voxqueue-specific exceptions inherit from VoxqueueError.
"""

from __future__ import annotations


class VoxqueueError(Exception):
    """Base exception for all Voxqueue errors."""

    pass


class ConfigError(VoxqueueError):
    """Configuration loading or validation error."""

    pass


class WorkspaceError(VoxqueueError):
    """Workspace directory or job file error."""

    pass


class AudioPreparationError(VoxqueueError):
    """Source audio could not be staged or converted for transcription."""

    pass


class ModelUnavailableError(VoxqueueError):
    """No on-device model is configured."""

    pass


class ModelLoadingError(VoxqueueError):
    """The configured on-device model could not be loaded."""

    pass


class MissingCredentialError(VoxqueueError):
    """A remote provider was invoked without an API key."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} API key is missing.")


class RemoteError(VoxqueueError):
    """Remote transcription provider error."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(message)


class RemoteHTTPError(RemoteError):
    """Remote provider answered with a non-2xx status."""

    def __init__(self, status: int, body: str, provider: str):
        self.status = status
        self.body = body
        super().__init__(provider, f"{provider} API Error ({status}): {body}")


class RemoteEmptyResponseError(RemoteError):
    """Remote provider answered 2xx without any transcript."""

    def __init__(self, provider: str):
        super().__init__(provider, f"{provider} returned an empty response.")


class NetworkError(RemoteError):
    """Transport failure that survived the bounded retry."""

    def __init__(self, provider: str, reason: str):
        self.reason = reason
        super().__init__(provider, f"{provider} request failed: {reason}")


class InferenceError(VoxqueueError):
    """On-device inference failed."""

    pass


class MissingSourceFileError(VoxqueueError):
    """A job's audio source no longer exists on disk."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Original recording missing: {path}")


class JobCancelledError(VoxqueueError):
    """Job was cancelled by the user."""

    pass


class DependencyError(VoxqueueError):
    """Required dependency missing or misconfigured."""

    def __init__(self, dependency: str, message: str, install_hint: str | None = None):
        self.dependency = dependency
        self.message = message
        self.install_hint = install_hint
        super().__init__(f"{dependency}: {message}")
