"""
voxqueue.engines.remote - Remote transcription providers.

OpenAI (Whisper API, multipart upload) and Gemini (generateContent with
inline base64 audio). Both share a bounded retry for transport failures,
error-body prettifying, and a model fallback walk: when a provider rejects
the configured model, known alternates are tried in order and the one that
works is remembered for the rest of the process.
"""

from __future__ import annotations

import base64
import json
import logging
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any, ClassVar

import requests

from voxqueue.engines.base import (
    EngineCapabilities,
    EngineType,
    TranscriptionEngine,
    finalize_result,
)
from voxqueue.engines.upload import ChunkedUploader
from voxqueue.exceptions import (
    MissingCredentialError,
    NetworkError,
    RemoteEmptyResponseError,
    RemoteError,
    RemoteHTTPError,
)
from voxqueue.models import Segment, TranscriptionResult, TranscriptionSettings

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 60.0

_MODEL_REJECTION_HINTS = ("model_not_found", "not found", "does not exist", "not supported", "unknown model")


def pretty_error_body(response: requests.Response, provider: str) -> str:
    """Condense a provider error payload into one line.

    JSON errors of the form ``{"error": {"message", "code", "type", ...}}``
    become ``message | code | type``; anything else is returned as text.
    """
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        error = payload["error"]
        parts = [
            error.get("message"),
            error.get("code", error.get("status")),
            error.get("reason", error.get("type")),
        ]
        return " | ".join(str(p) for p in parts if p is not None)
    text = (response.text or "").strip()
    return text or f"Unknown {provider} error"


class RemoteEngine(TranscriptionEngine):
    """Shared transport behavior for remote providers.

    Args:
        credential: Provider API key
        timeout: Overall read timeout per request, in seconds
        max_retries: Attempts for transport failures
        retry_base_delay: Delay before the second attempt; doubles each time
        uploader: Body uploader (threshold for streamed uploads)
        session: requests session, injectable for tests
        sleep: Sleep function used between retries
    """

    provider_label: ClassVar[str]
    capabilities = EngineCapabilities(on_device=False, requires_credential=True)

    # Alternate model identifiers that worked, per cache key, for the process lifetime.
    _model_cache: ClassVar[dict[str, Any]] = {}
    _cache_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        credential: str | None,
        timeout: float = 600.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.2,
        uploader: ChunkedUploader | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__()
        if not credential or not credential.strip():
            raise MissingCredentialError(self.provider_label)
        self.credential = credential.strip()
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.uploader = uploader or ChunkedUploader()
        self.session = session or requests.Session()
        self._sleep = sleep

    @property
    def request_timeout(self) -> tuple[float, float]:
        return (min(CONNECT_TIMEOUT, self.timeout), self.timeout)

    @classmethod
    def cached_model(cls, key: str) -> Any:
        with cls._cache_lock:
            return cls._model_cache.get(key)

    @classmethod
    def remember_model(cls, key: str, model: Any) -> None:
        with cls._cache_lock:
            cls._model_cache[key] = model

    @classmethod
    def clear_model_cache(cls) -> None:
        with cls._cache_lock:
            cls._model_cache.clear()

    def execute_with_retry(self, operation: Callable[[], requests.Response]) -> requests.Response:
        """Run a request, retrying connection errors and timeouts only.

        Raises:
            NetworkError: If every attempt failed at the transport level
        """
        delay = self.retry_base_delay
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return operation()
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = e
                logger.info(
                    "%s network retry %d/%d due to: %s",
                    self.provider_label,
                    attempt,
                    self.max_retries,
                    e,
                )
                if attempt >= self.max_retries:
                    break
                self._sleep(delay)
                delay *= 2
        raise NetworkError(self.provider_label, str(last_error)) from last_error

    def http_error(self, response: requests.Response) -> RemoteHTTPError:
        body = pretty_error_body(response, self.provider_label)
        logger.error("%s error (%d): %s", self.provider_label, response.status_code, body)
        return RemoteHTTPError(response.status_code, body, self.provider_label)

    def is_model_rejection(self, response: requests.Response) -> bool:
        if response.status_code == 404:
            return True
        if response.status_code != 400:
            return False
        body = pretty_error_body(response, self.provider_label).lower()
        return "model" in body and any(hint in body for hint in _MODEL_REJECTION_HINTS)

    def model_candidates(self, settings: TranscriptionSettings) -> Iterator[Any]:
        """Yield model identifiers to try, preferred first."""
        raise NotImplementedError

    def model_cache_key(self, settings: TranscriptionSettings) -> str:
        return self.name

    def send(self, model: Any, audio_path: Path, settings: TranscriptionSettings) -> requests.Response:
        raise NotImplementedError

    def request_with_model_fallback(
        self, audio_path: Path, settings: TranscriptionSettings
    ) -> tuple[Any, requests.Response]:
        """Send the request, walking alternate models on rejection.

        Returns:
            The model that succeeded and its 2xx response

        Raises:
            RemoteHTTPError: For any other non-2xx status, or when every
                candidate model was rejected
            NetworkError: If transport retries were exhausted
        """
        key = self.model_cache_key(settings)
        cached = self.cached_model(key)
        tried: list[Any] = []

        def candidates() -> Iterator[Any]:
            if cached is not None:
                yield cached
            for candidate in self.model_candidates(settings):
                if candidate != cached:
                    yield candidate

        rejected: requests.Response | None = None
        for model in candidates():
            if model in tried:
                continue
            tried.append(model)
            response = self.execute_with_retry(lambda m=model: self.send(m, audio_path, settings))
            if response.ok:
                if len(tried) > 1 or cached is not None:
                    self.remember_model(key, model)
                return model, response
            if not self.is_model_rejection(response):
                raise self.http_error(response)
            logger.warning("%s rejected model %s, trying next", self.provider_label, model)
            rejected = response

        if rejected is None:
            raise RemoteError(self.provider_label, f"No {self.provider_label} model available")
        raise self.http_error(rejected)


class OpenAIEngine(RemoteEngine):
    """OpenAI audio transcription and translation endpoints."""

    engine_type = EngineType.OPENAI
    provider_label = "OpenAI"

    API_ROOT = "https://api.openai.com/v1/audio"
    DEFAULT_MODEL = "whisper-1"
    FALLBACK_MODELS = ("gpt-4o-mini-transcribe", "gpt-4o-transcribe")

    def __init__(self, credential: str | None, preferred_task: str = "transcribe", **kwargs: Any) -> None:
        super().__init__(credential, **kwargs)
        self.preferred_task = preferred_task

    def _translate(self, settings: TranscriptionSettings) -> bool:
        return settings.translate or self.preferred_task == "translate"

    def endpoint(self, settings: TranscriptionSettings) -> str:
        return f"{self.API_ROOT}/{'translations' if self._translate(settings) else 'transcriptions'}"

    def model_cache_key(self, settings: TranscriptionSettings) -> str:
        return f"{self.name}:{'translations' if self._translate(settings) else 'transcriptions'}"

    def model_candidates(self, settings: TranscriptionSettings) -> Iterator[str]:
        yield self.DEFAULT_MODEL
        if not self._translate(settings):
            yield from self.FALLBACK_MODELS

    def form_fields(self, model: str, settings: TranscriptionSettings) -> list[tuple[str, str]]:
        verbose = model == self.DEFAULT_MODEL
        fields = [("model", model), ("response_format", "verbose_json" if verbose else "json")]
        if verbose and not self._translate(settings):
            fields.append(("timestamp_granularities[]", "segment"))
        if settings.language and not self._translate(settings):
            fields.append(("language", settings.language))
        if settings.temperature is not None:
            fields.append(("temperature", str(settings.temperature)))
        if settings.initial_prompt:
            fields.append(("prompt", settings.initial_prompt))
        return fields

    def send(self, model: str, audio_path: Path, settings: TranscriptionSettings) -> requests.Response:
        return self.uploader.post_form(
            self.session,
            self.endpoint(settings),
            self.form_fields(model, settings),
            file_field="file",
            file_path=audio_path,
            filename="audio.wav",
            headers={"Authorization": f"Bearer {self.credential}"},
            timeout=self.request_timeout,
        )

    def transcribe(self, audio_path: Path, settings: TranscriptionSettings) -> TranscriptionResult:
        started = time.monotonic()
        model, response = self.request_with_model_fallback(audio_path, settings)
        self.report_progress(0.2)

        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteError(self.provider_label, f"Invalid {self.provider_label} response: {e}") from e
        if not isinstance(payload, dict):
            raise RemoteEmptyResponseError(self.provider_label)
        self.report_progress(0.6)

        text = payload.get("text") or ""
        raw_segments = payload.get("segments") or []
        if not text.strip() and not raw_segments:
            raise RemoteEmptyResponseError(self.provider_label)

        segments = [
            Segment(
                start=float(s.get("start", 0.0)),
                end=float(s.get("end", 0.0)),
                text=(s.get("text") or "").strip(),
            )
            for s in raw_segments
        ]
        result = finalize_result(text, segments, settings, language=payload.get("language"))
        logger.info(
            "OpenAI transcription success (model=%s, latency: %.2fs)",
            model,
            time.monotonic() - started,
        )
        self.report_progress(1.0)
        return result


class GeminiEngine(RemoteEngine):
    """Gemini generateContent with the audio inlined as base64."""

    engine_type = EngineType.GEMINI
    provider_label = "Gemini"

    API_ROOT = "https://generativelanguage.googleapis.com"
    DEFAULT_MODEL = ("v1", "models/gemini-1.5-flash-001")
    FALLBACK_MODELS = (
        ("v1", "models/gemini-1.5-flash"),
        ("v1beta", "models/gemini-1.5-flash-latest"),
        ("v1", "models/gemini-1.5-flash-001"),
        ("v1beta", "models/gemini-1.5-pro"),
        ("v1", "models/gemini-1.5-pro"),
        ("v1beta", "models/gemini-1.5-flash-002"),
    )
    DISCOVERY_VERSIONS = ("v1", "v1beta")
    PROMPT = "Transcribe the provided audio and return plain text captions with timestamps."
    TRANSLATE_PROMPT = "Translate the provided audio into English and return plain text captions with timestamps."

    # base64 encodes whole 3-byte groups, so chunks must be a multiple of 3
    _ENCODE_CHUNK = 3 * 256 * 1024

    _discovered: ClassVar[list[tuple[str, str]] | None] = None

    def __init__(self, credential: str | None, preferred_task: str = "transcribe", **kwargs: Any) -> None:
        super().__init__(credential, **kwargs)
        self.preferred_task = preferred_task
        # Request body file of the transcription running on the current thread.
        self._request = threading.local()

    @classmethod
    def clear_model_cache(cls) -> None:
        super().clear_model_cache()
        GeminiEngine._discovered = None

    def url(self, api_version: str, model: str) -> str:
        return f"{self.API_ROOT}/{api_version}/{model}:generateContent?key={self.credential}"

    def prompt(self, settings: TranscriptionSettings) -> str:
        translate = settings.translate or self.preferred_task == "translate"
        prompt = self.TRANSLATE_PROMPT if translate else self.PROMPT
        if settings.language and not translate:
            prompt += f" The spoken language is {settings.language}."
        if settings.initial_prompt:
            prompt += f" Context: {settings.initial_prompt}"
        return prompt

    def write_request_body(self, body_path: Path, audio_path: Path, settings: TranscriptionSettings) -> int:
        """Write the generateContent JSON body, base64-encoding audio in chunks."""
        text_part = json.dumps({"text": self.prompt(settings)})
        with open(body_path, "wb") as out:
            out.write(b'{"contents": [{"parts": [')
            out.write(text_part.encode())
            out.write(b', {"inlineData": {"mimeType": "audio/wav", "data": "')
            with open(audio_path, "rb") as src:
                while True:
                    chunk = src.read(self._ENCODE_CHUNK)
                    if not chunk:
                        break
                    out.write(base64.b64encode(chunk))
            out.write(b'"}}]}]}')
        return body_path.stat().st_size

    def model_candidates(self, settings: TranscriptionSettings) -> Iterator[tuple[str, str]]:
        yield self.DEFAULT_MODEL
        yield from self.FALLBACK_MODELS
        yield from self.discover_models()

    def discover_models(self) -> list[tuple[str, str]]:
        """List generateContent-capable models, best scored first.

        The listing is fetched once per process.
        """
        cls = type(self)
        if cls._discovered is not None:
            return cls._discovered

        found: dict[str, str] = {}
        for version in self.DISCOVERY_VERSIONS:
            url = f"{self.API_ROOT}/{version}/models?key={self.credential}"
            try:
                response = self.session.get(url, timeout=self.request_timeout)
                if response.status_code != 200:
                    continue
                models = response.json().get("models", [])
            except (requests.RequestException, ValueError, AttributeError) as e:
                logger.debug("Gemini model listing failed for %s: %s", version, e)
                continue
            for entry in models:
                methods = entry.get("supportedGenerationMethods")
                if methods is not None and "generateContent" not in methods:
                    continue
                found.setdefault(entry["name"], version)

        ranked = sorted(found.items(), key=lambda item: score_model_name(item[0]), reverse=True)
        cls._discovered = [(version, name) for name, version in ranked]
        return cls._discovered

    def send(self, model: tuple[str, str], audio_path: Path, settings: TranscriptionSettings) -> requests.Response:
        api_version, name = model
        return self.uploader.post_file(
            self.session,
            self.url(api_version, name),
            self._request.body_path,
            headers={"Content-Type": "application/json"},
            timeout=self.request_timeout,
        )

    def transcribe(self, audio_path: Path, settings: TranscriptionSettings) -> TranscriptionResult:
        started = time.monotonic()
        with tempfile.TemporaryDirectory(prefix="voxqueue-gemini-") as tmp:
            body_path = Path(tmp) / "request.json"
            self.write_request_body(body_path, audio_path, settings)
            self._request.body_path = body_path
            try:
                model, response = self.request_with_model_fallback(audio_path, settings)
            finally:
                self._request.body_path = None
        self.report_progress(0.2)

        text = parse_gemini_text(response, self.provider_label)
        self.report_progress(0.6)

        result = finalize_result(text, [], settings)
        if not result.text:
            raise RemoteEmptyResponseError(self.provider_label)
        logger.info(
            "Gemini transcription success (base=%s, model=%s, latency: %.2fs)",
            model[0],
            model[1],
            time.monotonic() - started,
        )
        self.report_progress(1.0)
        return result


def score_model_name(name: str) -> int:
    """Rank Gemini model names: flash over pro, 1.5 and latest preferred."""
    lower = name.lower()
    score = 0
    if "flash" in lower:
        score += 3
    if "pro" in lower:
        score += 2
    if "1.5" in lower:
        score += 1
    if "latest" in lower:
        score += 1
    return score


def _candidate_text(candidate: dict[str, Any]) -> str:
    parts = (candidate.get("content") or {}).get("parts") or []
    return " ".join(p["text"] for p in parts if isinstance(p, dict) and p.get("text"))


def parse_gemini_text(response: requests.Response, provider: str = "Gemini") -> str:
    """Extract transcript text from a JSON or server-sent-events response.

    Raises:
        RemoteEmptyResponseError: If the response carries no candidates
        RemoteError: If the body is not valid JSON
    """
    body = response.text or ""
    lines = body.splitlines()
    try:
        if any(line.startswith("data:") for line in lines):
            pieces = []
            for line in lines:
                if not line.startswith("data:"):
                    continue
                chunk = json.loads(line[len("data:"):])
                candidates = chunk.get("candidates") if "candidates" in chunk else [chunk]
                if candidates:
                    pieces.append(_candidate_text(candidates[0]))
            if not pieces:
                raise RemoteEmptyResponseError(provider)
            return "".join(pieces)

        payload = json.loads(body)
    except json.JSONDecodeError as e:
        raise RemoteError(provider, f"Invalid {provider} response: {e}") from e

    candidates = payload.get("candidates") or []
    if not candidates:
        raise RemoteEmptyResponseError(provider)
    return _candidate_text(candidates[0])
