"""
voxqueue.engines.upload - Size-aware request uploads.

Form uploads below the threshold go through requests' own multipart
encoding. At or above it the form is streamed from the open audio file with
requests_toolbelt, so a long recording is never held in memory. Prebuilt
request bodies on disk (Gemini's JSON) follow the same threshold.
"""

from __future__ import annotations

import logging
from pathlib import Path

import requests
from requests_toolbelt import MultipartEncoder

logger = logging.getLogger(__name__)

DEFAULT_STREAM_THRESHOLD = 50 * 1024 * 1024


class ChunkedUploader:
    """POSTs forms and body files, streaming them when they are large."""

    def __init__(self, threshold: int = DEFAULT_STREAM_THRESHOLD) -> None:
        self.threshold = threshold

    def should_stream(self, size: int) -> bool:
        return size >= self.threshold

    def post_form(
        self,
        session: requests.Session,
        url: str,
        fields: list[tuple[str, str]],
        file_field: str,
        file_path: Path,
        filename: str | None = None,
        content_type: str = "audio/wav",
        headers: dict[str, str] | None = None,
        timeout: float | tuple[float, float] | None = None,
    ) -> requests.Response:
        """POST a multipart/form-data request with one file part.

        Args:
            session: HTTP session
            url: Target URL
            fields: Plain form fields, in order; repeated names are allowed
            file_field: Form name of the file part
            file_path: File whose bytes form the file part
            filename: Filename reported for the file part
            content_type: Content type of the file part
            headers: Extra request headers
            timeout: requests timeout

        Returns:
            The response, whatever its status
        """
        filename = filename or file_path.name
        headers = dict(headers or {})
        size = file_path.stat().st_size

        with open(file_path, "rb") as audio:
            if not self.should_stream(size):
                return session.post(
                    url,
                    data=fields,
                    files={file_field: (filename, audio, content_type)},
                    headers=headers,
                    timeout=timeout,
                )

            encoder = MultipartEncoder(fields=[*fields, (file_field, (filename, audio, content_type))])
            headers["Content-Type"] = encoder.content_type
            logger.debug("Streaming %d byte form to %s", encoder.len, url.split("?")[0])
            return session.post(url, data=encoder, headers=headers, timeout=timeout)

    def post_file(
        self,
        session: requests.Session,
        url: str,
        body_path: Path,
        headers: dict[str, str] | None = None,
        timeout: float | tuple[float, float] | None = None,
    ) -> requests.Response:
        size = body_path.stat().st_size
        headers = {**(headers or {}), "Content-Length": str(size)}
        if not self.should_stream(size):
            return session.post(url, data=body_path.read_bytes(), headers=headers, timeout=timeout)

        logger.debug("Streaming %d byte body to %s", size, url.split("?")[0])
        with open(body_path, "rb") as body:
            return session.post(url, data=body, headers=headers, timeout=timeout)
