"""
voxqueue.engines.sanitize - Transcript text cleanup.

Whisper-family models leak control tokens, inline timestamps and
non-speech cues such as "(music)" into their output. These helpers strip
them before text reaches a job result.
"""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

CONTROL_TOKENS = (
    "<|startoftranscript|>",
    "<|endoftranscript|>",
    "<|startofprompt|>",
    "<|endofprompt|>",
)

_TIMESTAMP_TOKEN = re.compile(r"<\|[0-9]+(\.[0-9]+)?\|>")
_LEADING_TIME_RANGE = re.compile(r"^\s*\[[^\]]*\]\s*")
_CUE_ONLY_LINE = re.compile(r"^\s*\([^)]*\)\s*$")
_INLINE_CUE = re.compile(r"\([^)]*\)")
_WHITESPACE = re.compile(r"\s+")


def sanitize_transcript_text(text: str, preserve: bool = False) -> str:
    """Strip model artifacts from transcript text.

    Args:
        text: Raw engine output
        preserve: Return text unchanged (timestamps requested by the user)

    Returns:
        Cleaned single-line text
    """
    if preserve:
        return text

    for token in CONTROL_TOKENS:
        text = text.replace(token, "")
    text = _TIMESTAMP_TOKEN.sub("", text)

    lines = []
    for line in text.splitlines():
        line = _LEADING_TIME_RANGE.sub("", line)
        if _CUE_ONLY_LINE.match(line):
            continue
        line = _INLINE_CUE.sub("", line)
        if line.strip():
            lines.append(line)

    return _WHITESPACE.sub(" ", " ".join(lines)).strip()


def apply_suppress_pattern(text: str, pattern: str | None) -> str:
    """Remove every match of a user-supplied regex from text.

    An invalid pattern is logged and ignored.
    """
    if not pattern:
        return text
    try:
        compiled = re.compile(pattern)
    except re.error as e:
        logger.warning("Ignoring invalid suppress pattern %r: %s", pattern, e)
        return text
    return _WHITESPACE.sub(" ", compiled.sub("", text)).strip()
