"""
voxqueue.audio - Audio preparation and WAV helpers.

Converts imported recordings into the 16kHz mono 16-bit WAV every engine
expects, using FFmpeg, and provides the small numpy/wave helpers used by
the live session to serialize audio windows.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import uuid
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import numpy as np

from voxqueue.exceptions import AudioPreparationError, DependencyError

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
CHANNELS = 1
SAMPLE_WIDTH = 2


@dataclass(frozen=True)
class PreparedAudio:
    """Audio converted for transcription."""

    path: Path
    duration: float


class AudioPreparer(Protocol):
    def __call__(self, source: Path, output_dir: Path) -> PreparedAudio: ...


def check_ffmpeg() -> str:
    """Return the installed FFmpeg version.

    Raises:
        DependencyError: If FFmpeg is not on PATH
    """
    ffmpeg_path = shutil.which("ffmpeg")
    if not ffmpeg_path:
        raise DependencyError(
            "ffmpeg",
            "FFmpeg not found in PATH",
            "Install with: brew install ffmpeg (macOS) or apt install ffmpeg (Linux)",
        )
    try:
        proc = subprocess.run([ffmpeg_path, "-version"], capture_output=True, text=True, timeout=5)
        version_line = proc.stdout.split("\n")[0]
        return version_line.split()[2] if version_line else "unknown"
    except (subprocess.TimeoutExpired, IndexError):
        return "unknown"


def audio_duration(path: Path) -> float | None:
    """Return the duration of a WAV file in seconds, or None if unreadable."""
    try:
        with wave.open(str(path), "rb") as wav:
            rate = wav.getframerate()
            if rate <= 0:
                return None
            return wav.getnframes() / float(rate)
    except (wave.Error, EOFError, OSError):
        return None


def _is_prepared_wav(path: Path) -> bool:
    try:
        with wave.open(str(path), "rb") as wav:
            return (
                wav.getframerate() == SAMPLE_RATE
                and wav.getnchannels() == CHANNELS
                and wav.getsampwidth() == SAMPLE_WIDTH
            )
    except (wave.Error, EOFError, OSError):
        return False


def prepare_for_transcription(source: Path, output_dir: Path) -> PreparedAudio:
    """Convert a recording to 16kHz mono 16-bit PCM WAV.

    Files that are already in the target format are copied as-is; anything
    else goes through FFmpeg.

    Args:
        source: Staged source audio file
        output_dir: Directory for the prepared file

    Returns:
        PreparedAudio with the new path and its duration

    Raises:
        AudioPreparationError: If the source is missing, empty, or FFmpeg fails
    """
    if not source.exists():
        raise AudioPreparationError(f"Source audio not found: {source}")
    if source.stat().st_size == 0:
        raise AudioPreparationError(f"Source audio is empty: {source}")

    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / f"prepared-{uuid.uuid4().hex}.wav"

    if _is_prepared_wav(source):
        shutil.copyfile(source, output_path)
    else:
        cmd = [
            "ffmpeg",
            "-y",
            "-i",
            str(source),
            "-vn",
            "-acodec",
            "pcm_s16le",
            "-ar",
            str(SAMPLE_RATE),
            "-ac",
            str(CHANNELS),
            str(output_path),
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise AudioPreparationError(
                "ffmpeg not found. Install with: brew install ffmpeg (or apt install ffmpeg)"
            ) from e
        if proc.returncode != 0:
            output_path.unlink(missing_ok=True)
            raise AudioPreparationError(f"FFmpeg conversion failed: {proc.stderr.strip()[-500:]}")

    duration = audio_duration(output_path)
    if not duration:
        output_path.unlink(missing_ok=True)
        raise AudioPreparationError(f"Prepared audio has no samples: {source}")

    logger.debug("Prepared %s (%.2fs) -> %s", source.name, duration, output_path.name)
    return PreparedAudio(path=output_path, duration=duration)


def write_wav(path: Path, samples: np.ndarray, sample_rate: int = SAMPLE_RATE) -> Path:
    """Write float samples in [-1, 1] as a mono 16-bit PCM WAV."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    pcm = (clipped * 32767.0).astype("<i2")
    path.parent.mkdir(parents=True, exist_ok=True)
    with wave.open(str(path), "wb") as wav:
        wav.setnchannels(CHANNELS)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm.tobytes())
    return path


def read_wav(path: Path) -> tuple[np.ndarray, int]:
    """Read a 16-bit PCM WAV as mono float32 samples.

    Multi-channel files are averaged down to mono.
    """
    with wave.open(str(path), "rb") as wav:
        if wav.getsampwidth() != SAMPLE_WIDTH:
            raise AudioPreparationError(f"Only 16-bit PCM WAV is supported: {path}")
        channels = wav.getnchannels()
        rate = wav.getframerate()
        frames = wav.readframes(wav.getnframes())

    samples = np.frombuffer(frames, dtype="<i2").astype(np.float32) / 32768.0
    if channels > 1:
        samples = samples.reshape(-1, channels).mean(axis=1)
    return samples, rate


def normalize_samples(samples: np.ndarray, target_rms: float = 0.2) -> np.ndarray:
    """Scale samples toward a target RMS without clipping."""
    samples = np.asarray(samples, dtype=np.float32)
    if samples.size == 0:
        return samples
    rms = float(np.sqrt(np.mean(samples**2)))
    peak = float(np.max(np.abs(samples)))
    gain = target_rms / max(rms, 1e-7)
    if peak > 0:
        gain = min(gain, 1.0 / peak)
    if not np.isfinite(gain):
        gain = 1.0
    return np.clip(samples * gain, -1.0, 1.0).astype(np.float32)
