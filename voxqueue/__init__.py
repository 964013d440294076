"""
Voxqueue - transcription job orchestration and live windowed transcription.

Queues audio files for transcription on an on-device Whisper engine or a
remote API (OpenAI, Gemini) with single-flight scheduling and local
fallback, and turns a continuous microphone stream into low-latency partial
transcripts through a sliding-window live session.
"""

__version__ = "0.1.0"
