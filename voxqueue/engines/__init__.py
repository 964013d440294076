"""
voxqueue.engines - Transcription engines.

One contract, three providers:
- local: faster-whisper on this machine
- openai: Whisper API (multipart upload)
- gemini: generateContent with inline audio
"""

from __future__ import annotations
