"""ASR: in-process Whisper-compatible engines for the local provider."""
from .base import ASREngine, ASRResult, SegmentTimestamp
from .local_whisper import LocalWhisperEngine

__all__ = [
    "ASREngine",
    "ASRResult",
    "SegmentTimestamp",
    "LocalWhisperEngine",
]
