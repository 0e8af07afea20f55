"""
ASREngine: abstract interface for in-process Whisper-compatible recognition.

Used by the local provider. Implementations run heavy work in an executor so
the event loop (and every session on it) stays responsive.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import numpy as np


@dataclass
class SegmentTimestamp:
    """One segment: start/end in seconds relative to the audio passed in, text."""

    start: float
    end: float
    text: str


@dataclass
class ASRResult:
    text: str
    segments: list[SegmentTimestamp] | None = None


class ASREngine(ABC):
    """Accepts float32 mono audio (normalized [-1, 1]) at sample_rate."""

    @abstractmethod
    async def load(self) -> None:
        """Make the engine ready (e.g. load model weights). Idempotent."""
        ...

    @abstractmethod
    async def transcribe(self, audio: "np.ndarray") -> ASRResult:
        ...

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        ...
