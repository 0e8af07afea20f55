"""
Speaker-attributed transcript segment.

start_sec, end_sec: seconds, recording-relative (end may be unknown).
speaker_label: "Speaker 1" for providers without real-time diarization;
"Speaker {n}" for post-hoc diarized utterances.
partial: provisional text that the next event replaces; never persisted.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class Segment:
    speaker_label: str
    text: str
    start_sec: float | None = None
    end_sec: float | None = None
    partial: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def speaker_label(speaker: Any) -> str:
    """Provider speaker id -> display label ("A" -> "Speaker A", 2 -> "Speaker 2")."""
    return f"Speaker {speaker}"
