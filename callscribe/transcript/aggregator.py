"""
TranscriptAggregator: ordered recognition events -> ordered, speaker-grouped segments.

- PARTIAL: replaces the trailing partial segment, or is appended as one. Never final.
- FINAL (non-empty): drops the trailing partial, then merges into the last final
  segment when the speaker matches and the gap is under MERGE_GAP (or a timestamp
  is missing); otherwise appended.
- FINAL (empty): only clears the pending partial.

Invariant: at most one partial segment, always the last element.
The segment list is owned here; callers get copies.
"""
from __future__ import annotations

import logging
from typing import Callable

from callscribe.streaming.events import EventKind, TranscriptEvent
from callscribe.transcript.models import Segment

logger = logging.getLogger(__name__)

DEFAULT_MERGE_GAP_SEC = 2.0
DEFAULT_SPEAKER = "Speaker 1"


def _drop_partial(segments: list[Segment]) -> list[Segment]:
    if segments and segments[-1].partial:
        return segments[:-1]
    return segments


def reduce_segments(
    segments: list[Segment],
    event: TranscriptEvent,
    default_speaker: str = DEFAULT_SPEAKER,
    merge_gap_sec: float = DEFAULT_MERGE_GAP_SEC,
) -> list[Segment]:
    """Pure reducer: returns the new segment list (input list is not modified)."""
    speaker = event.speaker or default_speaker

    if event.kind is EventKind.PARTIAL:
        if not event.text:
            return segments
        partial = Segment(speaker_label=speaker, text=event.text, partial=True)
        return [*_drop_partial(segments), partial]

    if event.kind is not EventKind.FINAL:
        return segments

    base = _drop_partial(segments)
    text = (event.text or "").strip()
    if not text:
        return list(base)

    new = Segment(speaker_label=speaker, text=text, start_sec=event.start_sec, end_sec=event.end_sec)
    if base:
        prev = base[-1]
        close_enough = (
            prev.end_sec is None
            or new.start_sec is None
            or new.start_sec - prev.end_sec < merge_gap_sec
        )
        if prev.speaker_label == new.speaker_label and close_enough:
            merged = Segment(
                speaker_label=prev.speaker_label,
                text=f"{prev.text} {new.text}",
                start_sec=prev.start_sec,
                end_sec=new.end_sec if new.end_sec is not None else prev.end_sec,
            )
            return [*base[:-1], merged]
    return [*base, new]


class TranscriptAggregator:
    def __init__(
        self,
        default_speaker: str = DEFAULT_SPEAKER,
        merge_gap_sec: float = DEFAULT_MERGE_GAP_SEC,
    ) -> None:
        self._default_speaker = default_speaker
        self._merge_gap_sec = merge_gap_sec
        self._segments: list[Segment] = []
        self._listeners: list[Callable[[list[Segment]], None]] = []

    @property
    def segments(self) -> list[Segment]:
        return list(self._segments)

    def subscribe(self, listener: Callable[[list[Segment]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def apply(self, event: TranscriptEvent) -> list[Segment]:
        updated = reduce_segments(self._segments, event, self._default_speaker, self._merge_gap_sec)
        if updated is not self._segments:
            self._segments = updated
            self._notify()
        return self.segments

    def reset(self) -> None:
        self._segments = []
        self._notify()

    def flat_text(self) -> str:
        return "\n\n".join(f"{s.speaker_label}: {s.text}" for s in self._segments if not s.partial)

    def _notify(self) -> None:
        snapshot = self.segments
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Transcript listener failed")
