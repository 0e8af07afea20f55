"""
RollingBuffer: time-based audio window for in-process streaming recognition.

Keeps the most recent WINDOW seconds of PCM16 mono audio and emits the whole
window every STEP seconds of new audio (no silence gating), together with the
window's start time in stream seconds. Segments near the end of a window are
still moving; the consumer decides which ones are final by their age.
"""
from __future__ import annotations

from typing import Callable

BYTES_PER_SAMPLE = 2


class RollingBuffer:
    def __init__(
        self,
        on_window: Callable[[bytes, float], None],
        sample_rate: int,
        window_sec: float,
        step_sec: float,
        min_chunk_sec: float,
    ) -> None:
        self._on_window = on_window
        self._sample_rate = sample_rate
        self._window_bytes = max(BYTES_PER_SAMPLE, int(sample_rate * window_sec) * BYTES_PER_SAMPLE)
        self._step_bytes = max(BYTES_PER_SAMPLE, int(sample_rate * step_sec) * BYTES_PER_SAMPLE)
        self._min_bytes = max(BYTES_PER_SAMPLE, int(sample_rate * min_chunk_sec) * BYTES_PER_SAMPLE)
        self._buffer = bytearray()
        self._total_bytes = 0
        self._since_emit = 0

    def push(self, pcm: bytes) -> None:
        """Append PCM16 mono bytes. May trigger on_window when a step of new audio has arrived."""
        self._buffer.extend(pcm)
        self._total_bytes += len(pcm)
        self._since_emit += len(pcm)
        if len(self._buffer) > self._window_bytes:
            del self._buffer[: len(self._buffer) - self._window_bytes]

        if len(self._buffer) < self._min_bytes:
            return
        if self._since_emit < self._step_bytes:
            return
        self._since_emit = 0
        self._on_window(bytes(self._buffer), self._window_start())

    def _window_start(self) -> float:
        return (self._total_bytes - len(self._buffer)) / (self._sample_rate * BYTES_PER_SAMPLE)

    def flush(self) -> tuple[bytes, float] | None:
        """On end of stream: remaining window if >= min_chunk. Returns (window, start_sec) or None."""
        if len(self._buffer) < self._min_bytes:
            return None
        return bytes(self._buffer), self._window_start()
