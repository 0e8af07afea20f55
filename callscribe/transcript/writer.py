"""
TranscriptWriter: recording-based, append-only log of FINAL recognition results.

One line per final event as received (before merging), so the file keeps the
provider's exact sequence. Partial results are never written: they are
provisional and the next event replaces them.
"""
from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from typing import Optional, TextIO

from callscribe.config import Settings, get_settings
from callscribe.transcript.models import Segment

logger = logging.getLogger(__name__)


def _format_line(segment: Segment, add_timestamps: bool) -> str:
    """Format one line with optional [MM:SS.ss] and [Speaker] prefix."""
    parts: list[str] = []
    if add_timestamps and segment.start_sec is not None:
        mm = int(segment.start_sec // 60)
        ss = segment.start_sec % 60
        parts.append(f"[{mm:02d}:{ss:05.2f}]")
    parts.append(f"[{segment.speaker_label}]")
    parts.append(segment.text.strip())
    return " ".join(parts)


class TranscriptWriterBase(ABC):
    """Only final segments are appended; partial is never written."""

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    def append_final(self, segment: Segment) -> None:
        """Append one final segment (one line). Non-blocking; queues write."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class NoOpTranscriptWriter(TranscriptWriterBase):
    """When transcript saving is disabled. No file I/O."""

    async def start(self) -> None:
        pass

    def append_final(self, segment: Segment) -> None:
        pass

    async def close(self) -> None:
        pass


class TranscriptWriter(TranscriptWriterBase):
    """
    One file per recording: {TRANSCRIPT_DIR}/{recording_id}.txt, opened in append mode.

    append_final() only queues the line. A single drain task takes whatever has
    queued up and writes it as one batch in the executor, so callbacks on the
    event loop never touch the disk. Write errors are logged and the recording
    goes on.
    """

    def __init__(
        self,
        recording_id: str,
        transcript_dir: Optional[str] = None,
        add_timestamps: Optional[bool] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        if transcript_dir is None or add_timestamps is None:
            settings = settings or get_settings()
            transcript_dir = transcript_dir or settings.TRANSCRIPT_DIR
            add_timestamps = settings.TRANSCRIPT_ADD_TIMESTAMPS if add_timestamps is None else add_timestamps
        self._recording_id = recording_id
        self._transcript_dir = transcript_dir
        self._add_timestamps = add_timestamps
        self._path = os.path.join(self._transcript_dir, f"{recording_id}.txt")
        self._pending: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._drain_task: Optional[asyncio.Task] = None
        self._handle: Optional[TextIO] = None

    @property
    def path(self) -> str:
        return self._path

    def _open_sync(self) -> TextIO:
        os.makedirs(self._transcript_dir, exist_ok=True)
        return open(self._path, "a", encoding="utf-8")

    def _write_sync(self, lines: list[str]) -> None:
        if self._handle is None:
            return
        self._handle.write("".join(line + "\n" for line in lines))
        self._handle.flush()

    async def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        done = False
        while not done:
            batch: list[str] = []
            item = await self._pending.get()
            while True:
                if item is None:
                    done = True
                    break
                batch.append(item)
                if self._pending.empty():
                    break
                item = self._pending.get_nowait()
            if not batch:
                continue
            try:
                await loop.run_in_executor(None, self._write_sync, batch)
            except OSError as e:
                logger.warning("Dropped %d transcript line(s) for %s: %s", len(batch), self._path, e)

    async def start(self) -> None:
        if self._drain_task is not None:
            return
        loop = asyncio.get_running_loop()
        try:
            self._handle = await loop.run_in_executor(None, self._open_sync)
        except OSError as e:
            logger.warning("Cannot open transcript file %s: %s", self._path, e)
        self._drain_task = asyncio.create_task(self._drain())
        logger.debug("Transcript for recording %s -> %s", self._recording_id, self._path)

    def append_final(self, segment: Segment) -> None:
        if segment.partial or not segment.text.strip():
            return
        self._pending.put_nowait(_format_line(segment, self._add_timestamps))

    async def close(self) -> None:
        """Write what is queued, then close the file."""
        task, self._drain_task = self._drain_task, None
        if task is None:
            return
        self._pending.put_nowait(None)
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Transcript writer for %s did not drain in time", self._recording_id)
        handle, self._handle = self._handle, None
        if handle is not None:
            try:
                handle.close()
            except OSError as e:
                logger.warning("Transcript close failed for %s: %s", self._path, e)


def create_transcript_writer(recording_id: str, settings: Optional[Settings] = None) -> TranscriptWriterBase:
    """TranscriptWriter when TRANSCRIPT_SAVE_ENABLED is set, otherwise the no-op writer."""
    settings = settings or get_settings()
    if not settings.TRANSCRIPT_SAVE_ENABLED:
        return NoOpTranscriptWriter()
    return TranscriptWriter(recording_id, settings=settings)
