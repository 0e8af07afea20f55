"""
LocalWhisperAdapter: in-process recognition with faster-whisper.

Streaming: audio goes into a RollingBuffer (overlapping windows, e.g. 5s window,
1s step). Whisper returns segments relative to each window; only timestamps
decide what is new. A segment is committed as FinalTranscript once it is behind
the commit horizon (current_audio_time - COMMIT_AGE); what is still moving at the
window tail goes out as one PartialTranscript. Segments ending at or before
committed_until are skipped, so overlapping windows never commit twice.

Batch: upload() checks the file, start_job() transcribes it in the background,
poll() reports the job.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import uuid
from typing import Any

import numpy as np
from pydub import AudioSegment

from callscribe.asr.base import ASREngine, ASRResult
from callscribe.asr.local_whisper import LocalWhisperEngine
from callscribe.audio.encoding import AudioChunk, pcm_bytes_to_float32, to_pcm16le
from callscribe.audio.rolling_buffer import RollingBuffer
from callscribe.config import Settings, get_settings
from callscribe.errors import ProviderError, TransportError
from callscribe.providers.base import (
    BatchResult,
    ErrorCallback,
    EventCallback,
    ProviderAdapter,
    Transport,
    Utterance,
)
from callscribe.streaming.events import EventKind

logger = logging.getLogger(__name__)

PROVIDER_ID = "local"

# Absorbs timestamp jitter between overlapping windows
COMMIT_SKIP_EPSILON = 0.05


def _normalize_commit_text(text: str) -> str:
    """Strip repeated whitespace and duplicated trailing punctuation."""
    if not text:
        return ""
    text = re.sub(r"\s+", " ", text.strip())
    text = re.sub(r"([.!?,;:])\1+", r"\1", text)
    return text.strip()


class LocalStreamTransport(Transport):
    """
    Looks like a socket to the session: send_bytes() takes PCM16 mono at the
    engine rate, recognition events come back through on_event.
    """

    def __init__(
        self,
        engine: ASREngine,
        on_event: EventCallback,
        on_error: ErrorCallback,
        settings: Settings | None = None,
    ) -> None:
        s = settings or get_settings()
        self._engine = engine
        self._on_event = on_event
        self._on_error = on_error
        self._commit_age = s.LOCAL_WHISPER_COMMIT_AGE_SECONDS
        self._rolling = RollingBuffer(
            on_window=self._on_window,
            sample_rate=engine.sample_rate,
            window_sec=s.LOCAL_WHISPER_WINDOW_SECONDS,
            step_sec=s.LOCAL_WHISPER_STEP_SECONDS,
            min_chunk_sec=s.LOCAL_WHISPER_MIN_CHUNK_SECONDS,
        )
        self._windows: asyncio.Queue[tuple[bytes, float] | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._open = False
        self._closing = False
        self._committed_until = 0.0

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    @property
    def is_open(self) -> bool:
        return self._open

    def _on_window(self, window: bytes, start_sec: float) -> None:
        self._windows.put_nowait((window, start_sec))

    async def _run(self) -> None:
        try:
            await self._engine.load()
        except Exception as e:
            logger.error("Local recognition engine failed to load: %s", e)
            self._on_error(TransportError(f"Local model failed to load: {e}"))
            return
        self._open = True
        self._on_event({"message_type": EventKind.SESSION_BEGINS.value})
        while True:
            item = await self._windows.get()
            if item is None:
                break
            window, start_sec = item
            try:
                await self._recognize(window, start_sec)
            except Exception as e:
                logger.exception("Local recognition failed")
                self._open = False
                self._on_error(TransportError(f"Local recognition failed: {e}"))
                return

    async def _recognize(self, window: bytes, start_sec: float) -> None:
        audio = pcm_bytes_to_float32(window)
        window_end = start_sec + len(audio) / self._engine.sample_rate
        commit_horizon = window_end - self._commit_age

        result: ASRResult = await self._engine.transcribe(audio)
        if not result.segments:
            return

        partial_parts: list[str] = []
        for seg in result.segments:
            seg_start = start_sec + seg.start
            seg_end = start_sec + seg.end
            if seg_end <= self._committed_until + COMMIT_SKIP_EPSILON:
                continue
            # Commit if behind the horizon, straddling it, or on the closing flush
            if seg_end <= commit_horizon or seg_start < commit_horizon or self._closing:
                text = _normalize_commit_text(seg.text)
                self._committed_until = max(self._committed_until, seg_end)
                if not text:
                    continue
                self._on_event(
                    {
                        "message_type": EventKind.FINAL.value,
                        "text": text,
                        "audio_start": int(seg_start * 1000),
                        "audio_end": int(seg_end * 1000),
                    }
                )
            elif seg.text.strip():
                partial_parts.append(seg.text.strip())

        partial_text = " ".join(partial_parts).strip()
        if partial_text and not self._closing:
            self._on_event({"message_type": EventKind.PARTIAL.value, "text": partial_text})

    async def send_json(self, payload: dict[str, Any]) -> None:
        # Control messages (StartRecognition, KeepAlive) have no meaning in-process
        logger.debug("Local transport ignoring %s", payload.get("message_type"))

    async def send_bytes(self, data: bytes) -> None:
        if not self._open:
            raise TransportError("Local transport is not open")
        self._rolling.push(data)

    async def close(self, timeout: float = 30.0) -> None:
        """Flush the tail window, let pending windows finish, then stop."""
        if self._task is None:
            return
        self._closing = True
        if self._open:
            flushed = self._rolling.flush()
            if flushed:
                self._windows.put_nowait(flushed)
        self._windows.put_nowait(None)
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Local transport did not drain within %.1fs", timeout)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._open = False


def _decode_file_sync(path: str, sample_rate: int) -> np.ndarray:
    segment = AudioSegment.from_file(path).set_channels(1).set_frame_rate(sample_rate).set_sample_width(2)
    return pcm_bytes_to_float32(segment.raw_data)


class LocalWhisperAdapter(ProviderAdapter):
    def __init__(self, engine: ASREngine | None = None, settings: Settings | None = None) -> None:
        super().__init__()
        self._settings = settings or get_settings()
        self._engine = engine or LocalWhisperEngine(settings=self._settings)
        self._jobs: dict[str, BatchResult] = {}
        self._job_tasks: dict[str, asyncio.Task] = {}

    @property
    def engine(self) -> ASREngine:
        return self._engine

    def open_stream(self, on_event: EventCallback, on_error: ErrorCallback) -> LocalStreamTransport:
        transport = LocalStreamTransport(self._engine, on_event, on_error, self._settings)
        transport.start()
        logger.info("Opening local stream (model %s)", self._settings.LOCAL_WHISPER_MODEL)
        return transport

    async def send_audio(self, handle: Transport, chunk: AudioChunk) -> None:
        if not handle.is_open:
            return
        await handle.send_bytes(to_pcm16le(chunk, self._engine.sample_rate))

    async def upload(self, path: str) -> str:
        if not os.path.isfile(path):
            raise ProviderError("not_found", f"Audio file not found: {path}", PROVIDER_ID)
        return os.path.abspath(path)

    async def start_job(self, reference: str) -> str:
        job_id = uuid.uuid4().hex[:12]
        self._jobs[job_id] = BatchResult(status="processing", job_id=job_id)
        self._job_tasks[job_id] = asyncio.create_task(self._run_job(job_id, reference))
        return job_id

    async def _run_job(self, job_id: str, path: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            await self._engine.load()
            audio = await loop.run_in_executor(None, _decode_file_sync, path, self._engine.sample_rate)
            result = await self._engine.transcribe(audio)
        except Exception as e:
            logger.warning("Local batch job %s failed: %s", job_id, e)
            self._jobs[job_id] = BatchResult(status="error", error=str(e), job_id=job_id)
            return
        finally:
            self._job_tasks.pop(job_id, None)
        utterances = [
            Utterance(text=seg.text, start_ms=seg.start * 1000.0, end_ms=seg.end * 1000.0)
            for seg in result.segments or []
        ]
        self._jobs[job_id] = BatchResult(
            status="completed", text=result.text, utterances=utterances, job_id=job_id
        )

    async def poll(self, job_id: str) -> BatchResult:
        if job_id not in self._jobs:
            raise ProviderError("not_found", f"Unknown job: {job_id}", PROVIDER_ID)
        return self._jobs[job_id]
