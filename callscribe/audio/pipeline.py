"""
AudioCapturePipeline: microphone -> chunks -> (artifact buffer, live session).

Backends are an ordered candidate list (primary first). Each candidate is built
and started in turn; a failing candidate is discarded and the next one tried.
Only when every candidate fails is AudioCaptureFailure raised, carrying each
candidate's reason.

Every emitted chunk is appended to the artifact buffer and, while the attached
StreamSession is Connected, queued for an in-order forwarding task.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from callscribe.audio.artifact import RecordingArtifact, build_artifact
from callscribe.audio.backends import CaptureBackend, Microphone, RawPcmBackend, SoundDeviceBackend
from callscribe.audio.encoding import AudioChunk, EncodingDescriptor
from callscribe.config import Settings, get_settings
from callscribe.errors import AudioCaptureFailure

if TYPE_CHECKING:
    from callscribe.streaming.session import StreamSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendCandidate:
    """Named factory for one capture backend."""

    name: str
    factory: Callable[[Microphone], CaptureBackend]


def default_candidates(settings: Settings | None = None) -> list[BackendCandidate]:
    s = settings or get_settings()
    return [
        BackendCandidate(
            SoundDeviceBackend.name,
            lambda mic: SoundDeviceBackend.create(
                mic, s.CAPTURE_SAMPLE_RATE, s.CAPTURE_CHUNK_MS, s.CAPTURE_CHANNELS
            ),
        ),
        BackendCandidate(
            RawPcmBackend.name,
            lambda mic: RawPcmBackend.create(mic, s.FALLBACK_SAMPLE_RATE, s.FALLBACK_CHUNK_MS),
        ),
    ]


class AudioCapturePipeline:
    def __init__(
        self,
        candidates: list[BackendCandidate] | None = None,
        microphone_factory: Callable[[], Microphone] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._candidates = candidates if candidates is not None else default_candidates(self._settings)
        self._microphone_factory = microphone_factory or (lambda: Microphone(self._settings.CAPTURE_DEVICE))
        self._microphone: Microphone | None = None
        self._backend: CaptureBackend | None = None
        self._chunks: list[AudioChunk] = []
        self._session: StreamSession | None = None
        self._on_chunk: Callable[[AudioChunk], None] | None = None
        self._forward_queue: asyncio.Queue[AudioChunk] = asyncio.Queue()
        self._forward_task: asyncio.Task | None = None
        self._dropped = 0

    @property
    def is_capturing(self) -> bool:
        return self._backend is not None

    @property
    def encoding(self) -> EncodingDescriptor | None:
        return self._backend.encoding if self._backend else None

    @property
    def backend_name(self) -> str | None:
        return self._backend.name if self._backend else None

    @property
    def chunks(self) -> list[AudioChunk]:
        return list(self._chunks)

    @property
    def microphone(self) -> Microphone | None:
        return self._microphone

    def attach_session(self, session: "StreamSession | None") -> None:
        self._session = session

    async def start(self, on_chunk: Callable[[AudioChunk], None] | None = None) -> EncodingDescriptor:
        """Acquire the microphone and start the first backend that works."""
        if self.is_capturing:
            raise AudioCaptureFailure("Capture already running")
        self._chunks = []
        self._dropped = 0
        self._on_chunk = on_chunk
        microphone = self._microphone_factory()
        microphone.acquire()
        self._microphone = microphone

        reasons: list[str] = []
        for candidate in self._candidates:
            backend: CaptureBackend | None = None
            try:
                backend = candidate.factory(microphone)
                backend.start(self._handle_chunk)
            except Exception as e:
                reason = f"{candidate.name}: {e}"
                reasons.append(reason)
                logger.warning("Capture backend failed, trying next: %s", reason)
                if backend is not None:
                    backend.close()
                continue
            self._backend = backend
            break

        if self._backend is None:
            microphone.release()
            self._microphone = None
            raise AudioCaptureFailure("Failed to start recording", reasons)

        self._forward_task = asyncio.create_task(self._forwarder())
        return self._backend.encoding

    def _handle_chunk(self, chunk: AudioChunk) -> None:
        self._chunks.append(chunk)
        if self._on_chunk is not None:
            self._on_chunk(chunk)
        session = self._session
        if session is not None and session.is_connected:
            self._forward_queue.put_nowait(chunk)
        elif session is not None:
            self._dropped += 1
            logger.debug("Chunk %d not forwarded (session %s)", chunk.sequence, session.state.value)

    async def _forwarder(self) -> None:
        """Forward chunks to the session in emission order."""
        while True:
            chunk = await self._forward_queue.get()
            session = self._session
            if session is None:
                continue
            await session.send_audio(chunk)

    def _stop_forwarding(self) -> None:
        if self._forward_task is not None:
            self._forward_task.cancel()
            self._forward_task = None
        while not self._forward_queue.empty():
            self._forward_queue.get_nowait()

    async def _halt(self) -> None:
        backend, self._backend = self._backend, None
        if backend is not None:
            await backend.flush()
        self._stop_forwarding()
        if backend is not None:
            backend.close()
        if self._microphone is not None:
            self._microphone.release()
            self._microphone = None

    async def stop(self) -> RecordingArtifact:
        """Flush, release the microphone, assemble and decode-probe the artifact."""
        if not self.is_capturing:
            raise AudioCaptureFailure("Capture is not running")
        await self._halt()
        chunks, self._chunks = self._chunks, []
        logger.info("Capture stopped: %d chunks (%d not forwarded)", len(chunks), self._dropped)
        s = self._settings
        return await build_artifact(
            chunks,
            s.RECORDING_DIR,
            bitrate=s.RECORDING_BITRATE,
            probe_timeout=s.DECODE_PROBE_TIMEOUT_SECONDS,
            min_seconds=s.MIN_RECORDING_SECONDS,
        )

    async def abort(self) -> None:
        """Stop capture and drop buffered audio without producing an artifact."""
        await self._halt()
        self._chunks = []
