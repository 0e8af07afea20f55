"""
Capture backends: microphone access and chunk emission.

- Microphone: exclusive handle on one input device. Every stream opened through it
  is stopped and closed on release().
- SoundDeviceBackend (primary): float32 @ 44.1kHz, one chunk per 500ms block,
  artifact codec negotiated from what pydub/ffmpeg can encode.
- RawPcmBackend (fallback): int16 PCM @ 16kHz, 250ms blocks, always WAV.

PortAudio calls the stream callback on its own thread; chunks are handed to the
event loop with call_soon_threadsafe so all pipeline state stays on the loop.
"""
from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from pydub.utils import which

from callscribe.audio.encoding import (
    SAMPLE_FLOAT32,
    SAMPLE_INT16,
    AudioChunk,
    EncodingDescriptor,
    negotiate_encoding,
)
from callscribe.errors import AudioCaptureFailure

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[AudioChunk], None]


def _sounddevice():
    """Import sounddevice on first use; PortAudio may be missing on headless hosts."""
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise AudioCaptureFailure(f"Audio input unavailable: {e}") from e
    return sd


class Microphone:
    """Exclusive owner of one input device for the lifetime of a recording."""

    def __init__(self, device: str | int | None = None) -> None:
        self._device = device if device not in ("", None) else None
        self._streams: list[Any] = []
        self._acquired = False
        self.info: dict | None = None

    @property
    def device(self) -> str | int | None:
        return self._device

    @property
    def acquired(self) -> bool:
        return self._acquired

    def acquire(self) -> None:
        if self._acquired:
            raise AudioCaptureFailure("Microphone already in use by this pipeline")
        sd = _sounddevice()
        try:
            self.info = sd.query_devices(self._device, kind="input")
        except (ValueError, sd.PortAudioError) as e:
            raise AudioCaptureFailure(f"Microphone unavailable: {e}") from e
        self._acquired = True
        logger.info("Microphone acquired: %s", (self.info or {}).get("name", self._device))

    def track(self, stream: Any) -> None:
        self._streams.append(stream)

    def release(self) -> None:
        """Stop and close every stream opened on this device. Synchronous."""
        streams, self._streams = self._streams, []
        for stream in streams:
            if getattr(stream, "closed", False):
                continue
            try:
                stream.stop()
                stream.close()
            except Exception as e:
                logger.warning("Closing input stream failed: %s", e)
        if self._acquired:
            logger.info("Microphone released")
        self._acquired = False


class CaptureBackend(ABC):
    """One way of turning the microphone into a sequence of AudioChunks."""

    name: str = "backend"

    def __init__(self, microphone: Microphone, encoding: EncodingDescriptor, chunk_ms: int) -> None:
        self._microphone = microphone
        self._encoding = encoding
        self._chunk_ms = chunk_ms
        self._sequence = 0
        self._on_chunk: ChunkCallback | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stream: Any = None

    @property
    def encoding(self) -> EncodingDescriptor:
        return self._encoding

    @property
    def chunk_ms(self) -> int:
        return self._chunk_ms

    @property
    def blocksize(self) -> int:
        return max(1, int(self._encoding.sample_rate * self._chunk_ms / 1000))

    @abstractmethod
    def _open_stream(self) -> Any:
        """Create (not start) the device stream."""
        ...

    def start(self, on_chunk: ChunkCallback) -> None:
        self._on_chunk = on_chunk
        self._loop = asyncio.get_running_loop()
        self._stream = self._open_stream()
        self._microphone.track(self._stream)
        self._stream.start()
        logger.info(
            "%s started: codec=%s rate=%d chunk_ms=%d",
            self.name, self._encoding.codec, self._encoding.sample_rate, self._chunk_ms,
        )

    def _emit(self, data: bytes) -> None:
        """Runs on the event loop."""
        if self._on_chunk is None or not data:
            return
        chunk = AudioChunk(data=data, sequence=self._sequence, encoding=self._encoding)
        self._sequence += 1
        self._on_chunk(chunk)

    def _deliver(self, data: bytes) -> None:
        """Runs on the PortAudio thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._emit, data)

    async def flush(self) -> None:
        """Stop the stream and let already-delivered chunks reach the loop."""
        if self._stream is not None:
            try:
                self._stream.stop()
            except Exception as e:
                logger.warning("%s stop failed: %s", self.name, e)
        await asyncio.sleep(0)
        self._on_chunk = None

    def close(self) -> None:
        stream, self._stream = self._stream, None
        self._on_chunk = None
        if stream is not None and not getattr(stream, "closed", False):
            try:
                stream.close()
            except Exception as e:
                logger.warning("%s close failed: %s", self.name, e)


def _ffmpeg_available() -> bool:
    return bool(which("ffmpeg") or which("avconv"))


class SoundDeviceBackend(CaptureBackend):
    """Primary backend: float32 frames, artifact codec negotiated (compressed when ffmpeg exists)."""

    name = "sounddevice"

    @staticmethod
    def supported_codecs() -> frozenset[str]:
        if _ffmpeg_available():
            return frozenset({"mp3", "ogg", "webm", "flac", "wav", "pcm"})
        return frozenset({"wav", "pcm"})

    @classmethod
    def create(cls, microphone: Microphone, sample_rate: int, chunk_ms: int, channels: int = 1) -> "SoundDeviceBackend":
        encoding = negotiate_encoding(cls.supported_codecs(), sample_rate, channels, SAMPLE_FLOAT32)
        if encoding is None:
            raise AudioCaptureFailure("No supported encoding for primary capture backend")
        return cls(microphone, encoding, chunk_ms)

    def _open_stream(self) -> Any:
        sd = _sounddevice()

        def callback(indata, frames, time_info, status) -> None:
            if status:
                logger.debug("Input status: %s", status)
            self._deliver(indata.copy().tobytes())

        return sd.InputStream(
            device=self._microphone.device,
            samplerate=self._encoding.sample_rate,
            channels=self._encoding.channels,
            dtype="float32",
            blocksize=self.blocksize,
            callback=callback,
        )


class RawPcmBackend(CaptureBackend):
    """Fallback backend: raw int16 PCM, always written as WAV."""

    name = "raw-pcm"

    @classmethod
    def create(cls, microphone: Microphone, sample_rate: int, chunk_ms: int) -> "RawPcmBackend":
        encoding = EncodingDescriptor("wav", sample_rate, 1, SAMPLE_INT16)
        return cls(microphone, encoding, chunk_ms)

    def _open_stream(self) -> Any:
        sd = _sounddevice()

        def callback(indata, frames, time_info, status) -> None:
            if status:
                logger.debug("Input status: %s", status)
            self._deliver(bytes(indata))

        return sd.RawInputStream(
            device=self._microphone.device,
            samplerate=self._encoding.sample_rate,
            channels=1,
            dtype="int16",
            blocksize=self.blocksize,
            callback=callback,
        )
