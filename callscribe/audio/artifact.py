"""
Recording artifact: assemble buffered chunks into one file and decode-probe it.

- WAV: one open, set header once, write all frames, close once.
- Compressed/flac: write WAV first, then convert with pydub (ffmpeg). Never stream
  PCM into the encoder.
- Probe: load the file back with pydub under a bounded timeout; undecodable or
  shorter than MIN_RECORDING_SECONDS -> ValidationFailure and the file is removed.
- A failed conversion is a ValidationFailure too; neither the intermediate WAV
  nor a partial output is left behind.
Blocking steps run in the default executor.
"""
from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
import wave
from dataclasses import dataclass

import numpy as np
from pydub import AudioSegment
from pydub.exceptions import CouldntDecodeError

from callscribe.audio.encoding import (
    EXPORT_FORMATS,
    SAMPLE_FLOAT32,
    AudioChunk,
    EncodingDescriptor,
    float32_to_pcm_bytes,
)
from callscribe.errors import AudioCaptureFailure, ValidationFailure

logger = logging.getLogger(__name__)

SAMPLE_WIDTH = 2


@dataclass
class RecordingArtifact:
    path: str
    encoding: EncodingDescriptor
    duration_sec: float
    size_bytes: int
    chunk_count: int

    @property
    def filename(self) -> str:
        return os.path.basename(self.path)


def _chunks_to_pcm16(chunks: list[AudioChunk]) -> bytes:
    raw = b"".join(c.data for c in chunks)
    if chunks and chunks[0].encoding.sample_format == SAMPLE_FLOAT32:
        return float32_to_pcm_bytes(np.frombuffer(raw, dtype=np.float32))
    return raw


def _write_wav_sync(pcm_bytes: bytes, out_path: str, sample_rate: int, channels: int) -> None:
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with wave.open(out_path, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(SAMPLE_WIDTH)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm_bytes)


def _convert_sync(wav_path: str, out_path: str, codec: str, bitrate: str) -> None:
    """Convert WAV file to the negotiated codec after recording ends."""
    segment = AudioSegment.from_wav(wav_path)
    kwargs = dict(EXPORT_FORMATS[codec])
    if codec != "flac":
        kwargs["bitrate"] = bitrate
    segment.export(out_path, **kwargs)


def assemble_sync(
    chunks: list[AudioChunk],
    out_dir: str,
    bitrate: str = "128k",
    name: str | None = None,
) -> tuple[str, EncodingDescriptor]:
    """Write buffered chunks as one file. Returns (path, encoding). Run in executor."""
    if not chunks:
        raise AudioCaptureFailure("Recording produced no audio data (empty stream)")
    encoding = chunks[0].encoding
    base = name or f"recording_{uuid.uuid4().hex[:12]}_{int(time.time())}"
    wav_path = os.path.join(out_dir, f"{base}.wav")
    _write_wav_sync(_chunks_to_pcm16(chunks), wav_path, encoding.sample_rate, encoding.channels)
    if encoding.codec not in EXPORT_FORMATS:
        return wav_path, encoding
    out_path = os.path.join(out_dir, f"{base}.{encoding.file_extension}")
    try:
        _convert_sync(wav_path, out_path, encoding.codec, bitrate)
    except Exception as e:
        logger.error("Conversion to %s failed: %s", encoding.codec, e)
        _remove_quietly(wav_path, out_path)
        raise ValidationFailure(f"Could not encode the recording as {encoding.codec}: {e}") from e
    _remove_quietly(wav_path)
    return out_path, encoding


def _remove_quietly(*paths: str) -> None:
    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            os.remove(path)
        except OSError:
            logger.debug("Could not remove intermediate %s", path)


def _probe_duration_sync(path: str) -> float:
    return len(AudioSegment.from_file(path)) / 1000.0


def discard(path: str) -> None:
    try:
        os.remove(path)
    except OSError as e:
        logger.warning("Could not discard artifact %s: %s", path, e)


async def probe(path: str, timeout: float, min_seconds: float) -> float:
    """Decode-probe an artifact. Returns duration in seconds or raises ValidationFailure."""
    loop = asyncio.get_running_loop()
    try:
        duration = await asyncio.wait_for(
            loop.run_in_executor(None, _probe_duration_sync, path),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise ValidationFailure("Timed out while validating audio. File may be corrupted.") from e
    except (CouldntDecodeError, OSError, IndexError) as e:
        raise ValidationFailure(
            "Cannot decode the recorded audio - recording may have failed"
        ) from e
    if duration < min_seconds:
        raise ValidationFailure(f"Recorded audio is too short or empty ({duration:.2f}s)")
    return duration


async def build_artifact(
    chunks: list[AudioChunk],
    out_dir: str,
    *,
    bitrate: str = "128k",
    probe_timeout: float = 3.0,
    min_seconds: float = 0.1,
) -> RecordingArtifact:
    """Assemble, then probe. On ValidationFailure the written file is removed."""
    loop = asyncio.get_running_loop()
    path, encoding = await loop.run_in_executor(None, assemble_sync, chunks, out_dir, bitrate)
    try:
        duration = await probe(path, probe_timeout, min_seconds)
    except ValidationFailure:
        discard(path)
        raise
    size = os.path.getsize(path)
    logger.info("Recording saved: %s (%.2fs, %d bytes)", path, duration, size)
    return RecordingArtifact(
        path=path,
        encoding=encoding,
        duration_sec=duration,
        size_bytes=size,
        chunk_count=len(chunks),
    )
