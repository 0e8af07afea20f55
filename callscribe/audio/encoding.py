"""
Audio encodings, chunks and PCM conversion.

A chunk always carries raw PCM samples (float32 or int16, interleaved when
multi-channel). The codec on the descriptor is the container the final recording
artifact is written in; streaming always converts to PCM16LE mono.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Sample formats a chunk payload can carry
SAMPLE_FLOAT32 = "f32"
SAMPLE_INT16 = "s16le"

# Negotiation order: compressed first, then lossless, then the generic fallback.
PREFERRED_CODECS: tuple[str, ...] = ("mp3", "ogg", "webm", "flac", "wav", "pcm")

# pydub/ffmpeg export arguments per artifact codec
EXPORT_FORMATS: dict[str, dict] = {
    "mp3": {"format": "mp3"},
    "ogg": {"format": "ogg", "codec": "libopus"},
    "webm": {"format": "webm", "codec": "libopus"},
    "flac": {"format": "flac"},
}


@dataclass(frozen=True)
class EncodingDescriptor:
    codec: str
    sample_rate: int
    channels: int = 1
    sample_format: str = SAMPLE_FLOAT32

    @property
    def file_extension(self) -> str:
        return "wav" if self.codec in ("wav", "pcm") else self.codec


@dataclass(frozen=True)
class AudioChunk:
    """One emitted block of captured audio."""

    data: bytes
    sequence: int
    encoding: EncodingDescriptor

    @property
    def duration_sec(self) -> float:
        width = 4 if self.encoding.sample_format == SAMPLE_FLOAT32 else 2
        frames = len(self.data) / (width * self.encoding.channels)
        return frames / self.encoding.sample_rate


def negotiate_encoding(supported: set[str] | frozenset[str], sample_rate: int, channels: int = 1,
                       sample_format: str = SAMPLE_FLOAT32) -> EncodingDescriptor | None:
    """First codec in preference order the backend supports, or None."""
    for codec in PREFERRED_CODECS:
        if codec in supported:
            return EncodingDescriptor(codec, sample_rate, channels, sample_format)
    return None


def pcm_bytes_to_float32(pcm_bytes: bytes) -> np.ndarray:
    """Convert PCM 16-bit bytes to float32 [-1.0, 1.0]."""
    samples = np.frombuffer(pcm_bytes, dtype="<i2")
    return samples.astype(np.float32) / 32768.0


def float32_to_pcm_bytes(audio: np.ndarray) -> bytes:
    """Convert float32 [-1, 1] to PCM 16-bit little-endian bytes."""
    samples = (audio * 32767).clip(-32768, 32767).astype("<i2")
    return samples.tobytes()


def chunk_to_float32(chunk: AudioChunk) -> np.ndarray:
    """Mono float32 samples for a chunk (channels averaged)."""
    if chunk.encoding.sample_format == SAMPLE_FLOAT32:
        audio = np.frombuffer(chunk.data, dtype=np.float32)
    else:
        audio = pcm_bytes_to_float32(chunk.data)
    channels = chunk.encoding.channels
    if channels > 1:
        usable = len(audio) - len(audio) % channels
        audio = audio[:usable].reshape(-1, channels).mean(axis=1)
    return audio


def resample(audio: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resample; good enough for speech recognition input."""
    if source_rate == target_rate or len(audio) == 0:
        return audio.astype(np.float32, copy=False)
    target_len = max(1, int(round(len(audio) * target_rate / source_rate)))
    src_x = np.arange(len(audio), dtype=np.float64)
    dst_x = np.linspace(0, len(audio) - 1, target_len)
    return np.interp(dst_x, src_x, audio).astype(np.float32)


def to_pcm16le(chunk: AudioChunk, target_rate: int) -> bytes:
    """Chunk -> mono PCM16LE at the provider's sample rate."""
    enc = chunk.encoding
    if enc.sample_format == SAMPLE_INT16 and enc.channels == 1 and enc.sample_rate == target_rate:
        return chunk.data
    audio = resample(chunk_to_float32(chunk), enc.sample_rate, target_rate)
    return float32_to_pcm_bytes(audio)
