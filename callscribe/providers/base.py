"""
Provider capability interface.

Every speech-recognition provider is a ProviderAdapter with a fixed method set:

- streaming: open_stream(on_event, on_error) -> Transport, send_audio(handle, chunk),
  close(handle)
- batch (upload -> start job -> poll): upload(path), start_job(reference), poll(job_id)
- utterances_to_segments(result): post-hoc diarized utterances -> Segments

open_stream returns immediately; the transport connects in the background and
reports through the callbacks. on_event receives raw JSON messages (dicts) in
receipt order; on_error receives a TransportError or ProviderError.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

from callscribe.audio.encoding import AudioChunk
from callscribe.transcript.models import Segment, speaker_label

EventCallback = Callable[[dict[str, Any]], None]
ErrorCallback = Callable[[Exception], None]

# Methods the registry checks before accepting an adapter
REQUIRED_METHODS: tuple[str, ...] = (
    "open_stream",
    "send_audio",
    "close",
    "upload",
    "start_job",
    "poll",
    "utterances_to_segments",
)


@dataclass(frozen=True)
class ProviderDescriptor:
    """Immutable provider description; UI reads the credential_* fields."""

    id: str
    name: str
    supports_diarization: bool = False
    supports_summary: bool = False
    requires_credential: bool = True
    credential_storage_key: str = ""
    credential_label: str = "API Key"
    credential_info_text: str = ""
    credential_info_url: str = ""


@dataclass
class Utterance:
    """One diarized utterance from a batch result. Times in milliseconds."""

    text: str
    speaker: Any = None
    start_ms: float | None = None
    end_ms: float | None = None


@dataclass
class BatchResult:
    status: str  # "queued" | "processing" | "completed" | "error"
    text: str = ""
    utterances: list[Utterance] = field(default_factory=list)
    error: str | None = None
    job_id: str | None = None

    @property
    def done(self) -> bool:
        return self.status in ("completed", "error")


class Transport(ABC):
    """Persistent bidirectional connection to a provider."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    async def send_json(self, payload: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def send_bytes(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class ProviderAdapter(ABC):
    """Base for provider adapters. Credentials are pushed in by the registry."""

    def __init__(self) -> None:
        self._credential: str = ""

    def set_credential(self, key: str) -> None:
        self._credential = (key or "").strip()

    @property
    def credential(self) -> str:
        return self._credential

    @abstractmethod
    def open_stream(self, on_event: EventCallback, on_error: ErrorCallback) -> Transport:
        ...

    @abstractmethod
    async def send_audio(self, handle: Transport, chunk: AudioChunk) -> None:
        """Convert chunk to the provider's sample format and send it."""
        ...

    async def close(self, handle: Transport) -> None:
        await handle.close()

    @abstractmethod
    async def upload(self, path: str) -> str:
        ...

    @abstractmethod
    async def start_job(self, reference: str) -> str:
        ...

    @abstractmethod
    async def poll(self, job_id: str) -> BatchResult:
        ...

    def utterances_to_segments(self, result: BatchResult, default_speaker: str = "Speaker 1") -> list[Segment]:
        segments: list[Segment] = []
        for u in result.utterances:
            text = (u.text or "").strip()
            if not text:
                continue
            segments.append(
                Segment(
                    speaker_label=default_speaker if u.speaker is None else speaker_label(u.speaker),
                    text=text,
                    start_sec=None if u.start_ms is None else u.start_ms / 1000.0,
                    end_sec=None if u.end_ms is None else u.end_ms / 1000.0,
                )
            )
        return segments
