import os
import sys
from typing import Any

import numpy as np
import pytest

# Ensure the project root is in sys.path so `import callscribe` works without installing
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from callscribe.audio.backends import CaptureBackend, Microphone  # noqa: E402
from callscribe.audio.pipeline import AudioCapturePipeline, BackendCandidate  # noqa: E402
from callscribe.audio.encoding import SAMPLE_INT16, AudioChunk, EncodingDescriptor  # noqa: E402
from callscribe.config import Settings  # noqa: E402
from callscribe.errors import AudioCaptureFailure  # noqa: E402
from callscribe.providers.base import (  # noqa: E402
    BatchResult,
    ProviderAdapter,
    ProviderDescriptor,
    Transport,
    Utterance,
)
from callscribe.providers.registry import ProviderRegistry  # noqa: E402
from callscribe.recorder import RecordingController  # noqa: E402
from callscribe.transcript.writer import TranscriptWriterBase  # noqa: E402


# ---------------------------------------------------------------------------
# Provider fakes
# ---------------------------------------------------------------------------

class FakeTransport(Transport):
    def __init__(self, on_event, on_error) -> None:
        self.on_event = on_event
        self.on_error = on_error
        self.open = False
        self.sent_json: list[dict[str, Any]] = []
        self.sent_bytes: list[bytes] = []
        self.close_calls = 0
        self.fail_sends = False

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.fail_sends:
            raise ConnectionError("socket gone")
        self.sent_json.append(payload)

    async def send_bytes(self, data: bytes) -> None:
        if self.fail_sends:
            raise ConnectionError("socket gone")
        self.sent_bytes.append(data)

    async def close(self) -> None:
        self.close_calls += 1
        self.open = False

    # helpers for tests
    def emit(self, message_type: str, **fields: Any) -> None:
        self.on_event({"message_type": message_type, **fields})


class FakeAdapter(ProviderAdapter):
    def __init__(self) -> None:
        super().__init__()
        self.transports: list[FakeTransport] = []
        self.open_error: Exception | None = None
        self.closed: list[FakeTransport] = []

    @property
    def transport(self) -> FakeTransport:
        return self.transports[-1]

    def open_stream(self, on_event, on_error) -> FakeTransport:
        if self.open_error is not None:
            raise self.open_error
        transport = FakeTransport(on_event, on_error)
        self.transports.append(transport)
        return transport

    async def send_audio(self, handle: Transport, chunk: AudioChunk) -> None:
        await handle.send_bytes(chunk.data)

    async def close(self, handle: Transport) -> None:
        self.closed.append(handle)
        await handle.close()

    async def upload(self, path: str) -> str:
        return f"ref:{path}"

    async def start_job(self, reference: str) -> str:
        return "job-1"

    async def poll(self, job_id: str) -> BatchResult:
        return BatchResult(
            status="completed",
            text="hello there",
            utterances=[Utterance(text="hello", speaker="A", start_ms=0, end_ms=800),
                        Utterance(text="there", speaker="B", start_ms=900, end_ms=1500)],
            job_id=job_id,
        )


def make_descriptor(
    provider_id: str, requires_credential: bool = False, supports_summary: bool = False
) -> ProviderDescriptor:
    return ProviderDescriptor(
        id=provider_id,
        name=provider_id.title(),
        requires_credential=requires_credential,
        supports_summary=supports_summary,
        credential_storage_key=f"{provider_id}_api_key",
    )


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        KEEPALIVE_INTERVAL_MS=15000,
        CONNECT_HANDSHAKE_TIMEOUT_MS=5000,
        RECONCILE_INTERVAL_MS=1000,
        RECONNECT_SETTLE_MS=10,
        RECORDING_DIR=str(tmp_path / "recordings"),
        TRANSCRIPT_DIR=str(tmp_path / "transcripts"),
        TRANSCRIPT_SAVE_ENABLED=False,
        ASSEMBLYAI_API_KEY="",
    )


@pytest.fixture
def adapters() -> dict[str, FakeAdapter]:
    return {"alpha": FakeAdapter(), "beta": FakeAdapter()}


@pytest.fixture
def registry(adapters) -> ProviderRegistry:
    reg = ProviderRegistry()
    for provider_id, adapter in adapters.items():
        reg.register(make_descriptor(provider_id), adapter)
    return reg


# ---------------------------------------------------------------------------
# Capture fakes
# ---------------------------------------------------------------------------

class FakeStream:
    def __init__(self) -> None:
        self.started = False
        self.stopped = False
        self.closed = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def close(self) -> None:
        self.closed = True


class FakeMicrophone(Microphone):
    def __init__(self, fail: str | None = None) -> None:
        super().__init__(None)
        self._fail = fail
        self.release_calls = 0

    def acquire(self) -> None:
        if self._fail:
            raise AudioCaptureFailure(self._fail)
        self._acquired = True

    def release(self) -> None:
        self.release_calls += 1
        super().release()


class FakeBackend(CaptureBackend):
    """Emits chunks only when the test calls push()."""

    name = "fake"

    def __init__(self, microphone, encoding=None, chunk_ms=250, fail_on_start: str | None = None) -> None:
        super().__init__(microphone, encoding or EncodingDescriptor("wav", 16000, 1, SAMPLE_INT16), chunk_ms)
        self._fail_on_start = fail_on_start
        self.stream: FakeStream | None = None

    def _open_stream(self) -> FakeStream:
        if self._fail_on_start:
            raise AudioCaptureFailure(self._fail_on_start)
        self.stream = FakeStream()
        return self.stream

    def push(self, data: bytes) -> None:
        self._emit(data)


def tone_pcm16(seconds: float, sample_rate: int = 16000, freq: float = 440.0) -> bytes:
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    return (np.sin(2 * np.pi * freq * t) * 0.3 * 32767).astype("<i2").tobytes()


# ---------------------------------------------------------------------------
# Recording controller harness
# ---------------------------------------------------------------------------

class RecordingWriter(TranscriptWriterBase):
    def __init__(self, recording_id: str) -> None:
        self.recording_id = recording_id
        self.lines = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    def append_final(self, segment) -> None:
        self.lines.append((segment.speaker_label, segment.text))

    async def close(self) -> None:
        self.closed = True


class Harness:
    """Controller wired to fake capture, keeping the backends and writers it created."""

    def __init__(self, settings, registry, mic=None) -> None:
        self.backends: list[FakeBackend] = []
        self.writers: list[RecordingWriter] = []
        self.mic = mic or FakeMicrophone()

        def factory(microphone):
            backend = FakeBackend(microphone)
            self.backends.append(backend)
            return backend

        def writer_factory(recording_id):
            writer = RecordingWriter(recording_id)
            self.writers.append(writer)
            return writer

        pipeline = AudioCapturePipeline(
            candidates=[BackendCandidate("fake", factory)],
            microphone_factory=lambda: self.mic,
            settings=settings,
        )
        self.controller = RecordingController(
            registry, settings, pipeline=pipeline, writer_factory=writer_factory, settle_ms=10
        )

    @property
    def backend(self) -> FakeBackend:
        return self.backends[-1]
