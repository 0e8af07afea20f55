import asyncio
import os
from types import SimpleNamespace
from unittest.mock import patch

import numpy as np
import pytest

from conftest import FakeBackend, FakeMicrophone, tone_pcm16
from callscribe.audio.encoding import SAMPLE_FLOAT32, EncodingDescriptor
from callscribe.audio.pipeline import AudioCapturePipeline, BackendCandidate, default_candidates
from callscribe.errors import AudioCaptureFailure, ValidationFailure


class _Session:
    """Just enough of StreamSession for forwarding."""

    def __init__(self, connected: bool = True) -> None:
        self.is_connected = connected
        self.state = SimpleNamespace(value="Connected" if connected else "Connecting")
        self.sent: list[int] = []

    async def send_audio(self, chunk) -> bool:
        self.sent.append(chunk.sequence)
        return True


def _pipeline(settings, candidates, mic=None) -> tuple[AudioCapturePipeline, FakeMicrophone]:
    mic = mic or FakeMicrophone()
    return AudioCapturePipeline(candidates=candidates, microphone_factory=lambda: mic, settings=settings), mic


def _working(name="fallback", holder=None, encoding=None) -> BackendCandidate:
    def factory(mic):
        backend = FakeBackend(mic, encoding=encoding)
        if holder is not None:
            holder.append(backend)
        return backend

    return BackendCandidate(name, factory)


def _failing(name="primary", reason="format not supported") -> BackendCandidate:
    return BackendCandidate(name, lambda mic: FakeBackend(mic, fail_on_start=reason))


async def _drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Backend negotiation
# ---------------------------------------------------------------------------

class TestNegotiation:
    @pytest.mark.asyncio
    async def test_falls_back_when_primary_fails(self, settings):
        pipeline, mic = _pipeline(settings, [_failing(), _working()])
        encoding = await pipeline.start()

        assert pipeline.is_capturing
        assert pipeline.backend_name == "fake"
        assert encoding.codec == "wav"
        assert encoding.sample_rate == 16000
        assert mic.acquired
        await pipeline.abort()

    @pytest.mark.asyncio
    async def test_all_candidates_failing_aggregates_reasons(self, settings):
        pipeline, mic = _pipeline(settings, [_failing("primary", "no mp3"), _failing("fallback", "no pcm")])

        with pytest.raises(AudioCaptureFailure) as exc:
            await pipeline.start()

        assert exc.value.reasons == ["primary: no mp3", "fallback: no pcm"]
        assert "no mp3" in str(exc.value) and "no pcm" in str(exc.value)
        assert not pipeline.is_capturing
        assert mic.release_calls == 1
        assert not mic.acquired

    @pytest.mark.asyncio
    async def test_factory_exception_is_a_reason_too(self, settings):
        def broken(mic):
            raise RuntimeError("PortAudio not initialized")

        pipeline, _ = _pipeline(settings, [BackendCandidate("primary", broken), _working()])
        await pipeline.start()
        assert pipeline.is_capturing
        await pipeline.abort()

    @pytest.mark.asyncio
    async def test_microphone_permission_denied(self, settings):
        mic = FakeMicrophone(fail="Permission denied")
        pipeline, _ = _pipeline(settings, [_working()], mic=mic)

        with pytest.raises(AudioCaptureFailure, match="Permission denied"):
            await pipeline.start()
        assert not pipeline.is_capturing

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self, settings):
        pipeline, _ = _pipeline(settings, [_working()])
        await pipeline.start()
        with pytest.raises(AudioCaptureFailure):
            await pipeline.start()
        await pipeline.abort()

    def test_default_candidates_order(self, settings):
        assert [c.name for c in default_candidates(settings)] == ["sounddevice", "raw-pcm"]


# ---------------------------------------------------------------------------
# Chunk routing
# ---------------------------------------------------------------------------

class TestChunkRouting:
    @pytest.mark.asyncio
    async def test_chunks_forwarded_in_order_while_connected(self, settings):
        backends: list[FakeBackend] = []
        pipeline, _ = _pipeline(settings, [_working(holder=backends)])
        session = _Session(connected=True)
        pipeline.attach_session(session)
        await pipeline.start()

        for _ in range(4):
            backends[0].push(b"\x00\x01" * 100)
        await _drain()

        assert session.sent == [0, 1, 2, 3]
        assert [c.sequence for c in pipeline.chunks] == [0, 1, 2, 3]
        await pipeline.abort()

    @pytest.mark.asyncio
    async def test_chunks_buffered_but_not_forwarded_while_connecting(self, settings):
        backends: list[FakeBackend] = []
        pipeline, _ = _pipeline(settings, [_working(holder=backends)])
        session = _Session(connected=False)
        pipeline.attach_session(session)
        await pipeline.start()

        backends[0].push(b"\x00\x01" * 100)
        await _drain()

        assert session.sent == []
        assert len(pipeline.chunks) == 1
        await pipeline.abort()

    @pytest.mark.asyncio
    async def test_on_chunk_callback(self, settings):
        backends: list[FakeBackend] = []
        seen = []
        pipeline, _ = _pipeline(settings, [_working(holder=backends)])
        await pipeline.start(on_chunk=seen.append)
        backends[0].push(b"\x00\x01" * 10)

        assert [c.sequence for c in seen] == [0]
        await pipeline.abort()


# ---------------------------------------------------------------------------
# Stop / artifact
# ---------------------------------------------------------------------------

class TestStop:
    @pytest.mark.asyncio
    async def test_stop_writes_validated_wav_and_releases_microphone(self, settings):
        backends: list[FakeBackend] = []
        pipeline, mic = _pipeline(settings, [_working(holder=backends)])
        await pipeline.start()
        pcm = tone_pcm16(1.0)
        step = len(pcm) // 4
        for i in range(4):
            backends[0].push(pcm[i * step:(i + 1) * step])

        artifact = await pipeline.stop()

        assert os.path.exists(artifact.path)
        assert artifact.filename.endswith(".wav")
        assert artifact.chunk_count == 4
        assert artifact.duration_sec == pytest.approx(1.0, abs=0.05)
        assert artifact.size_bytes > len(pcm)
        assert not mic.acquired
        assert backends[0].stream.closed
        assert not pipeline.is_capturing

    @pytest.mark.asyncio
    async def test_float32_primary_capture_is_written_as_pcm16(self, settings):
        backends: list[FakeBackend] = []
        encoding = EncodingDescriptor("wav", 44100, 1, SAMPLE_FLOAT32)
        pipeline, _ = _pipeline(settings, [_working("primary", backends, encoding)])
        await pipeline.start()
        audio = (np.sin(np.linspace(0, 400, 44100)) * 0.2).astype(np.float32)
        backends[0].push(audio.tobytes())

        artifact = await pipeline.stop()

        assert artifact.encoding.sample_rate == 44100
        assert artifact.duration_sec == pytest.approx(1.0, abs=0.05)

    @pytest.mark.asyncio
    async def test_too_short_recording_fails_validation_and_is_discarded(self, settings):
        backends: list[FakeBackend] = []
        pipeline, _ = _pipeline(settings, [_working(holder=backends)])
        await pipeline.start()
        backends[0].push(tone_pcm16(0.05))

        with pytest.raises(ValidationFailure):
            await pipeline.stop()

        assert os.listdir(settings.RECORDING_DIR) == []

    @pytest.mark.asyncio
    async def test_failed_conversion_is_validation_failure_and_leaves_no_files(self, settings):
        backends: list[FakeBackend] = []
        encoding = EncodingDescriptor("mp3", 44100, 1, SAMPLE_FLOAT32)
        pipeline, mic = _pipeline(settings, [_working("primary", backends, encoding)])
        await pipeline.start()
        audio = (np.sin(np.linspace(0, 400, 44100)) * 0.2).astype(np.float32)
        backends[0].push(audio.tobytes())

        with patch("callscribe.audio.artifact._convert_sync", side_effect=RuntimeError("ffmpeg exited 1")):
            with pytest.raises(ValidationFailure, match="ffmpeg exited 1"):
                await pipeline.stop()

        assert os.listdir(settings.RECORDING_DIR) == []
        assert not mic.acquired

    @pytest.mark.asyncio
    async def test_stop_without_audio_is_capture_failure(self, settings):
        pipeline, mic = _pipeline(settings, [_working()])
        await pipeline.start()

        with pytest.raises(AudioCaptureFailure, match="empty"):
            await pipeline.stop()
        assert not mic.acquired

    @pytest.mark.asyncio
    async def test_abort_drops_buffered_audio(self, settings):
        backends: list[FakeBackend] = []
        pipeline, mic = _pipeline(settings, [_working(holder=backends)])
        await pipeline.start()
        backends[0].push(tone_pcm16(0.5))

        await pipeline.abort()

        assert pipeline.chunks == []
        assert not mic.acquired

    @pytest.mark.asyncio
    async def test_stop_when_idle_raises(self, settings):
        pipeline, _ = _pipeline(settings, [_working()])
        with pytest.raises(AudioCaptureFailure):
            await pipeline.stop()
