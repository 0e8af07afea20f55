import asyncio
import json
from unittest.mock import MagicMock, patch

import httpx
import numpy as np
import pytest
from websockets.asyncio.server import serve

from conftest import FakeTransport, make_descriptor
from callscribe.asr.base import ASREngine, ASRResult, SegmentTimestamp
from callscribe.audio.encoding import SAMPLE_FLOAT32, SAMPLE_INT16, AudioChunk, EncodingDescriptor
from callscribe.errors import MissingCredential, ProviderError, TransportError
from callscribe.providers.assemblyai import (
    AssemblyAIAdapter,
    WebSocketTransport,
    _parse_transcript,
    _request_sync,
)
from callscribe.providers.local import LocalStreamTransport, LocalWhisperAdapter
from callscribe.providers.registry import ProviderRegistry
from callscribe.streaming.events import start_recognition_message
from callscribe.streaming.session import ConnectionState, StreamSession
from callscribe.transcript.aggregator import TranscriptAggregator


class ScriptedEngine(ASREngine):
    """Returns queued results in order, repeating the last one."""

    def __init__(self, results: list[ASRResult] | None = None, load_error: Exception | None = None) -> None:
        self._results = list(results or [])
        self._load_error = load_error
        self.calls = 0

    async def load(self) -> None:
        if self._load_error is not None:
            raise self._load_error

    async def transcribe(self, audio) -> ASRResult:
        self.calls += 1
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0] if self._results else ASRResult(text="")

    @property
    def sample_rate(self) -> int:
        return 16000


def seg(start: float, end: float, text: str) -> SegmentTimestamp:
    return SegmentTimestamp(start=start, end=end, text=text)


async def _drain(n: int = 10) -> None:
    for _ in range(n):
        await asyncio.sleep(0)


def _pcm(seconds: float) -> bytes:
    return b"\x00\x00" * int(16000 * seconds)


# ---------------------------------------------------------------------------
# Local in-process stream
# ---------------------------------------------------------------------------

class TestLocalStreamTransport:
    @pytest.mark.asyncio
    async def test_partial_then_final_by_commit_horizon(self, settings):
        hello = seg(0.0, 0.8, "hello")
        world = seg(2.5, 3.5, "world")
        engine = ScriptedEngine([
            ASRResult(text="hello", segments=[hello]),
            ASRResult(text="hello world", segments=[hello, world]),
            ASRResult(text="hello world", segments=[hello, world]),
        ])
        events, errors = [], []
        transport = LocalStreamTransport(engine, events.append, errors.append, settings)
        transport.start()
        await _drain()
        assert transport.is_open

        await transport.send_bytes(_pcm(1.0))
        await _drain()
        await transport.send_bytes(_pcm(3.0))
        await _drain()
        await transport.close()

        assert errors == []
        assert events == [
            {"message_type": "SessionBegins"},
            {"message_type": "PartialTranscript", "text": "hello"},
            {"message_type": "FinalTranscript", "text": "hello", "audio_start": 0, "audio_end": 800},
            {"message_type": "PartialTranscript", "text": "world"},
            {"message_type": "FinalTranscript", "text": "world", "audio_start": 2500, "audio_end": 3500},
        ]
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_load_failure_reported_as_transport_error(self, settings):
        events, errors = [], []
        transport = LocalStreamTransport(ScriptedEngine(load_error=RuntimeError("no model")),
                                         events.append, errors.append, settings)
        transport.start()
        await _drain()

        assert events == []
        assert isinstance(errors[0], TransportError)
        assert not transport.is_open
        with pytest.raises(TransportError):
            await transport.send_bytes(_pcm(0.1))
        await transport.close()

    @pytest.mark.asyncio
    async def test_control_messages_are_ignored(self, settings):
        transport = LocalStreamTransport(ScriptedEngine(), lambda m: None, lambda e: None, settings)
        await transport.send_json({"message_type": "KeepAlive"})


class TestLocalWhisperAdapter:
    @pytest.mark.asyncio
    async def test_send_audio_converts_to_engine_rate(self, settings):
        adapter = LocalWhisperAdapter(engine=ScriptedEngine(), settings=settings)
        handle = FakeTransport(None, None)
        handle.open = True
        chunk = AudioChunk(np.zeros(44100, dtype=np.float32).tobytes(), 0,
                           EncodingDescriptor("mp3", 44100, 1, SAMPLE_FLOAT32))
        await adapter.send_audio(handle, chunk)
        assert len(handle.sent_bytes[0]) == 16000 * 2

    @pytest.mark.asyncio
    async def test_batch_job_completes(self, settings, tmp_path):
        audio_file = tmp_path / "call.wav"
        audio_file.write_bytes(b"RIFF")
        engine = ScriptedEngine([ASRResult(text="hi there", segments=[seg(0.0, 1.0, "hi there")])])
        adapter = LocalWhisperAdapter(engine=engine, settings=settings)

        with patch("callscribe.providers.local._decode_file_sync", return_value=np.zeros(16000, dtype=np.float32)):
            reference = await adapter.upload(str(audio_file))
            job_id = await adapter.start_job(reference)
            for _ in range(50):
                result = await adapter.poll(job_id)
                if result.done:
                    break
                await asyncio.sleep(0.01)

        assert result.status == "completed"
        assert result.text == "hi there"
        segments = adapter.utterances_to_segments(result)
        assert [(s.speaker_label, s.text, s.end_sec) for s in segments] == [("Speaker 1", "hi there", 1.0)]

    @pytest.mark.asyncio
    async def test_batch_job_decode_error(self, settings, tmp_path):
        audio_file = tmp_path / "broken.wav"
        audio_file.write_bytes(b"garbage")
        adapter = LocalWhisperAdapter(engine=ScriptedEngine(), settings=settings)

        with patch("callscribe.providers.local._decode_file_sync", side_effect=OSError("cannot decode")):
            job_id = await adapter.start_job(await adapter.upload(str(audio_file)))
            for _ in range(50):
                result = await adapter.poll(job_id)
                if result.done:
                    break
                await asyncio.sleep(0.01)

        assert result.status == "error"
        assert "cannot decode" in result.error

    @pytest.mark.asyncio
    async def test_upload_missing_file(self, settings):
        adapter = LocalWhisperAdapter(engine=ScriptedEngine(), settings=settings)
        with pytest.raises(ProviderError):
            await adapter.upload("/nonexistent/file.wav")

    @pytest.mark.asyncio
    async def test_poll_unknown_job(self, settings):
        adapter = LocalWhisperAdapter(engine=ScriptedEngine(), settings=settings)
        with pytest.raises(ProviderError):
            await adapter.poll("missing")


class TestLocalSessionStop:
    @pytest.mark.asyncio
    async def test_stop_mid_utterance_commits_the_tail(self, settings):
        engine = ScriptedEngine([ASRResult(text="hello", segments=[seg(0.0, 0.8, "hello")])])
        registry = ProviderRegistry()
        registry.register(make_descriptor("local"), LocalWhisperAdapter(engine=engine, settings=settings))
        session = StreamSession(registry, settings)
        aggregator = TranscriptAggregator()
        session.on_transcript(aggregator.apply)

        await session.connect()
        await _drain()
        assert session.state is ConnectionState.CONNECTED

        chunk = AudioChunk(_pcm(1.0), 0, EncodingDescriptor("wav", 16000, 1, SAMPLE_INT16))
        assert await session.send_audio(chunk) is True
        await _drain()
        assert [(s.text, s.partial) for s in aggregator.segments] == [("hello", True)]

        await session.close()

        assert [(s.text, s.partial) for s in aggregator.segments] == [("hello", False)]
        assert aggregator.segments[0].end_sec == 0.8
        assert session.state is ConnectionState.DISCONNECTED


# ---------------------------------------------------------------------------
# AssemblyAI
# ---------------------------------------------------------------------------

class TestAssemblyAIStreaming:
    def test_open_stream_requires_credential(self, settings):
        adapter = AssemblyAIAdapter(settings)
        with pytest.raises(MissingCredential):
            adapter.open_stream(lambda m: None, lambda e: None)

    @pytest.mark.asyncio
    async def test_send_audio_is_pcm16_at_provider_rate(self, settings):
        adapter = AssemblyAIAdapter(settings)
        handle = FakeTransport(None, None)
        handle.open = True
        chunk = AudioChunk(np.zeros(22050, dtype=np.float32).tobytes(), 0,
                           EncodingDescriptor("ogg", 44100, 1, SAMPLE_FLOAT32))
        await adapter.send_audio(handle, chunk)
        assert len(handle.sent_bytes[0]) == 8000 * 2

    @pytest.mark.asyncio
    async def test_send_audio_skipped_when_closed(self, settings):
        adapter = AssemblyAIAdapter(settings)
        handle = FakeTransport(None, None)
        chunk = AudioChunk(b"\x00\x00", 0, EncodingDescriptor("wav", 16000))
        await adapter.send_audio(handle, chunk)
        assert handle.sent_bytes == []

    @pytest.mark.asyncio
    async def test_websocket_transport_round_trip(self):
        received = []

        async def handler(ws):
            received.append(json.loads(await ws.recv()))
            await ws.send(json.dumps({"message_type": "PartialTranscript", "text": "hi"}))
            await ws.send(b"\x00binary frames are ignored")
            await ws.wait_closed()

        events, errors = [], []
        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            transport = WebSocketTransport(
                f"ws://127.0.0.1:{port}",
                {},
                events.append,
                errors.append,
                opening_messages=[start_recognition_message(16000)],
            )
            transport.start()
            for _ in range(100):
                if len(events) >= 2:
                    break
                await asyncio.sleep(0.01)

            assert transport.is_open
            await transport.send_json({"message_type": "KeepAlive"})
            await transport.close()

        assert errors == []
        assert events == [
            {"message_type": "Connected"},
            {"message_type": "PartialTranscript", "text": "hi"},
        ]
        assert received == [start_recognition_message(16000)]
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_server_close_reports_session_terminated(self):
        async def handler(ws):
            await ws.close()

        events, errors = [], []
        async with serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            transport = WebSocketTransport(f"ws://127.0.0.1:{port}", {}, events.append, errors.append)
            transport.start()
            for _ in range(100):
                if len(events) >= 2:
                    break
                await asyncio.sleep(0.01)
            await transport.close()

        assert events == [{"message_type": "Connected"}, {"message_type": "SessionTerminated"}]
        assert errors == []

    @pytest.mark.asyncio
    async def test_unreachable_server_reports_transport_error(self):
        events, errors = [], []
        transport = WebSocketTransport("ws://127.0.0.1:9", {}, events.append, errors.append)
        transport.start()
        for _ in range(100):
            if errors:
                break
            await asyncio.sleep(0.01)
        await transport.close()

        assert events == []
        assert isinstance(errors[0], TransportError)


class TestAssemblyAIBatch:
    @pytest.mark.asyncio
    async def test_upload_start_poll(self, settings, tmp_path):
        adapter = AssemblyAIAdapter(settings)
        adapter.set_credential("key")
        audio_file = tmp_path / "call.mp3"
        audio_file.write_bytes(b"ID3")

        with patch("callscribe.providers.assemblyai._upload_sync", return_value={"upload_url": "https://cdn/x"}) as up:
            reference = await adapter.upload(str(audio_file))
        assert reference == "https://cdn/x"
        assert up.call_args.args[1] == "key"

        with patch("callscribe.providers.assemblyai._request_sync", return_value={"id": "t1"}) as req:
            job_id = await adapter.start_job(reference)
        assert job_id == "t1"
        assert req.call_args.kwargs["json"] == {"audio_url": "https://cdn/x", "speaker_labels": True}

        payload = {
            "id": "t1",
            "status": "completed",
            "text": "Hello. Hi.",
            "utterances": [
                {"speaker": "A", "text": "Hello.", "start": 0, "end": 900},
                {"speaker": "B", "text": "Hi.", "start": 1000, "end": 1500},
            ],
        }
        with patch("callscribe.providers.assemblyai._request_sync", return_value=payload):
            result = await adapter.poll(job_id)

        assert result.done
        segments = adapter.utterances_to_segments(result)
        assert [s.speaker_label for s in segments] == ["Speaker A", "Speaker B"]
        assert segments[1].start_sec == 1.0

    @pytest.mark.asyncio
    async def test_batch_requires_credential(self, settings):
        with pytest.raises(MissingCredential):
            await AssemblyAIAdapter(settings).poll("t1")

    def test_unauthorized_is_provider_error(self):
        response = httpx.Response(401, text="Unauthorized", request=httpx.Request("GET", "https://api.test"))
        client = MagicMock()
        client.request.return_value = response
        with patch("callscribe.providers.assemblyai.httpx.Client") as client_cls:
            client_cls.return_value.__enter__.return_value = client
            with pytest.raises(ProviderError) as exc:
                _request_sync("GET", "https://api.test/transcript/1", "bad-key")
        assert exc.value.code == "unauthorized"

    def test_parse_transcript_without_utterances(self):
        result = _parse_transcript({"id": "t2", "status": "processing"})
        assert result.status == "processing"
        assert not result.done
        assert result.utterances == []
