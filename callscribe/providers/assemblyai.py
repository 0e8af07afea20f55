"""
AssemblyAIAdapter: hosted recognition.

Streaming: one WebSocket per session. The transport reports a synthetic
"Connected" event as soon as the socket is open, then sends StartRecognition;
every inbound text frame is parsed and passed on in receipt order.
Batch: upload -> transcript job (speaker labels on) -> poll. HTTP calls are
blocking httpx requests run in the default executor.
"""
from __future__ import annotations

import asyncio
import functools
import json
import logging
from typing import Any

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosedOK, WebSocketException
from websockets.protocol import State

from callscribe.audio.encoding import AudioChunk, to_pcm16le
from callscribe.config import Settings, get_settings
from callscribe.errors import MissingCredential, ProviderError, TransportError
from callscribe.providers.base import (
    BatchResult,
    ErrorCallback,
    EventCallback,
    ProviderAdapter,
    Transport,
    Utterance,
)
from callscribe.streaming.events import EventKind, start_recognition_message

logger = logging.getLogger(__name__)

PROVIDER_ID = "assemblyai"

HTTP_TIMEOUT = 30.0


class WebSocketTransport(Transport):
    """Owns one socket and its receive task. Callbacks never raise into the loop."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str],
        on_event: EventCallback,
        on_error: ErrorCallback,
        opening_messages: list[dict[str, Any]] | None = None,
    ) -> None:
        self._url = url
        self._headers = headers
        self._on_event = on_event
        self._on_error = on_error
        self._opening_messages = opening_messages or []
        self._ws: ClientConnection | None = None
        self._task: asyncio.Task | None = None
        self._closing = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    async def _run(self) -> None:
        try:
            async with connect(self._url, additional_headers=self._headers) as ws:
                self._ws = ws
                self._on_event({"message_type": EventKind.CONNECTED.value})
                for message in self._opening_messages:
                    await ws.send(json.dumps(message))
                async for raw in ws:
                    if isinstance(raw, bytes):
                        continue
                    try:
                        message = json.loads(raw)
                    except ValueError:
                        logger.warning("Ignoring non-JSON frame from %s", self._url)
                        continue
                    self._on_event(message)
        except ConnectionClosedOK:
            if not self._closing:
                self._on_event({"message_type": EventKind.TERMINATED.value})
        except (OSError, WebSocketException) as e:
            if not self._closing:
                self._on_error(TransportError(f"WebSocket error: {e}"))
        else:
            if not self._closing:
                self._on_event({"message_type": EventKind.TERMINATED.value})
        finally:
            self._ws = None

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self._ws is None:
            raise TransportError("WebSocket is not open")
        await self._ws.send(json.dumps(payload))

    async def send_bytes(self, data: bytes) -> None:
        if self._ws is None:
            raise TransportError("WebSocket is not open")
        await self._ws.send(data)

    async def close(self) -> None:
        self._closing = True
        ws, task = self._ws, self._task
        if ws is not None:
            try:
                await ws.close()
            except WebSocketException as e:
                logger.debug("WebSocket close failed: %s", e)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None


def _request_sync(method: str, url: str, api_key: str, **kwargs: Any) -> dict[str, Any]:
    """Blocking HTTP call; run in executor."""
    headers = {"authorization": api_key}
    with httpx.Client(timeout=HTTP_TIMEOUT) as client:
        resp = client.request(method, url, headers=headers, **kwargs)
    if resp.status_code == 401:
        raise ProviderError("unauthorized", "Invalid API key - please check your AssemblyAI API key", PROVIDER_ID)
    if resp.status_code >= 400:
        raise ProviderError(str(resp.status_code), f"AssemblyAI request failed: {resp.text}", PROVIDER_ID)
    return resp.json()


def _upload_sync(url: str, api_key: str, path: str) -> dict[str, Any]:
    with open(path, "rb") as f:
        return _request_sync("POST", url, api_key, content=f.read())


def _parse_transcript(data: dict[str, Any]) -> BatchResult:
    utterances = [
        Utterance(
            text=u.get("text") or "",
            speaker=u.get("speaker"),
            start_ms=u.get("start"),
            end_ms=u.get("end"),
        )
        for u in data.get("utterances") or []
    ]
    return BatchResult(
        status=data.get("status", "error"),
        text=data.get("text") or "",
        utterances=utterances,
        error=data.get("error"),
        job_id=data.get("id"),
    )


class AssemblyAIAdapter(ProviderAdapter):
    def __init__(self, settings: Settings | None = None) -> None:
        super().__init__()
        self._settings = settings or get_settings()

    @property
    def sample_rate(self) -> int:
        return self._settings.ASSEMBLYAI_SAMPLE_RATE

    def _require_credential(self) -> str:
        if not self.credential:
            raise MissingCredential(PROVIDER_ID)
        return self.credential

    def open_stream(self, on_event: EventCallback, on_error: ErrorCallback) -> WebSocketTransport:
        api_key = self._require_credential()
        url = f"{self._settings.ASSEMBLYAI_REALTIME_URL}?sample_rate={self.sample_rate}"
        transport = WebSocketTransport(
            url,
            {"Authorization": api_key},
            on_event,
            on_error,
            opening_messages=[start_recognition_message(self.sample_rate)],
        )
        transport.start()
        logger.info("Opening AssemblyAI stream at %d Hz", self.sample_rate)
        return transport

    async def send_audio(self, handle: Transport, chunk: AudioChunk) -> None:
        if not handle.is_open:
            return
        await handle.send_bytes(to_pcm16le(chunk, self.sample_rate))

    async def _call(self, fn, *args) -> dict[str, Any]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def upload(self, path: str) -> str:
        api_key = self._require_credential()
        data = await self._call(_upload_sync, f"{self._settings.ASSEMBLYAI_API_URL}/upload", api_key, path)
        return data["upload_url"]

    async def start_job(self, reference: str) -> str:
        api_key = self._require_credential()
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(
            None,
            functools.partial(
                _request_sync,
                "POST",
                f"{self._settings.ASSEMBLYAI_API_URL}/transcript",
                api_key,
                json={"audio_url": reference, "speaker_labels": True},
            ),
        )
        return data["id"]

    async def poll(self, job_id: str) -> BatchResult:
        api_key = self._require_credential()
        data = await self._call(
            _request_sync, "GET", f"{self._settings.ASSEMBLYAI_API_URL}/transcript/{job_id}", api_key
        )
        return _parse_transcript(data)
