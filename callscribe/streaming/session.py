"""
StreamSession: one supervised connection to the active provider.

States: Disconnected -> Connecting -> Connected, with Error reachable from
Connecting/Connected. Only connect() (caller or SessionMonitor) leaves
Disconnected/Error; nothing in here retries.

Timers (asyncio tasks, all cancelled synchronously on Disconnected/Error):
- handshake watchdog: Connecting for longer than the handshake timeout -> Error.
- reconcile: every RECONCILE_INTERVAL_MS, open transport while Connecting ->
  Connected; closed transport while Connected -> Disconnected.
- keepalive: every KEEPALIVE_INTERVAL_MS while Connected; failures are logged only.

Each connect() bumps a token bound into the transport callbacks, so events
from a transport that is no longer current are dropped. close() lets the
transport flush its tail first: recognition events it emits while draining are
still delivered, anything else is ignored. A provider switch or an error
discards the transport immediately.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine

from callscribe.audio.encoding import AudioChunk
from callscribe.config import Settings, get_settings
from callscribe.errors import (
    CallscribeError,
    ConnectionTimeout,
    InvalidStateTransition,
    ProviderError,
    TransportError,
)
from callscribe.providers.base import ProviderAdapter, Transport
from callscribe.providers.registry import ProviderRegistry
from callscribe.streaming.events import KEEPALIVE_MESSAGE, EventKind, TranscriptEvent

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


_ALLOWED: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.ERROR, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED, ConnectionState.ERROR}),
    ConnectionState.ERROR: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
}

StateListener = Callable[[ConnectionState, "Exception | None"], None]
EventListener = Callable[[TranscriptEvent], None]


@dataclass
class Session:
    """Bookkeeping for one connect() attempt."""

    id: str
    provider_id: str
    created_at: float
    last_activity_at: float
    keepalive_interval_ms: int
    connect_handshake_timeout_ms: int
    state: ConnectionState = ConnectionState.DISCONNECTED


class StreamSession:
    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Settings | None = None,
        *,
        keepalive_interval_ms: int | None = None,
        handshake_timeout_ms: int | None = None,
        reconcile_interval_ms: int | None = None,
        transcription_enabled: bool = True,
    ) -> None:
        s = settings or get_settings()
        self._registry = registry
        self._keepalive_ms = keepalive_interval_ms if keepalive_interval_ms is not None else s.KEEPALIVE_INTERVAL_MS
        self._handshake_ms = handshake_timeout_ms if handshake_timeout_ms is not None else s.CONNECT_HANDSHAKE_TIMEOUT_MS
        self._reconcile_ms = reconcile_interval_ms if reconcile_interval_ms is not None else s.RECONCILE_INTERVAL_MS
        self._transcription_enabled = transcription_enabled

        self._state = ConnectionState.DISCONNECTED
        self._session: Session | None = None
        self._adapter: ProviderAdapter | None = None
        self._transport: Transport | None = None
        self._closing_task: asyncio.Task | None = None
        self._draining = False
        self._token = 0
        self._timers: set[asyncio.Task] = set()
        self._last_error: Exception | None = None
        self._state_listeners: list[StateListener] = []
        self._event_listeners: list[EventListener] = []

    # --- read-only view ---------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    @property
    def transcription_enabled(self) -> bool:
        return self._transcription_enabled

    @transcription_enabled.setter
    def transcription_enabled(self, enabled: bool) -> None:
        self._transcription_enabled = bool(enabled)

    # --- listeners --------------------------------------------------------

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        self._state_listeners.append(listener)
        return functools.partial(_remove, self._state_listeners, listener)

    def on_transcript(self, listener: EventListener) -> Callable[[], None]:
        """listener(event) for PartialTranscript/FinalTranscript from the current transport."""
        self._event_listeners.append(listener)
        return functools.partial(_remove, self._event_listeners, listener)

    # --- state machine ----------------------------------------------------

    def _transition(self, target: ConnectionState, error: Exception | None = None) -> None:
        current = self._state
        if target not in _ALLOWED[current]:
            raise InvalidStateTransition(current.value, target.value)
        self._state = target
        if self._session is not None:
            self._session.state = target
            self._session.last_activity_at = time.time()

        if target in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            self._cancel_timers()
        elif target is ConnectionState.CONNECTED:
            self._start_timer(self._keepalive_loop(self._token))

        if error is not None:
            logger.warning("Session %s -> %s: %s", current.value, target.value, error)
        else:
            logger.info("Session %s -> %s", current.value, target.value)
        for listener in list(self._state_listeners):
            try:
                listener(target, error)
            except Exception:
                logger.exception("Session state listener failed")

    def _start_timer(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for task in list(self._timers):
            if task is not current:
                task.cancel()
        self._timers.clear()

    def _detach_transport(self) -> None:
        """Invalidate the current transport and close it in the background."""
        self._token += 1
        adapter, transport = self._adapter, self._transport
        self._adapter, self._transport = None, None
        if transport is None:
            return
        previous = self._closing_task
        self._closing_task = asyncio.create_task(self._close_transport(adapter, transport, previous))

    async def _close_transport(
        self, adapter: ProviderAdapter | None, transport: Transport, previous: asyncio.Task | None
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            if adapter is not None:
                await adapter.close(transport)
            else:
                await transport.close()
        except Exception as e:
            logger.warning("Transport close failed: %s", e)

    def _fail(self, error: Exception) -> None:
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return
        self._last_error = error
        self._detach_transport()
        self._transition(ConnectionState.ERROR, error)

    # --- public operations ------------------------------------------------

    async def connect(self) -> Session | None:
        """
        Open a new Session against the active provider. Returns None when
        transcription is disabled or no provider is active. Handshake failures are
        reported through state (Error + last_error), not raised.
        """
        if not self._transcription_enabled:
            logger.info("Transcription disabled; not connecting")
            return None
        provider_id = self._registry.get_active()
        if provider_id is None:
            logger.warning("No active transcription provider; not connecting")
            return None
        if ConnectionState.CONNECTING not in _ALLOWED[self._state]:
            raise InvalidStateTransition(self._state.value, ConnectionState.CONNECTING.value)

        # Never more than one open transport
        await self._drain_closing()
        if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            raise InvalidStateTransition(self._state.value, ConnectionState.CONNECTING.value)

        adapter = self._registry.get_adapter(provider_id)
        self._token += 1
        token = self._token
        now = time.time()
        self._session = Session(
            id=uuid.uuid4().hex[:12],
            provider_id=provider_id,
            created_at=now,
            last_activity_at=now,
            keepalive_interval_ms=self._keepalive_ms,
            connect_handshake_timeout_ms=self._handshake_ms,
        )
        self._last_error = None
        self._transition(ConnectionState.CONNECTING)
        self._start_timer(self._handshake_watchdog(token))
        self._start_timer(self._reconcile_loop(token))

        try:
            transport = adapter.open_stream(
                functools.partial(self._handle_message, token),
                functools.partial(self._handle_error, token),
            )
        except Exception as e:
            self._fail(e if isinstance(e, CallscribeError) else TransportError(str(e)))
            return self._session
        if token != self._token:
            # Failed or closed while opening
            await self._close_transport(adapter, transport, None)
            return self._session
        self._adapter, self._transport = adapter, transport
        logger.info("Session %s opened against %s", self._session.id, provider_id)
        return self._session

    async def close(self, *, drain: bool = True) -> None:
        """
        Tear down: timers cancelled before this returns, transport close awaited.

        With drain (the default) the transport stays current while it closes, so
        the final results it flushes still reach the transcript listeners. With
        drain=False it is discarded first and nothing it emits is delivered.
        """
        self._cancel_timers()
        if not drain:
            self._detach_transport()
        adapter, transport = self._adapter, self._transport
        self._adapter, self._transport = None, None
        try:
            if transport is not None:
                await self._drain_closing()
                self._draining = True
                self._closing_task = asyncio.create_task(self._close_transport(adapter, transport, None))
                await self._drain_closing()
        finally:
            self._draining = False
            self._token += 1
            if self._state is not ConnectionState.DISCONNECTED:
                self._transition(ConnectionState.DISCONNECTED)
        await self._drain_closing()

    async def _drain_closing(self) -> None:
        task = self._closing_task
        if task is not None:
            # cancelling the caller must not cancel the close
            await asyncio.wait({task})
            if self._closing_task is task:
                self._closing_task = None

    async def send_audio(self, chunk: AudioChunk) -> bool:
        """Forward a chunk while Connected; otherwise drop it. Returns True when sent."""
        adapter, transport = self._adapter, self._transport
        if self._state is not ConnectionState.CONNECTED or adapter is None or transport is None:
            logger.debug("Dropping chunk %d (session %s)", chunk.sequence, self._state.value)
            return False
        token = self._token
        try:
            await adapter.send_audio(transport, chunk)
        except Exception as e:
            self._handle_error(token, e)
            return False
        return True

    # --- transport callbacks ----------------------------------------------

    def _handle_message(self, token: int, message: dict[str, Any] | str | bytes) -> None:
        if token != self._token:
            logger.debug("Discarding event from stale transport")
            return
        try:
            event = TranscriptEvent.from_message(message)
        except ValueError:
            logger.warning("Discarding undecodable provider message")
            return
        if event is None:
            return
        if self._session is not None:
            self._session.last_activity_at = time.time()

        kind = event.kind
        if self._draining and kind not in (EventKind.PARTIAL, EventKind.FINAL):
            logger.debug("Ignoring %s while the transport drains", kind.value)
            return
        if kind in (EventKind.SESSION_BEGINS, EventKind.CONNECTED):
            if self._state is ConnectionState.CONNECTING:
                self._transition(ConnectionState.CONNECTED)
        elif kind in (EventKind.PARTIAL, EventKind.FINAL):
            for listener in list(self._event_listeners):
                try:
                    listener(event)
                except Exception:
                    logger.exception("Transcript listener failed")
        elif kind is EventKind.TERMINATED:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                self._detach_transport()
                self._transition(ConnectionState.DISCONNECTED)
        elif kind is EventKind.ERROR:
            provider_id = self._session.provider_id if self._session else None
            message_text = event.error or event.text or "Provider reported an error"
            self._fail(ProviderError(event.code or "provider_error", message_text, provider_id))

    def _handle_error(self, token: int, error: Exception) -> None:
        if token != self._token:
            logger.debug("Discarding error from stale transport: %s", error)
            return
        if self._draining:
            logger.warning("Transport failed while draining: %s", error)
            return
        if not isinstance(error, CallscribeError):
            error = TransportError(str(error))
        self._fail(error)

    # --- timers -------------------------------------------------------------

    async def _handshake_watchdog(self, token: int) -> None:
        await asyncio.sleep(self._handshake_ms / 1000.0)
        if token == self._token and self._state is ConnectionState.CONNECTING:
            provider_id = self._session.provider_id if self._session else None
            self._fail(ConnectionTimeout(self._handshake_ms, provider_id))

    async def _reconcile_loop(self, token: int) -> None:
        while token == self._token:
            await asyncio.sleep(self._reconcile_ms / 1000.0)
            transport = self._transport
            if token != self._token or transport is None:
                continue
            if self._state is ConnectionState.CONNECTING and transport.is_open:
                logger.info("Transport open while connecting; forcing Connected")
                self._transition(ConnectionState.CONNECTED)
            elif self._state is ConnectionState.CONNECTED and not transport.is_open:
                logger.warning("Transport closed while connected")
                self._detach_transport()
                self._transition(ConnectionState.DISCONNECTED)
                return

    async def _keepalive_loop(self, token: int) -> None:
        while True:
            await asyncio.sleep(self._keepalive_ms / 1000.0)
            transport = self._transport
            if token != self._token or transport is None or not transport.is_open:
                return
            try:
                await transport.send_json(KEEPALIVE_MESSAGE)
                logger.debug("Keepalive sent")
            except Exception as e:
                logger.warning("Keepalive send failed: %s", e)


def _remove(listeners: list, listener: Any) -> None:
    if listener in listeners:
        listeners.remove(listener)
