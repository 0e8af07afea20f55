"""
SessionMonitor: reconnects the StreamSession when the active provider changes,
and keeps a health record for the UI.

On a registry change while recording with transcription enabled: close the
current session, wait the settle delay, then connect against the new provider.
A newer change cancels a pending reconnect. Health tracking never retries.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

from callscribe.config import Settings, get_settings
from callscribe.errors import InvalidStateTransition
from callscribe.providers.registry import ProviderRegistry
from callscribe.streaming.session import ConnectionState, StreamSession

logger = logging.getLogger(__name__)


@dataclass
class ConnectionHealth:
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_error: str | None = None
    last_change_at: float | None = None
    reconnects: int = 0


class SessionMonitor:
    def __init__(
        self,
        registry: ProviderRegistry,
        session: StreamSession,
        is_recording: Callable[[], bool],
        settings: Settings | None = None,
        *,
        settle_ms: int | None = None,
    ) -> None:
        s = settings or get_settings()
        self._registry = registry
        self._session = session
        self._is_recording = is_recording
        self._settle_ms = settle_ms if settle_ms is not None else s.RECONNECT_SETTLE_MS
        self._health = ConnectionHealth()
        self._pending: asyncio.Task | None = None
        self._unsubscribes: list[Callable[[], None]] = []

    @property
    def health(self) -> ConnectionHealth:
        return self._health

    @property
    def reconnect_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def start(self) -> None:
        if self._unsubscribes:
            return
        self._unsubscribes = [
            self._registry.subscribe(self._on_provider_change),
            self._session.on_state_change(self._on_state_change),
        ]

    def stop(self) -> None:
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []
        self.cancel_pending()

    def cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def _should_stream(self) -> bool:
        return self._is_recording() and self._session.transcription_enabled

    def _on_provider_change(self, previous: str | None, current: str) -> None:
        if not self._should_stream():
            logger.debug("Provider changed %s -> %s while idle; nothing to reconnect", previous, current)
            return
        logger.info("Provider changed %s -> %s; reconnecting", previous, current)
        self.cancel_pending()
        self._pending = asyncio.create_task(self._reconnect(current))

    async def _reconnect(self, provider_id: str) -> None:
        await self._session.close(drain=False)
        await asyncio.sleep(self._settle_ms / 1000.0)
        if not self._should_stream():
            logger.info("Recording stopped during provider switch; not reconnecting")
            return
        if self._registry.get_active() != provider_id:
            return
        if self._session.state not in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
            logger.info("Session already %s after provider switch; not reconnecting", self._session.state.value)
            return
        self._health.reconnects += 1
        try:
            await self._session.connect()
        except InvalidStateTransition as e:
            logger.warning("Reconnect to %s skipped: %s", provider_id, e)

    def _on_state_change(self, state: ConnectionState, error: Exception | None) -> None:
        self._health.state = state
        self._health.last_change_at = time.time()
        if error is not None:
            self._health.last_error = str(error)
        elif state is ConnectionState.CONNECTED:
            self._health.last_error = None

    async def wait_idle(self) -> None:
        """Wait for a pending reconnect, if any."""
        task = self._pending
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)
