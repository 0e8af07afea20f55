"""
RecordingController: one recording at a time.

Owns the capture pipeline, the StreamSession, the transcript aggregator and
the SessionMonitor, and exposes start / stop / reset / toggle-transcription,
elapsed time and the flat transcript text. Listeners are notified on every
transcript or connection-state change (the WebSocket endpoint pushes a
snapshot each time).

The segment list is cleared at the start of each recording. Final events are
also appended to the transcript file when TRANSCRIPT_SAVE_ENABLED is set.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from callscribe.audio.artifact import RecordingArtifact
from callscribe.audio.pipeline import AudioCapturePipeline
from callscribe.config import Settings, get_settings
from callscribe.errors import AudioCaptureFailure, MissingCredential, ValidationFailure
from callscribe.providers.registry import ProviderRegistry
from callscribe.streaming.events import EventKind, TranscriptEvent
from callscribe.streaming.monitor import SessionMonitor
from callscribe.streaming.session import ConnectionState, StreamSession
from callscribe.transcript.aggregator import TranscriptAggregator
from callscribe.transcript.models import Segment
from callscribe.transcript.writer import NoOpTranscriptWriter, TranscriptWriterBase, create_transcript_writer

logger = logging.getLogger(__name__)

Listener = Callable[[], None]


def format_elapsed(seconds: float) -> str:
    """Seconds -> MM:SS."""
    total = max(0, int(seconds))
    return f"{total // 60:02d}:{total % 60:02d}"


class RecordingController:
    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Settings | None = None,
        *,
        pipeline: AudioCapturePipeline | None = None,
        session: StreamSession | None = None,
        writer_factory: Callable[[str], TranscriptWriterBase] | None = None,
        settle_ms: int | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry
        self._pipeline = pipeline or AudioCapturePipeline(settings=self._settings)
        self._session = session or StreamSession(registry, self._settings)
        self._aggregator = TranscriptAggregator(
            default_speaker=self._settings.DEFAULT_SPEAKER_LABEL,
            merge_gap_sec=self._settings.TRANSCRIPT_MERGE_GAP_SECONDS,
        )
        self._monitor = SessionMonitor(
            registry, self._session, lambda: self._recording, self._settings, settle_ms=settle_ms
        )
        self._writer_factory = writer_factory or (lambda rid: create_transcript_writer(rid, self._settings))
        self._writer: TranscriptWriterBase = NoOpTranscriptWriter()

        self._recording = False
        self._recording_id: str | None = None
        self._started_at: float | None = None
        self._elapsed = 0.0
        self._error: str | None = None
        self._artifact: RecordingArtifact | None = None
        self._listeners: list[Listener] = []

        self._pipeline.attach_session(self._session)
        self._session.on_transcript(self._on_event)
        self._session.on_state_change(self._on_state_change)
        self._aggregator.subscribe(lambda _segments: self._notify())
        self._monitor.start()

    # --- read-only view ---------------------------------------------------

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def transcription_enabled(self) -> bool:
        return self._session.transcription_enabled

    @property
    def session(self) -> StreamSession:
        return self._session

    @property
    def pipeline(self) -> AudioCapturePipeline:
        return self._pipeline

    @property
    def monitor(self) -> SessionMonitor:
        return self._monitor

    @property
    def aggregator(self) -> TranscriptAggregator:
        return self._aggregator

    @property
    def segments(self) -> list[Segment]:
        return self._aggregator.segments

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def artifact(self) -> RecordingArtifact | None:
        return self._artifact

    @property
    def recording_id(self) -> str | None:
        return self._recording_id

    @property
    def elapsed_seconds(self) -> float:
        if self._recording and self._started_at is not None:
            return time.monotonic() - self._started_at
        return self._elapsed

    @property
    def formatted_time(self) -> str:
        return format_elapsed(self.elapsed_seconds)

    def transcript_text(self) -> str:
        return self._aggregator.flat_text()

    def snapshot(self) -> dict[str, Any]:
        active = self._registry.get_active()
        return {
            "recording": self._recording,
            "recording_id": self._recording_id,
            "transcription_enabled": self.transcription_enabled,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "formatted_time": self.formatted_time,
            "connection_state": self._session.state.value,
            "provider_id": active,
            "provider_name": self._registry.get_descriptor(active).name if active else None,
            "error": self._error,
            "segments": [s.to_dict() for s in self._aggregator.segments],
            "transcript": self.transcript_text(),
        }

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Recording listener failed")

    # --- session callbacks ------------------------------------------------

    def _on_event(self, event: TranscriptEvent) -> None:
        self._aggregator.apply(event)
        if event.kind is EventKind.FINAL and event.text.strip():
            self._writer.append_final(
                Segment(
                    speaker_label=event.speaker or self._settings.DEFAULT_SPEAKER_LABEL,
                    text=event.text.strip(),
                    start_sec=event.start_sec,
                    end_sec=event.end_sec,
                )
            )

    def _on_state_change(self, state: ConnectionState, error: Exception | None) -> None:
        if error is not None:
            self._error = str(error)
        elif state is ConnectionState.CONNECTED:
            self._error = None
        self._notify()

    # --- operations -------------------------------------------------------

    async def start(self, transcription_enabled: bool | None = None) -> None:
        if self._recording:
            raise AudioCaptureFailure("Recording already in progress")
        if transcription_enabled is not None:
            self._session.transcription_enabled = transcription_enabled
        self._error = None
        self._artifact = None
        self._aggregator.reset()

        try:
            await self._pipeline.start()
        except AudioCaptureFailure as e:
            self._error = str(e)
            self._notify()
            raise

        self._recording_id = uuid.uuid4().hex[:12]
        self._writer = self._writer_factory(self._recording_id)
        await self._writer.start()
        self._recording = True
        self._started_at = time.monotonic()
        self._elapsed = 0.0
        logger.info("Recording %s started (%s)", self._recording_id, self._pipeline.backend_name)
        self._notify()

        if self._session.transcription_enabled:
            await self._connect()

    async def _connect(self) -> None:
        active = self._registry.get_active()
        if active is not None and not self._registry.has_credential(active):
            self._error = str(MissingCredential(self._registry.get_descriptor(active).name))
            logger.warning(self._error)
            self._notify()
            return
        await self._session.connect()

    async def stop(self) -> RecordingArtifact:
        """Stop capture and the session; returns the validated artifact."""
        if not self._recording:
            raise AudioCaptureFailure("Not recording")
        self._elapsed = self.elapsed_seconds
        self._recording = False
        self._monitor.cancel_pending()
        await self._session.close()
        # drop a partial the provider never finalized
        self._aggregator.apply(TranscriptEvent(kind=EventKind.FINAL))
        try:
            self._artifact = await self._pipeline.stop()
        except (AudioCaptureFailure, ValidationFailure) as e:
            self._error = str(e)
            raise
        finally:
            await self._writer.close()
            self._writer = NoOpTranscriptWriter()
            self._notify()
        logger.info("Recording %s stopped: %s (%.2fs)", self._recording_id, self._artifact.filename,
                    self._artifact.duration_sec)
        return self._artifact

    async def reset(self) -> None:
        """Drop the current recording (if any) and clear the transcript."""
        if self._recording:
            self._recording = False
            await self._session.close()
            await self._pipeline.abort()
            await self._writer.close()
            self._writer = NoOpTranscriptWriter()
        self._recording_id = None
        self._started_at = None
        self._elapsed = 0.0
        self._error = None
        self._artifact = None
        self._aggregator.reset()

    async def toggle_transcription(self) -> bool:
        enabled = not self._session.transcription_enabled
        self._session.transcription_enabled = enabled
        logger.info("Transcription %s", "enabled" if enabled else "disabled")
        if self._recording:
            if enabled:
                if self._session.state in (ConnectionState.DISCONNECTED, ConnectionState.ERROR):
                    await self._connect()
            else:
                await self._session.close()
                self._aggregator.apply(TranscriptEvent(kind=EventKind.FINAL))
        self._notify()
        return enabled

    async def shutdown(self) -> None:
        self._monitor.stop()
        if self._recording:
            await self.reset()
        else:
            await self._session.close()
