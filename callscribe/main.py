"""
FastAPI app: provider selection, recording control and a live transcript feed.

HTTP API:
- GET  /api/providers                   descriptors (camelCase), active id, credential flags
- PUT  /api/providers/active            { providerId }  -> 404 when unknown
- PUT  /api/providers/{id}/credential   { key }
- POST /api/recording/start|stop|reset|transcription
- POST /api/recording/summary          summary + action items of the final transcript -> 409 when
                                        the active provider does not offer summaries
- GET  /api/recording                   status snapshot
WebSocket /ws/transcript: sends the status snapshot as JSON on connect and on
every transcript or connection-state change.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect

from callscribe.config import get_settings
from callscribe.errors import AudioCaptureFailure, UnknownProvider, ValidationFailure
from callscribe.logging_config import configure_logging
from callscribe.providers import default_registry
from callscribe.providers.registry import ProviderRegistry
from callscribe.recorder import RecordingController
from callscribe.schemas import (
    ArtifactOut,
    ProviderInfo,
    ProviderList,
    RecordingStatus,
    SetActiveProviderRequest,
    SetCredentialRequest,
    StartRecordingRequest,
    SummaryOut,
    TranscriptionToggle,
)
from callscribe.services import SummaryService

logger = logging.getLogger(__name__)


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_controller(request: Request) -> RecordingController:
    return request.app.state.controller


def get_summary_service(request: Request) -> SummaryService:
    return request.app.state.summary_service


def _status(controller: RecordingController) -> RecordingStatus:
    return RecordingStatus.model_validate(controller.snapshot())


def _provider_list(registry: ProviderRegistry) -> ProviderList:
    active = registry.get_active()
    return ProviderList(
        active=active,
        providers=[
            ProviderInfo.from_descriptor(d, d.id == active, registry.has_credential(d.id))
            for d in registry.list()
        ],
    )


def create_app(
    registry: ProviderRegistry | None = None,
    controller: RecordingController | None = None,
    summary_service: SummaryService | None = None,
) -> FastAPI:
    """registry/controller/summary_service: prebuilt instances; None = built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_logging(settings)
        reg = registry or default_registry(settings)
        app.state.registry = reg
        app.state.controller = controller or RecordingController(reg, settings)
        app.state.summary_service = summary_service or SummaryService(settings)
        logger.info("callscribe ready (active provider: %s)", reg.get_active())
        yield
        await app.state.controller.shutdown()

    app = FastAPI(
        title="callscribe",
        description="Live speaker-attributed transcription with switchable providers",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/providers", response_model=ProviderList)
    async def list_providers(registry: ProviderRegistry = Depends(get_registry)) -> ProviderList:
        return _provider_list(registry)

    @app.put("/api/providers/active", response_model=ProviderList)
    async def set_active_provider(
        body: SetActiveProviderRequest,
        registry: ProviderRegistry = Depends(get_registry),
    ) -> ProviderList:
        try:
            registry.set_active(body.provider_id)
        except UnknownProvider as e:
            raise HTTPException(status_code=404, detail=str(e))
        return _provider_list(registry)

    @app.put("/api/providers/{provider_id}/credential", response_model=ProviderList)
    async def set_provider_credential(
        provider_id: str,
        body: SetCredentialRequest,
        registry: ProviderRegistry = Depends(get_registry),
    ) -> ProviderList:
        try:
            registry.set_credential(provider_id, body.key)
        except UnknownProvider as e:
            raise HTTPException(status_code=404, detail=str(e))
        return _provider_list(registry)

    @app.get("/api/recording", response_model=RecordingStatus)
    async def recording_status(controller: RecordingController = Depends(get_controller)) -> RecordingStatus:
        return _status(controller)

    @app.post("/api/recording/start", response_model=RecordingStatus)
    async def start_recording(
        body: StartRecordingRequest | None = None,
        controller: RecordingController = Depends(get_controller),
    ) -> RecordingStatus:
        try:
            await controller.start(body.transcription_enabled if body else None)
        except AudioCaptureFailure as e:
            raise HTTPException(status_code=422, detail=str(e))
        return _status(controller)

    @app.post("/api/recording/stop", response_model=ArtifactOut)
    async def stop_recording(controller: RecordingController = Depends(get_controller)) -> ArtifactOut:
        try:
            artifact = await controller.stop()
        except (AudioCaptureFailure, ValidationFailure) as e:
            raise HTTPException(status_code=422, detail=str(e))
        return ArtifactOut(
            filename=artifact.filename,
            path=artifact.path,
            codec=artifact.encoding.codec,
            sample_rate=artifact.encoding.sample_rate,
            duration_sec=artifact.duration_sec,
            size_bytes=artifact.size_bytes,
            chunk_count=artifact.chunk_count,
        )

    @app.post("/api/recording/reset", response_model=RecordingStatus)
    async def reset_recording(controller: RecordingController = Depends(get_controller)) -> RecordingStatus:
        await controller.reset()
        return _status(controller)

    @app.post("/api/recording/transcription", response_model=TranscriptionToggle)
    async def toggle_transcription(
        controller: RecordingController = Depends(get_controller),
    ) -> TranscriptionToggle:
        enabled = await controller.toggle_transcription()
        return TranscriptionToggle(transcription_enabled=enabled)

    @app.post("/api/recording/summary", response_model=SummaryOut)
    async def summarize_recording(
        registry: ProviderRegistry = Depends(get_registry),
        controller: RecordingController = Depends(get_controller),
        summaries: SummaryService = Depends(get_summary_service),
    ) -> SummaryOut:
        try:
            descriptor = registry.get_descriptor()
        except UnknownProvider as e:
            raise HTTPException(status_code=404, detail=str(e))
        if not descriptor.supports_summary:
            raise HTTPException(status_code=409, detail=f"{descriptor.name} does not offer call summaries")
        result = await summaries.summarize(controller.transcript_text())
        return SummaryOut(
            provider_id=descriptor.id,
            summary=result.summary,
            action_items=result.action_items,
            text=result.text,
            generated=result.generated,
        )

    @app.websocket("/ws/transcript")
    async def websocket_transcript(websocket: WebSocket) -> None:
        await websocket.accept()
        controller: RecordingController = websocket.app.state.controller
        changed = asyncio.Event()
        unsubscribe = controller.subscribe(changed.set)

        async def push() -> None:
            while True:
                await websocket.send_json(_status(controller).model_dump(by_alias=True))
                await changed.wait()
                changed.clear()

        pusher = asyncio.create_task(push())
        try:
            while True:
                msg = await websocket.receive()
                if msg.get("type") == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        finally:
            unsubscribe()
            pusher.cancel()
            try:
                await pusher
            except (asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                pass

    return app


app = create_app()
