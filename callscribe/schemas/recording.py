"""Schemas for the recording API and the transcript snapshot pushed over WebSocket."""
from __future__ import annotations

from pydantic import Field

from callscribe.schemas.providers import CamelModel


class StartRecordingRequest(CamelModel):
    transcription_enabled: bool | None = Field(
        None, description="Override the current transcription toggle for this recording"
    )


class SegmentOut(CamelModel):
    speaker_label: str
    text: str
    start_sec: float | None = None
    end_sec: float | None = None
    partial: bool = False


class RecordingStatus(CamelModel):
    recording: bool
    recording_id: str | None = None
    transcription_enabled: bool
    elapsed_seconds: float
    formatted_time: str
    connection_state: str
    provider_id: str | None = None
    provider_name: str | None = None
    error: str | None = None
    segments: list[SegmentOut] = Field(default_factory=list)
    transcript: str = ""


class ArtifactOut(CamelModel):
    filename: str
    path: str
    codec: str
    sample_rate: int
    duration_sec: float
    size_bytes: int
    chunk_count: int


class TranscriptionToggle(CamelModel):
    transcription_enabled: bool


class SummaryOut(CamelModel):
    provider_id: str
    summary: str = Field(..., description="Summary paragraph")
    action_items: list[str] = Field(default_factory=list, description="Numbered action items, in order")
    text: str = Field(..., description="Full model output (or the fallback text)")
    generated: bool = Field(..., description="False when a fallback text was returned")
