"""Pydantic schemas for API request/response."""
from callscribe.schemas.providers import (
    ProviderInfo,
    ProviderList,
    SetActiveProviderRequest,
    SetCredentialRequest,
)
from callscribe.schemas.recording import (
    ArtifactOut,
    RecordingStatus,
    SegmentOut,
    StartRecordingRequest,
    SummaryOut,
    TranscriptionToggle,
)

__all__ = [
    "ProviderInfo",
    "ProviderList",
    "SetActiveProviderRequest",
    "SetCredentialRequest",
    "ArtifactOut",
    "RecordingStatus",
    "SegmentOut",
    "StartRecordingRequest",
    "SummaryOut",
    "TranscriptionToggle",
]
