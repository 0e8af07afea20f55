"""Recognition providers: capability interface, registry, bundled adapters."""
from __future__ import annotations

from callscribe.config import Settings, get_settings

from .base import BatchResult, ProviderAdapter, ProviderDescriptor, Transport, Utterance
from .registry import ProviderRegistry

ASSEMBLYAI = ProviderDescriptor(
    id="assemblyai",
    name="AssemblyAI",
    supports_diarization=True,
    supports_summary=True,
    requires_credential=True,
    credential_storage_key="assemblyai_api_key",
    credential_label="AssemblyAI API Key",
    credential_info_text="Get your API key from the AssemblyAI dashboard.",
    credential_info_url="https://www.assemblyai.com/dashboard/signup",
)

LOCAL_WHISPER = ProviderDescriptor(
    id="local",
    name="Local Whisper",
    supports_diarization=False,
    supports_summary=False,
    requires_credential=False,
    credential_label="",
    credential_info_text="Runs on this machine; no API key needed.",
)


def default_registry(settings: Settings | None = None) -> ProviderRegistry:
    """Registry with the bundled adapters, credentials from settings, DEFAULT_PROVIDER active."""
    from .assemblyai import AssemblyAIAdapter
    from .local import LocalWhisperAdapter

    s = settings or get_settings()
    registry = ProviderRegistry()
    registry.register(ASSEMBLYAI, AssemblyAIAdapter(s))
    registry.register(LOCAL_WHISPER, LocalWhisperAdapter(settings=s))
    if s.ASSEMBLYAI_API_KEY:
        registry.set_credential(ASSEMBLYAI.id, s.ASSEMBLYAI_API_KEY)
    registry.set_active(s.DEFAULT_PROVIDER)
    return registry


__all__ = [
    "ASSEMBLYAI",
    "LOCAL_WHISPER",
    "BatchResult",
    "ProviderAdapter",
    "ProviderDescriptor",
    "ProviderRegistry",
    "Transport",
    "Utterance",
    "default_registry",
]
