"""
Schemas for the provider API. Descriptor fields are serialized in camelCase,
which is what the UI reads (credentialLabel, credentialStorageKey, ...).
"""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from callscribe.providers.base import ProviderDescriptor


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderInfo(CamelModel):
    """One registered provider as shown to the UI."""

    id: str
    name: str
    supports_diarization: bool
    supports_summary: bool
    requires_credential: bool
    credential_storage_key: str
    credential_label: str
    credential_info_text: str
    credential_info_url: str
    active: bool = False
    has_credential: bool = False

    @classmethod
    def from_descriptor(cls, d: ProviderDescriptor, active: bool, has_credential: bool) -> "ProviderInfo":
        return cls(
            id=d.id,
            name=d.name,
            supports_diarization=d.supports_diarization,
            supports_summary=d.supports_summary,
            requires_credential=d.requires_credential,
            credential_storage_key=d.credential_storage_key,
            credential_label=d.credential_label,
            credential_info_text=d.credential_info_text,
            credential_info_url=d.credential_info_url,
            active=active,
            has_credential=has_credential,
        )


class ProviderList(CamelModel):
    active: str | None = None
    providers: list[ProviderInfo] = Field(default_factory=list)


class SetActiveProviderRequest(CamelModel):
    provider_id: str = Field(..., description="Registered provider id, e.g. 'assemblyai' or 'local'")


class SetCredentialRequest(CamelModel):
    key: str = Field(..., description="API key; empty string clears it")
