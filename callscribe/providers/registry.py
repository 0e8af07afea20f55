"""
ProviderRegistry: provider descriptors, adapters, credentials and the active provider.

Adapters are checked against the capability interface when registered.
set_active() notifies subscribers; it never touches an open session.
"""
from __future__ import annotations

import logging
from typing import Callable

from callscribe.errors import InvalidProviderAdapter, UnknownProvider
from callscribe.providers.base import REQUIRED_METHODS, ProviderAdapter, ProviderDescriptor

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str | None, str], None]


class ProviderRegistry:
    def __init__(self) -> None:
        self._descriptors: dict[str, ProviderDescriptor] = {}
        self._adapters: dict[str, ProviderAdapter] = {}
        self._credentials: dict[str, str] = {}
        self._active: str | None = None
        self._listeners: list[ChangeListener] = []

    def register(self, descriptor: ProviderDescriptor, adapter: ProviderAdapter) -> None:
        if not isinstance(adapter, ProviderAdapter):
            raise InvalidProviderAdapter(
                f"{descriptor.id}: adapter {type(adapter).__name__} is not a ProviderAdapter"
            )
        missing = [m for m in REQUIRED_METHODS if not callable(getattr(adapter, m, None))]
        if missing:
            raise InvalidProviderAdapter(f"{descriptor.id}: adapter missing {', '.join(missing)}")
        if descriptor.id in self._descriptors:
            raise ValueError(f"Provider already registered: {descriptor.id}")
        self._descriptors[descriptor.id] = descriptor
        self._adapters[descriptor.id] = adapter
        if self._active is None:
            self._active = descriptor.id
        logger.debug("Registered provider %s", descriptor.id)

    def list(self) -> list[ProviderDescriptor]:
        return list(self._descriptors.values())

    def get_active(self) -> str | None:
        return self._active

    def set_active(self, provider_id: str) -> None:
        if provider_id not in self._descriptors:
            logger.error("Unknown transcription service: %s", provider_id)
            raise UnknownProvider(provider_id)
        previous = self._active
        if previous == provider_id:
            return
        self._active = provider_id
        logger.info("Switching transcription service: %s -> %s", previous, provider_id)
        for listener in list(self._listeners):
            try:
                listener(previous, provider_id)
            except Exception:
                logger.exception("Provider change listener failed")

    def get_descriptor(self, provider_id: str | None = None) -> ProviderDescriptor:
        key = provider_id or self._active
        if key is None or key not in self._descriptors:
            raise UnknownProvider(str(key))
        return self._descriptors[key]

    def get_adapter(self, provider_id: str | None = None) -> ProviderAdapter:
        key = provider_id or self._active
        if key is None or key not in self._adapters:
            raise UnknownProvider(str(key))
        return self._adapters[key]

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """listener(previous_id, new_id) on every active-provider change. Returns unsubscribe."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_credential(self, provider_id: str, key: str) -> None:
        adapter = self.get_adapter(provider_id)
        self._credentials[provider_id] = (key or "").strip()
        adapter.set_credential(key)

    def get_credential(self, provider_id: str | None = None) -> str:
        return self._credentials.get(provider_id or self._active or "", "")

    def has_credential(self, provider_id: str | None = None) -> bool:
        descriptor = self.get_descriptor(provider_id)
        if not descriptor.requires_credential:
            return True
        return bool(self._credentials.get(descriptor.id, "").strip())
