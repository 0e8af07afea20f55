"""
Error taxonomy for the streaming core.

Session errors (ConnectionTimeout, TransportError, ProviderError) move a
StreamSession to Error and are surfaced to the user; nothing inside the session
retries them. Capture errors are raised only after every capture backend failed.
"""
from __future__ import annotations


class CallscribeError(RuntimeError):
    """Base for every error raised by callscribe."""


class ConnectionTimeout(CallscribeError):
    """Handshake did not reach Connected within the configured bound."""

    def __init__(self, timeout_ms: int, provider_id: str | None = None) -> None:
        self.timeout_ms = timeout_ms
        self.provider_id = provider_id
        super().__init__(
            f"Connection timeout - no session confirmation from {provider_id or 'provider'} "
            f"within {timeout_ms} ms"
        )


class TransportError(CallscribeError):
    """Transport-level failure (socket error, abnormal close)."""


class ProviderError(CallscribeError):
    """Provider sent an explicit Error event."""

    def __init__(self, code: str, message: str, provider_id: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_id = provider_id


class AudioCaptureFailure(CallscribeError):
    """Permission denied, device unavailable, or empty stream. Carries one reason per backend tried."""

    def __init__(self, message: str, reasons: list[str] | None = None) -> None:
        self.reasons = list(reasons or [])
        if self.reasons:
            message = f"{message}: " + "; ".join(self.reasons)
        super().__init__(message)


class ValidationFailure(CallscribeError):
    """Recorded artifact could not be decoded or is too short."""


class UnknownProvider(CallscribeError, KeyError):
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"Unknown transcription provider: {provider_id}")

    def __str__(self) -> str:
        return self.args[0]


class InvalidProviderAdapter(CallscribeError, TypeError):
    """Adapter does not implement the provider capability interface."""


class InvalidStateTransition(CallscribeError):
    def __init__(self, current: object, target: object) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal session transition {current} -> {target}")


class MissingCredential(CallscribeError):
    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"API key not set - please enter your {provider_id} API key")
