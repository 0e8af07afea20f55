"""
Inbound recognition events.

Providers deliver JSON messages keyed by "message_type"; times are milliseconds.
Unknown message types are not events and parse to None.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class EventKind(str, Enum):
    SESSION_BEGINS = "SessionBegins"
    CONNECTED = "Connected"
    PARTIAL = "PartialTranscript"
    FINAL = "FinalTranscript"
    TERMINATED = "SessionTerminated"
    ERROR = "Error"


@dataclass(frozen=True)
class TranscriptEvent:
    kind: EventKind
    text: str = ""
    start_ms: float | None = None
    end_ms: float | None = None
    error: str | None = None
    code: str | None = None
    speaker: str | None = None

    @property
    def start_sec(self) -> float | None:
        return None if self.start_ms is None else self.start_ms / 1000.0

    @property
    def end_sec(self) -> float | None:
        return None if self.end_ms is None else self.end_ms / 1000.0

    @classmethod
    def from_message(cls, message: dict[str, Any] | str | bytes) -> "TranscriptEvent | None":
        if isinstance(message, (str, bytes)):
            message = json.loads(message)
        if not isinstance(message, dict):
            return None
        try:
            kind = EventKind(message.get("message_type"))
        except ValueError:
            return None
        code = message.get("error_code", message.get("code"))
        speaker = message.get("speaker")
        return cls(
            kind=kind,
            text=message.get("text") or "",
            start_ms=message.get("audio_start"),
            end_ms=message.get("audio_end"),
            error=message.get("error"),
            code=None if code is None else str(code),
            speaker=None if speaker is None else str(speaker),
        )

    def to_message(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message_type": self.kind.value}
        if self.text:
            payload["text"] = self.text
        if self.start_ms is not None:
            payload["audio_start"] = self.start_ms
        if self.end_ms is not None:
            payload["audio_end"] = self.end_ms
        if self.error is not None:
            payload["error"] = self.error
        if self.speaker is not None:
            payload["speaker"] = self.speaker
        return payload


def start_recognition_message(sample_rate: int, audio_format: str = "pcm_s16le") -> dict[str, Any]:
    return {"message_type": "StartRecognition", "audio_format": audio_format, "sample_rate": sample_rate}


KEEPALIVE_MESSAGE: dict[str, Any] = {"message_type": "KeepAlive"}
