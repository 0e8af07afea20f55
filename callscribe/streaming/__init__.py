"""Streaming core: recognition events, session state machine, provider-switch monitor.

Only the event model is re-exported here; import StreamSession and SessionMonitor
from their modules (they depend on providers, which depend on events).
"""
from .events import KEEPALIVE_MESSAGE, EventKind, TranscriptEvent, start_recognition_message

__all__ = [
    "KEEPALIVE_MESSAGE",
    "EventKind",
    "TranscriptEvent",
    "start_recognition_message",
]
