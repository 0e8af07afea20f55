"""Audio capture: encodings, backends, pipeline, artifact assembly."""
from .encoding import AudioChunk, EncodingDescriptor, negotiate_encoding, to_pcm16le
from .backends import CaptureBackend, Microphone, RawPcmBackend, SoundDeviceBackend
from .artifact import RecordingArtifact
from .pipeline import AudioCapturePipeline, BackendCandidate, default_candidates
from .rolling_buffer import RollingBuffer

__all__ = [
    "AudioChunk",
    "EncodingDescriptor",
    "negotiate_encoding",
    "to_pcm16le",
    "CaptureBackend",
    "Microphone",
    "RawPcmBackend",
    "SoundDeviceBackend",
    "RecordingArtifact",
    "AudioCapturePipeline",
    "BackendCandidate",
    "default_candidates",
    "RollingBuffer",
]
