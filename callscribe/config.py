"""Application configuration. Loads from env vars."""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """App settings. Override via environment variables."""

    # Primary capture: float32 mono @ 44.1kHz, one chunk every 500ms
    CAPTURE_SAMPLE_RATE: int = 44100
    CAPTURE_CHUNK_MS: int = 500
    CAPTURE_CHANNELS: int = 1
    CAPTURE_DEVICE: str = ""  # empty = system default input

    # Fallback capture: int16 PCM @ 16kHz, shorter chunks
    FALLBACK_SAMPLE_RATE: int = 16000
    FALLBACK_CHUNK_MS: int = 250

    # Stream session timings (ms)
    KEEPALIVE_INTERVAL_MS: int = 15000
    CONNECT_HANDSHAKE_TIMEOUT_MS: int = 5000
    RECONCILE_INTERVAL_MS: int = 1000
    RECONNECT_SETTLE_MS: int = 500

    # Transcript aggregation
    TRANSCRIPT_MERGE_GAP_SECONDS: float = 2.0  # consecutive finals closer than this merge
    DEFAULT_SPEAKER_LABEL: str = "Speaker 1"

    # Session transcript storage: one .txt per recording, append-only (final events only).
    TRANSCRIPT_SAVE_ENABLED: bool = False
    TRANSCRIPT_DIR: str = "./transcripts"
    TRANSCRIPT_ADD_TIMESTAMPS: bool = True  # prefix each line with [MM:SS.ss]

    # Recorded artifact
    RECORDING_DIR: str = "./recordings"
    RECORDING_BITRATE: str = "128k"  # compressed formats only
    DECODE_PROBE_TIMEOUT_SECONDS: float = 3.0
    MIN_RECORDING_SECONDS: float = 0.1

    # Providers: "assemblyai" | "local"
    DEFAULT_PROVIDER: Literal["assemblyai", "local"] = "assemblyai"

    ASSEMBLYAI_API_KEY: str = ""
    ASSEMBLYAI_API_URL: str = "https://api.assemblyai.com/v2"
    ASSEMBLYAI_REALTIME_URL: str = "wss://api.assemblyai.com/v2/realtime/ws"
    ASSEMBLYAI_SAMPLE_RATE: int = 16000

    # Local Whisper (faster-whisper), loaded lazily on first use
    LOCAL_WHISPER_MODEL: str = "base"  # base | small | medium | large-v3
    LOCAL_WHISPER_DEVICE: Literal["cpu", "cuda"] = "cpu"
    LOCAL_WHISPER_COMPUTE_TYPE: Literal["int8", "float16"] = "int8"
    LOCAL_WHISPER_BEAM_SIZE: int = 1
    LOCAL_WHISPER_SAMPLE_RATE: int = 16000
    # Rolling window for the in-process stream
    LOCAL_WHISPER_WINDOW_SECONDS: float = 5.0
    LOCAL_WHISPER_STEP_SECONDS: float = 1.0
    LOCAL_WHISPER_MIN_CHUNK_SECONDS: float = 0.5
    LOCAL_WHISPER_COMMIT_AGE_SECONDS: float = 2.0  # segments ending before (audio_time - this) are final

    # Post-call summary (OpenAI chat completions), offered when the active provider supports it
    OPENAI_API_KEY: str = ""
    OPENAI_API_URL: str = "https://api.openai.com/v1"
    SUMMARY_MODEL: str = "gpt-3.5-turbo"
    SUMMARY_MAX_TOKENS: int = 500
    SUMMARY_TIMEOUT_SECONDS: float = 45.0

    # HTTP server (python -m callscribe)
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    # Logging: level (DEBUG, INFO, WARNING, ERROR); file path = also log to file (empty = console only).
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    class Config:
        env_file = ".env"
        extra = "ignore"


def get_settings() -> Settings:
    return Settings()
