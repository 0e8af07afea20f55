"""
LocalWhisperEngine: Whisper-compatible ASR using faster-whisper.

- Model loaded ONCE, lazily on first load(), and shared by every stream.
- Segments carry start/end so the stream can commit them by age.
- Runs in executor so event loop stays responsive.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

import numpy as np

from callscribe.asr.base import ASREngine, ASRResult, SegmentTimestamp
from callscribe.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Type for shared WhisperModel
WhisperModelT = Any


def _load_whisper_model(settings: Settings) -> WhisperModelT:
    try:
        from faster_whisper import WhisperModel
    except ImportError as err:
        raise ImportError(
            "faster-whisper is required for the local provider. "
            "Install with: pip install 'callscribe[whisper]'"
        ) from err
    return WhisperModel(
        settings.LOCAL_WHISPER_MODEL,
        device=settings.LOCAL_WHISPER_DEVICE,
        compute_type=settings.LOCAL_WHISPER_COMPUTE_TYPE,
    )


class LocalWhisperEngine(ASREngine):
    def __init__(self, model: WhisperModelT | None = None, settings: Settings | None = None) -> None:
        """model: preloaded WhisperModel; None = load on first load() call."""
        self._model = model
        self._settings = settings or get_settings()
        self._load_lock = asyncio.Lock()

    async def load(self) -> None:
        if self._model is not None:
            return
        async with self._load_lock:
            if self._model is None:
                loop = asyncio.get_running_loop()
                logger.info("Loading Whisper model %s", self._settings.LOCAL_WHISPER_MODEL)
                self._model = await loop.run_in_executor(None, _load_whisper_model, self._settings)

    def _transcribe_sync(self, audio: np.ndarray) -> ASRResult:
        if self._model is None:
            return ASRResult(text="", segments=None)

        segments, _ = self._model.transcribe(
            audio,
            beam_size=self._settings.LOCAL_WHISPER_BEAM_SIZE,
            vad_filter=True,
            vad_parameters=dict(min_silence_duration_ms=300, speech_pad_ms=100),
            condition_on_previous_text=False,
        )

        parts: list[str] = []
        seg_ts: list[SegmentTimestamp] = []
        for seg in segments:
            t = (seg.text or "").strip()
            if t:
                parts.append(t)
                seg_ts.append(SegmentTimestamp(start=seg.start, end=seg.end, text=t))

        return ASRResult(text=" ".join(parts).strip(), segments=seg_ts or None)

    async def transcribe(self, audio: np.ndarray) -> ASRResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._transcribe_sync, audio)

    @property
    def sample_rate(self) -> int:
        return self._settings.LOCAL_WHISPER_SAMPLE_RATE
