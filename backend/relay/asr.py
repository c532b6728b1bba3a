"""Transcriber adapter - faster-whisper decode of one complete clip"""
from __future__ import annotations
import io
import time
import asyncio
import logging
import threading
from typing import Any, Optional
from .config import RelaySettings
from .errors import TranscriptionError, log_event

try:
    from faster_whisper import WhisperModel  # type: ignore
except Exception:  # pragma: no cover
    WhisperModel = None  # type: ignore

logger = logging.getLogger(__name__)


def _canonical_model_name(name: str) -> str:
    # Normalize names like 'small-int8' -> 'small'
    if name.endswith('-int8'):
        return name.rsplit('-int8', 1)[0]
    return name


class Transcriber:
    def __init__(self, settings: RelaySettings):
        self.settings = settings
        self._model_lock = threading.Lock()
        self._model: Any = None
        self._model_load_failed = False

    def load_model(self) -> Optional[Any]:
        """Lazy-load the Whisper model once; remember a failed load."""
        if self._model is not None:
            return self._model
        if WhisperModel is None:
            self._model_load_failed = True
            return None
        with self._model_lock:
            if self._model is None and not self._model_load_failed:
                try:
                    name = _canonical_model_name(self.settings.whisper_model)
                    self._model = WhisperModel(name, device="cpu", compute_type="int8")
                    logger.info(f"Whisper model '{name}' loaded")
                except Exception as e:
                    logger.error(f"Failed to load Whisper model: {e}")
                    self._model_load_failed = True
                    self._model = None
        return self._model

    @property
    def model_loaded(self) -> bool:
        return self._model is not None

    def _transcribe_blocking(self, audio: bytes) -> str:
        model = self.load_model()
        if model is None:
            raise TranscriptionError("ASR model unavailable")
        start = time.time()
        # Container formats (webm/opus, wav, mp3) are decoded by faster-whisper itself.
        segments, _info = model.transcribe(io.BytesIO(audio), language=self.settings.whisper_language)
        text = " ".join(seg.text.strip() for seg in segments).strip()
        log_event("asr_decode", bytes=len(audio), chars=len(text), ms=round((time.time() - start) * 1000.0, 2))
        return text

    async def transcribe(self, audio: bytes) -> str:
        if not audio:
            raise TranscriptionError("Audio buffer is empty")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._transcribe_blocking, audio),
                timeout=self.settings.asr_timeout_s,
            )
        except TranscriptionError:
            raise
        except asyncio.TimeoutError as e:
            raise TranscriptionError(f"Transcription timed out after {self.settings.asr_timeout_s}s") from e
        except Exception as e:
            raise TranscriptionError(f"Failed to transcribe audio: {e}") from e
