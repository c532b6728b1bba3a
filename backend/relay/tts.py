"""Speaker adapter - pyttsx3 synthesis of the reply to WAV bytes"""
from __future__ import annotations
import os
import asyncio
import logging
import tempfile
import threading
from .config import RelaySettings
from .errors import SynthesisError

try:
    import pyttsx3  # type: ignore
except Exception:  # pragma: no cover
    pyttsx3 = None

logger = logging.getLogger(__name__)


class Speaker:
    def __init__(self, settings: RelaySettings):
        self.settings = settings
        self.engine = None
        # pyttsx3 drives a single event loop per engine
        self._lock = threading.Lock()
        self.enabled = pyttsx3 is not None
        if self.enabled:
            try:
                self.engine = pyttsx3.init()
                self.engine.setProperty('rate', settings.tts_rate)
                self.engine.setProperty('volume', 0.9)
                logger.info("pyttsx3 TTS engine initialized successfully")
            except Exception as e:
                logger.error(f"Failed to initialize pyttsx3 engine: {e}")
                self.enabled = False
                self.engine = None

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            raise SynthesisError("Nothing to synthesize")
        if not self.enabled:
            raise SynthesisError("TTS engine not initialized")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._synth_blocking, text),
                timeout=self.settings.tts_timeout_s,
            )
        except SynthesisError:
            raise
        except asyncio.TimeoutError as e:
            raise SynthesisError(f"TTS timed out after {self.settings.tts_timeout_s}s") from e
        except Exception as e:
            raise SynthesisError(f"TTS failed: {e}") from e

    def _synth_blocking(self, text: str) -> bytes:
        with tempfile.NamedTemporaryFile(suffix='.wav', delete=False) as tmp:
            name = tmp.name
        try:
            with self._lock:
                self.engine.save_to_file(text, name)
                self.engine.runAndWait()
            with open(name, 'rb') as f:
                data = f.read()
        finally:
            try:
                os.unlink(name)
            except OSError:
                pass
        if not data:
            raise SynthesisError("TTS produced no audio")
        return data

    def close(self):
        try:
            if self.engine:
                # pyttsx3 has no explicit close; stop queued commands
                self.engine.stop()
        except Exception as e:
            logger.warning(f"Error stopping TTS engine: {e}")
