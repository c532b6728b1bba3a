"""Relay configuration and turn stages"""
from __future__ import annotations
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Optional
from pydantic_settings import BaseSettings


class TurnStage(str, Enum):
    RECEIVED = "RECEIVED"
    TRANSCRIBING = "TRANSCRIBING"
    RECALLING = "RECALLING"
    GENERATING = "GENERATING"
    SPEAKING = "SPEAKING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


# Client-side end-to-end processing deadline; generation must give up before it.
CLIENT_PROCESSING_DEADLINE_S = 30.0


class RelaySettings(BaseSettings):
    # Pipeline
    min_audio_bytes: int = 1000
    context_window: int = 10
    chat_log_max_entries: int = 100
    session_seed_entries: int = 10
    prompt_context_items: int = 5
    memory_top_k: int = 5

    # Provider deadlines
    llm_timeout_s: float = 15.0
    embed_timeout_s: float = 10.0
    asr_timeout_s: float = 20.0
    tts_timeout_s: float = 10.0

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    openai_max_tokens: int = 150
    openai_temperature: float = 0.7

    # ASR / TTS
    whisper_model: str = "small-int8"
    whisper_language: str = "en"
    tts_rate: int = 190

    # Short-term chat log
    redis_url: Optional[str] = "redis://localhost:6379/0"

    # Server
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.validate_settings()

    def validate_settings(self) -> None:
        errs = []
        if self.min_audio_bytes < 0:
            errs.append(f"min_audio_bytes must be >=0 (got {self.min_audio_bytes})")
        if self.context_window < 2 or self.context_window % 2:
            errs.append(f"context_window must be an even number >=2 (got {self.context_window})")
        if not (1 <= self.chat_log_max_entries <= 10000):
            errs.append(f"chat_log_max_entries must be 1-10000 (got {self.chat_log_max_entries})")
        if self.session_seed_entries < 0:
            errs.append("session_seed_entries must be >=0")
        if self.prompt_context_items < 0:
            errs.append("prompt_context_items must be >=0")
        if self.memory_top_k < 1:
            errs.append("memory_top_k must be >=1")
        if not (0 < self.llm_timeout_s < CLIENT_PROCESSING_DEADLINE_S):
            errs.append(f"llm_timeout_s must be >0 and <{CLIENT_PROCESSING_DEADLINE_S} (got {self.llm_timeout_s})")
        for name in ("embed_timeout_s", "asr_timeout_s", "tts_timeout_s"):
            if getattr(self, name) <= 0:
                errs.append(f"{name} must be >0")
        if errs:
            raise ValueError("Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errs))

    def as_dict(self) -> Dict[str, Any]:
        """Non-secret view used by the config endpoint."""
        return {
            "min_audio_bytes": self.min_audio_bytes,
            "context_window": self.context_window,
            "chat_log_max_entries": self.chat_log_max_entries,
            "session_seed_entries": self.session_seed_entries,
            "prompt_context_items": self.prompt_context_items,
            "memory_top_k": self.memory_top_k,
            "llm_timeout_s": self.llm_timeout_s,
            "embed_timeout_s": self.embed_timeout_s,
            "asr_timeout_s": self.asr_timeout_s,
            "tts_timeout_s": self.tts_timeout_s,
            "openai_model": self.openai_model,
            "openai_embedding_model": self.openai_embedding_model,
            "whisper_model": self.whisper_model,
            "llm_enabled": bool(self.openai_api_key),
        }


@lru_cache(maxsize=1)
def load_relay_config() -> RelaySettings:
    return RelaySettings()
