"""Error taxonomy & structured logging helpers"""
from __future__ import annotations
import time, json, logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger("lumi.relay")

# Reported to the client as error frames.
SURFACED = {"PROTOCOL_VIOLATION", "NOT_INITIALIZED", "BUSY", "INIT_FAIL", "TURN_FAIL", "INTERNAL"}
# Degraded to a safe default and only logged.
DEGRADED = {"ASR_FAIL", "EMBED_FAIL", "RECALL_FAIL", "LLM_TIMEOUT", "LLM_FAIL", "TTS_FAIL",
            "CHAT_LOG_FAIL", "MEMORY_STORE_FAIL"}

ALL_CODES = SURFACED | DEGRADED


class RelayError(Exception):
    code = "INTERNAL"


class ProtocolError(RelayError):
    code = "PROTOCOL_VIOLATION"

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class TranscriptionError(RelayError):
    code = "ASR_FAIL"


class GenerationError(RelayError):
    code = "LLM_FAIL"


class SynthesisError(RelayError):
    code = "TTS_FAIL"


class SessionStoreError(RelayError):
    code = "INIT_FAIL"


def now_ms() -> int:
    return int(time.time() * 1000)


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    payload = {"ts": time.time(), "event": event, **fields}
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def log_degraded(code: str, error: BaseException, **fields: Any) -> None:
    """Record a soft failure that was replaced by a default value."""
    log_event("degraded", level=logging.WARNING, code=code, error=repr(error), **fields)


def error_frame(message: str, details: Optional[str] = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"type": "error", "message": message, "timestamp": now_ms()}
    if details is not None:
        frame["details"] = details
    return frame


async def emit_error(send_json: Callable[[Dict[str, Any]], Awaitable[None]], message: str,
                     details: Optional[str] = None, code: str = "INTERNAL", **fields: Any) -> None:
    await send_json(error_frame(message, details))
    log_event("error", level=logging.WARNING, code=code, message=message, details=details, **fields)
