"""WebSocket wire protocol: inbound tagged union and outbound frames"""
from __future__ import annotations
import base64
import binascii
import json
from typing import Annotated, Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from .errors import ProtocolError, now_ms


class InitMessage(BaseModel):
    """Binds the connection to a (userId, friendId) session"""
    type: Literal["init"]
    userId: str = ""
    friendId: str = ""


class AudioMessage(BaseModel):
    """One complete pre-recorded clip, base64 encoded"""
    type: Literal["audio"]
    data: str

    def audio_bytes(self) -> bytes:
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError("Invalid message format", f"audio data is not valid base64: {e}") from e


InboundMessage = Annotated[Union[InitMessage, AudioMessage], Field(discriminator="type")]
_inbound = TypeAdapter(InboundMessage)


def decode_frame(raw: Union[str, bytes]) -> Union[InitMessage, AudioMessage]:
    """Parse one text frame; unknown tags and malformed shapes raise ProtocolError."""
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError("Invalid message format", f"invalid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ProtocolError("Invalid message format", "frame must be a JSON object")
    try:
        return _inbound.validate_python(payload)
    except ValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ProtocolError("Invalid message format", f"{loc}: {first.get('msg')}" if loc else first.get("msg")) from e


class ReadyMessage(BaseModel):
    type: Literal["ready"] = "ready"
    message: str = "Session initialized and ready to process audio"
    sessionId: str


class ProcessingMessage(BaseModel):
    type: Literal["processing"] = "processing"
    message: str = "Processing your audio..."


class ResponseMessage(BaseModel):
    type: Literal["response"] = "response"
    text: str
    transcript: str
    audioBuffer: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)

    @classmethod
    def from_result(cls, text: str, transcript: str, audio: Optional[bytes]) -> "ResponseMessage":
        return cls(
            text=text,
            transcript=transcript,
            audioBuffer=base64.b64encode(audio).decode() if audio else None,
        )


def frame(msg: BaseModel) -> Dict[str, Any]:
    return msg.model_dump()
