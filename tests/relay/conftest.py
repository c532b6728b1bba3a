import asyncio
from typing import Dict, List, Optional

import pytest

from app import assemble, create_app
from backend.relay.chat_log import ChatEntry
from backend.relay.config import RelaySettings
from backend.relay.errors import SynthesisError
from backend.relay.memory import VectorMemory
from backend.relay.orchestrator import ConversationOrchestrator

VALID_CLIP = b"\x1aE\xdf\xa3" + b"\x00" * 4096  # size of a short webm clip
REPLY_AUDIO = b"RIFF" + b"\x01" * 64


class FakeTranscriber:
    def __init__(self, text: str = "I went hiking today", error: Optional[Exception] = None, delay: float = 0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls = 0

    async def transcribe(self, audio: bytes) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.text


class FakeEmbedder:
    def __init__(self, vector: Optional[List[float]] = None, fail: bool = False):
        self.vector = vector if vector is not None else [1.0, 0.0, 0.0]
        self.fail = fail
        self.texts: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.texts.append(text)
        if self.fail:
            raise RuntimeError("embedding backend down")
        return list(self.vector)


class FakeResponder:
    def __init__(self, reply: str = "That sounds fun.", delay: float = 0.0, error: Optional[Exception] = None):
        self.reply = reply
        self.delay = delay
        self.error = error
        self.calls: List[tuple] = []

    async def generate(self, context, user_text: str) -> str:
        self.calls.append((list(context), user_text))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reply


class FakeSpeaker:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.texts: List[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        if self.fail:
            raise SynthesisError("voice unavailable")
        return REPLY_AUDIO


class FakeChatLog:
    def __init__(self, seed: Optional[Dict[str, List[ChatEntry]]] = None, fail_push: bool = False,
                 fail_recent: bool = False, recent_delay: float = 0.0, max_entries: int = 100):
        self.entries: Dict[str, List[ChatEntry]] = {k: list(v) for k, v in (seed or {}).items()}
        self.fail_push = fail_push
        self.fail_recent = fail_recent
        self.recent_delay = recent_delay
        self.max_entries = max_entries
        self.recent_calls = 0

    async def push(self, user_id: str, role: str, message: str) -> None:
        if self.fail_push:
            raise ConnectionError("redis unreachable")
        log = self.entries.setdefault(user_id, [])
        log.append(ChatEntry(role, message))
        del log[:-self.max_entries]

    async def recent(self, user_id: str, limit: Optional[int] = None) -> List[ChatEntry]:
        self.recent_calls += 1
        if self.recent_delay:
            await asyncio.sleep(self.recent_delay)
        if self.fail_recent:
            raise ConnectionError("redis unreachable")
        log = self.entries.get(user_id, [])
        return list(log[-limit:]) if limit else list(log)


class SlowMemory(VectorMemory):
    def __init__(self, delay: float, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    async def store(self, user_id, text, vector):
        await asyncio.sleep(self.delay)
        return await super().store(user_id, text, vector)


class FailingMemory(VectorMemory):
    async def recall(self, user_id, query):
        raise RuntimeError("vector index unavailable")

    async def store(self, user_id, text, vector):
        raise RuntimeError("vector index unavailable")


@pytest.fixture
def settings():
    return RelaySettings(llm_timeout_s=0.2, redis_url=None, openai_api_key="")


@pytest.fixture
def providers():
    return {
        "transcriber": FakeTranscriber(),
        "embedder": FakeEmbedder(),
        "responder": FakeResponder(),
        "speaker": FakeSpeaker(),
        "memory": VectorMemory(top_k=5),
        "chat_log": FakeChatLog(),
    }


@pytest.fixture
def make_orchestrator(settings, providers):
    def _make(**overrides):
        p = {**providers, **overrides}
        return ConversationOrchestrator(settings, p["transcriber"], p["embedder"], p["responder"],
                                        p["speaker"], p["memory"], p["chat_log"])
    return _make


@pytest.fixture
def make_app(settings, providers):
    def _make(**overrides):
        components = assemble(settings, **{**providers, **overrides})
        return create_app(components), components
    return _make
