import asyncio
import random
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from backend.relay.config import RelaySettings
from backend.relay.errors import GenerationError
from backend.relay.llm import (FALLBACK_REPLIES, Embedder, Responder, build_prompt, fallback_reply,
                               normalize_reply)


def _chat_client(content):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))]))
    return client


def test_normalize_reply_cuts_at_first_period():
    assert normalize_reply("  Sounds great. What did you see? ") == "Sounds great."


def test_normalize_reply_without_period_is_verbatim():
    assert normalize_reply("What did you see?") == "What did you see?"


def test_fallback_reply_is_from_fixed_set():
    rng = random.Random(3)
    for _ in range(20):
        assert fallback_reply(rng) in FALLBACK_REPLIES


def test_prompt_uses_last_context_items_only():
    ctx = [f"user: line {i}" for i in range(8)]
    prompt = build_prompt(ctx, "hello", 5)
    assert "line 2" not in prompt
    assert "line 3" in prompt and "line 7" in prompt
    assert prompt.endswith("User: hello")


def test_responder_without_key_raises():
    responder = Responder(RelaySettings(openai_api_key=""))
    assert responder.available is False
    with pytest.raises(GenerationError):
        asyncio.run(responder.generate([], "hi"))


def test_responder_normalizes_model_output():
    client = _chat_client("Oh nice. Where did you go? I love trails.")
    responder = Responder(RelaySettings(), client=client)
    reply = asyncio.run(responder.generate(["user: I went hiking"], "I went hiking"))
    assert reply == "Oh nice."
    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["max_tokens"] == 150
    assert kwargs["messages"][0]["role"] == "system"


def test_responder_wraps_client_errors():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=RuntimeError("503"))
    responder = Responder(RelaySettings(), client=client)
    with pytest.raises(GenerationError, match="503"):
        asyncio.run(responder.generate([], "hi"))


def test_responder_rejects_empty_reply():
    responder = Responder(RelaySettings(), client=_chat_client("   "))
    with pytest.raises(GenerationError):
        asyncio.run(responder.generate([], "hi"))


def test_embedder_returns_vector_and_truncates_input():
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=SimpleNamespace(
        data=[SimpleNamespace(embedding=[0.1, 0.2])]))
    embedder = Embedder(RelaySettings(), client=client)
    assert asyncio.run(embedder.embed("x" * 5000)) == [0.1, 0.2]
    assert len(client.embeddings.create.await_args.kwargs["input"]) == 1000


def test_embedder_never_raises():
    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=RuntimeError("quota"))
    embedder = Embedder(RelaySettings(), client=client)
    assert asyncio.run(embedder.embed("hello")) == []
    assert asyncio.run(embedder.embed("   ")) == []
