"""Responder and Embedder adapters (OpenAI) with canned fallbacks"""
from __future__ import annotations
import asyncio
import logging
import random
from typing import List, Optional, Sequence
from .config import RelaySettings
from .errors import GenerationError, log_degraded

try:
    from openai import AsyncOpenAI
except Exception:  # pragma: no cover
    AsyncOpenAI = None  # type: ignore

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You're an AI friend chatting naturally with the user. Keep it friendly, match their tone, "
    "sound casual and human, and always end with a question to keep the conversation going. "
    "Aim for a reply that takes 8-10 seconds to say."
)

FALLBACK_REPLIES = (
    "I understand what you're saying.",
    "That's interesting, tell me more.",
    "I see your point.",
    "Thanks for sharing that with me.",
    "I'm listening.",
)

EMBED_MAX_CHARS = 1000


def normalize_reply(text: str) -> str:
    """Cut the reply at its first sentence boundary, if it has one."""
    text = text.strip()
    if '.' in text:
        return text.split('.', 1)[0] + '.'
    return text


def fallback_reply(rng: Optional[random.Random] = None) -> str:
    return (rng or random).choice(FALLBACK_REPLIES)


def build_prompt(context: Sequence[str], user_text: str, max_items: int) -> str:
    relevant = list(context)[-max_items:] if max_items else []
    return "Context: " + "\n".join(relevant) + f"\n\nUser: {user_text}"


def _make_client(settings: RelaySettings):
    if not settings.openai_api_key or AsyncOpenAI is None:
        return None
    try:
        return AsyncOpenAI(api_key=settings.openai_api_key)
    except Exception as e:
        logger.error(f"Failed to initialize OpenAI client: {e}")
        return None


class Responder:
    """Generates one conversational reply for the composed context."""

    def __init__(self, settings: RelaySettings, client=None):
        self.settings = settings
        self.client = client if client is not None else _make_client(settings)
        if self.client is None:
            logger.info("No OpenAI API key provided, replies will use canned fallbacks")

    @property
    def available(self) -> bool:
        return self.client is not None

    async def generate(self, context: Sequence[str], user_text: str) -> str:
        if self.client is None:
            raise GenerationError("LLM client not configured")
        prompt = build_prompt(context, user_text, self.settings.prompt_context_items)
        try:
            resp = await self.client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[{"role": "system", "content": SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
                max_tokens=self.settings.openai_max_tokens,
                temperature=self.settings.openai_temperature,
                top_p=0.8,
            )
        except Exception as e:
            raise GenerationError(f"LLM request failed: {e}") from e
        content = resp.choices[0].message.content if resp.choices else None
        if not content or not content.strip():
            raise GenerationError("LLM returned an empty reply")
        return normalize_reply(content)


class Embedder:
    """Text embeddings; any failure yields an empty vector."""

    def __init__(self, settings: RelaySettings, client=None):
        self.settings = settings
        self.client = client if client is not None else _make_client(settings)

    async def embed(self, text: str) -> List[float]:
        if not text or not text.strip() or self.client is None:
            return []
        try:
            resp = await asyncio.wait_for(
                self.client.embeddings.create(
                    model=self.settings.openai_embedding_model,
                    input=text[:EMBED_MAX_CHARS],
                ),
                timeout=self.settings.embed_timeout_s,
            )
            return list(resp.data[0].embedding)
        except Exception as e:
            log_degraded("EMBED_FAIL", e, chars=len(text))
            return []
