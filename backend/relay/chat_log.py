"""Short-term chat log: capped per-user Redis list of (role, message)"""
from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from typing import List, Literal, Optional

import redis.asyncio as redis

logger = logging.getLogger(__name__)

Role = Literal["user", "ai"]


@dataclass(frozen=True)
class ChatEntry:
    role: str
    message: str

    def as_context_line(self) -> str:
        return f"{self.role}: {self.message}"


def chat_key(user_id: str) -> str:
    return f"chat:{user_id}"


class ChatLog:
    """Append-only, size-bounded log that outlives any single connection."""

    def __init__(self, client: "redis.Redis", max_entries: int = 100):
        self.client = client
        self.max_entries = max_entries

    @classmethod
    def from_url(cls, url: str, max_entries: int = 100) -> "ChatLog":
        return cls(redis.from_url(url, decode_responses=True), max_entries=max_entries)

    async def push(self, user_id: str, role: Role, message: str) -> None:
        if role not in ("user", "ai"):
            raise ValueError(f"unknown chat role: {role}")
        key = chat_key(user_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.rpush(key, json.dumps({"role": role, "message": message}))
        pipe.ltrim(key, -self.max_entries, -1)
        await pipe.execute()

    async def recent(self, user_id: str, limit: Optional[int] = None) -> List[ChatEntry]:
        """Entries oldest-first; only the newest ``limit`` when given."""
        if limit is not None and limit <= 0:
            return []
        start = -limit if limit else 0
        raw = await self.client.lrange(chat_key(user_id), start, -1)
        entries = []
        for item in raw:
            try:
                data = json.loads(item)
                entries.append(ChatEntry(role=str(data["role"]), message=str(data["message"])))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed chat log entry for user {user_id}: {e}")
        return entries

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning(f"Chat log unreachable: {e}")
            return False

    async def close(self) -> None:
        await self.client.aclose()
