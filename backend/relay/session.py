"""Per (user, friend) conversation sessions and the process-wide store"""
from __future__ import annotations
import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from .chat_log import ChatLog
from .errors import SessionStoreError, log_degraded, log_event

logger = logging.getLogger(__name__)


def session_key(user_id: str, friend_id: str) -> str:
    return f"{user_id}-{friend_id}"


@dataclass
class Session:
    user_id: str
    friend_id: str
    context: List[str] = field(default_factory=list)
    context_window: int = 10
    busy: bool = False
    # Previous turn's transcript embedding, used as the next recall query.
    last_embedding: List[float] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    turns_completed: int = 0

    @property
    def id(self) -> str:
        return session_key(self.user_id, self.friend_id)

    def try_acquire(self) -> bool:
        """Claim the session for one turn; False if a turn is already in flight."""
        if self.busy:
            return False
        self.busy = True
        return True

    def release(self) -> None:
        self.busy = False

    def record_turn(self, transcript: str, reply: str) -> None:
        self.context = (self.context + [f"user: {transcript}", f"ai: {reply}"])[-self.context_window:]
        self.turns_completed += 1


class SessionStore:
    """Owns every live Session; construct once at process start.

    Concurrent ``get_or_create`` calls for one key share a single creation,
    so at most one Session object exists per key.
    """

    def __init__(self, chat_log: Optional[ChatLog], context_window: int = 10, seed_entries: int = 10):
        self.chat_log = chat_log
        self.context_window = context_window
        self.seed_entries = min(seed_entries, context_window)
        self._sessions: Dict[str, Session] = {}
        self._pending: Dict[str, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, user_id: str, friend_id: str) -> Optional[Session]:
        return self._sessions.get(session_key(user_id, friend_id))

    def info(self, user_id: str, friend_id: str) -> Dict[str, Any]:
        s = self.get(user_id, friend_id)
        return {
            "sessionId": session_key(user_id, friend_id),
            "exists": s is not None,
            "contextItems": len(s.context) if s else 0,
        }

    async def get_or_create(self, user_id: str, friend_id: str) -> Session:
        key = session_key(user_id, friend_id)
        existing = self._sessions.get(key)
        if existing is not None:
            return existing
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        fut = asyncio.get_running_loop().create_future()
        self._pending[key] = fut
        try:
            context = await self._seed_context(user_id)
            session = Session(user_id=user_id, friend_id=friend_id, context=context,
                              context_window=self.context_window)
            self._sessions[key] = session
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            err = SessionStoreError(f"Failed to create session {key}: {e}")
            fut.set_exception(err)
            fut.exception()  # waiters re-raise it; mark retrieved
            raise err from e
        finally:
            self._pending.pop(key, None)
        fut.set_result(session)
        log_event("session_open", session_id=key, context_items=len(context))
        return session

    async def _seed_context(self, user_id: str) -> List[str]:
        if self.chat_log is None or self.seed_entries == 0:
            return []
        try:
            entries = await self.chat_log.recent(user_id, self.seed_entries)
        except Exception as e:
            log_degraded("CHAT_LOG_FAIL", e, user_id=user_id, stage="seed")
            return []
        return [e.as_context_line() for e in entries]

    def evict(self, user_id: str, friend_id: str) -> bool:
        key = session_key(user_id, friend_id)
        removed = self._sessions.pop(key, None) is not None
        if removed:
            log_event("session_close", session_id=key)
        return removed
