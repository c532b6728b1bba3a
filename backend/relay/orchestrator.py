"""Conversation orchestrator: one audio clip in, one spoken reply out.

A turn runs these stages in order:

1. transcribe the clip (hard failure on error; short clips get an apology)
2. append the user line to the short-term chat log (soft)
3. embed the transcript and recall long-term memory concurrently (soft)
4. compose context: recent turns, recalled snippets, current transcript
5. generate a reply under a deadline (timeout/failure -> canned sentence)
6. synthesize speech and log the ai line concurrently (soft), and detach
   a background task that stores both lines in long-term memory
7. append both lines to the session's bounded context
8. return the result for framing

Only stage 1 and unexpected exceptions produce an error result; everything
else degrades to a default so the client always gets a reply.
"""
from __future__ import annotations
import time
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Set
from .config import RelaySettings, TurnStage
from .deadline import Completed, run_with_deadline
from .errors import GenerationError, log_degraded, log_event
from .llm import fallback_reply
from .session import Session

logger = logging.getLogger(__name__)

NO_SPEECH_REPLY = "I didn't catch that. Could you please try again?"
FAILURE_REPLY = "I'm having trouble processing your audio right now. Please try again."


class TranscriberLike(Protocol):
    async def transcribe(self, audio: bytes) -> str: ...


class EmbedderLike(Protocol):
    async def embed(self, text: str) -> List[float]: ...


class ResponderLike(Protocol):
    async def generate(self, context: Sequence[str], user_text: str) -> str: ...


class SpeakerLike(Protocol):
    async def synthesize(self, text: str) -> bytes: ...


class MemoryLike(Protocol):
    async def recall(self, user_id: str, query: Sequence[float]) -> List[str]: ...
    async def store(self, user_id: str, text: str, vector: Sequence[float]) -> str: ...


class ChatLogLike(Protocol):
    async def push(self, user_id: str, role: str, message: str) -> None: ...


@dataclass
class Turn:
    audio: bytes
    session_id: str
    stage: TurnStage = TurnStage.RECEIVED
    transcript: str = ""
    embedding: List[float] = field(default_factory=list)
    memories: List[str] = field(default_factory=list)
    reply: str = ""
    reply_audio: Optional[bytes] = None
    started_at: float = field(default_factory=time.time)

    def advance(self, stage: TurnStage) -> None:
        self.stage = stage
        log_event("turn_stage", session_id=self.session_id, stage=stage.value,
                  elapsed_ms=round((time.time() - self.started_at) * 1000.0, 2))


@dataclass
class TurnResult:
    response: str
    transcript: str
    audio: Optional[bytes] = None
    error: Optional[str] = None


def compose_context(history: Sequence[str], memories: Sequence[object], transcript: str) -> List[str]:
    """Recent turns, then recalled snippets, then the current user line; text only."""
    items = [*history, *memories, f"user: {transcript}"]
    return [v for v in items if isinstance(v, str)]


class ConversationOrchestrator:
    def __init__(self, settings: RelaySettings, transcriber: TranscriberLike, embedder: EmbedderLike,
                 responder: ResponderLike, speaker: SpeakerLike, memory: MemoryLike,
                 chat_log: Optional[ChatLogLike], rng: Optional[random.Random] = None):
        self.settings = settings
        self.transcriber = transcriber
        self.embedder = embedder
        self.responder = responder
        self.speaker = speaker
        self.memory = memory
        self.chat_log = chat_log
        self.rng = rng
        self._background: Set[asyncio.Task] = set()

    @property
    def background_tasks(self) -> int:
        return len(self._background)

    async def process_turn(self, session: Session, audio: bytes) -> TurnResult:
        """Run one turn for a session whose busy flag the caller holds."""
        turn = Turn(audio=audio, session_id=session.id)
        log_event("turn_start", session_id=session.id, bytes=len(audio))
        try:
            result = await self._run(session, turn)
        except Exception as e:
            turn.advance(TurnStage.FAILED)
            logger.error(f"Turn failed for session {session.id}: {e}")
            return TurnResult(
                response=FAILURE_REPLY,
                transcript="",
                audio=await self._speak_or_none(FAILURE_REPLY, session.id),
                error=str(e) or type(e).__name__,
            )
        turn.advance(TurnStage.COMPLETE)
        return result

    async def _run(self, session: Session, turn: Turn) -> TurnResult:
        # 1. Transcribe
        if len(turn.audio) < self.settings.min_audio_bytes:
            log_event("audio_too_short", session_id=session.id, bytes=len(turn.audio),
                      min_bytes=self.settings.min_audio_bytes)
            return await self._no_speech(session)
        turn.advance(TurnStage.TRANSCRIBING)
        turn.transcript = (await self.transcriber.transcribe(turn.audio)).strip()
        if not turn.transcript:
            log_event("no_speech", session_id=session.id)
            return await self._no_speech(session)

        # 2. Persist user line
        await self._log_chat(session.user_id, "user", turn.transcript)

        # 3. Embed + recall
        turn.advance(TurnStage.RECALLING)
        turn.embedding, turn.memories = await asyncio.gather(
            self._embed(turn.transcript),
            self._recall(session.user_id, session.last_embedding),
        )

        # 4. Compose
        context = compose_context(session.context, turn.memories, turn.transcript)
        log_event("context_composed", session_id=session.id, items=len(context), memories=len(turn.memories))

        # 5. Generate
        turn.advance(TurnStage.GENERATING)
        turn.reply = await self._generate(context, turn.transcript, session.id)

        # 6. Speak + persist ai line; long-term store is detached
        turn.advance(TurnStage.SPEAKING)
        turn.reply_audio, _ = await asyncio.gather(
            self._speak_or_none(turn.reply, session.id),
            self._log_chat(session.user_id, "ai", turn.reply),
        )
        self._spawn_background_store(session.user_id, turn.transcript, turn.reply, turn.embedding)

        # 7. Update session
        session.record_turn(turn.transcript, turn.reply)
        if turn.embedding:
            session.last_embedding = turn.embedding

        # 8. Result
        return TurnResult(response=turn.reply, transcript=turn.transcript, audio=turn.reply_audio)

    async def _no_speech(self, session: Session) -> TurnResult:
        return TurnResult(response=NO_SPEECH_REPLY, transcript="",
                          audio=await self._speak_or_none(NO_SPEECH_REPLY, session.id))

    async def _embed(self, text: str) -> List[float]:
        try:
            return list(await self.embedder.embed(text))
        except Exception as e:
            log_degraded("EMBED_FAIL", e)
            return []

    async def _recall(self, user_id: str, query: Sequence[float]) -> List[str]:
        try:
            return list(await self.memory.recall(user_id, query))
        except Exception as e:
            log_degraded("RECALL_FAIL", e, user_id=user_id)
            return []

    async def _generate(self, context: List[str], transcript: str, session_id: str) -> str:
        try:
            outcome = await run_with_deadline(self.responder.generate(context, transcript),
                                              self.settings.llm_timeout_s)
        except Exception as e:
            log_degraded("LLM_FAIL", e, session_id=session_id)
            return fallback_reply(self.rng)
        if isinstance(outcome, Completed) and outcome.value and outcome.value.strip():
            log_event("llm_complete", session_id=session_id, ms=round(outcome.elapsed_ms, 2))
            return outcome.value.strip()
        if isinstance(outcome, Completed):
            log_degraded("LLM_FAIL", GenerationError("empty reply"), session_id=session_id)
        else:
            log_degraded("LLM_TIMEOUT", TimeoutError(f"no reply within {outcome.timeout_s}s"),
                         session_id=session_id)
        return fallback_reply(self.rng)

    async def _speak_or_none(self, text: str, session_id: str) -> Optional[bytes]:
        try:
            return await self.speaker.synthesize(text)
        except Exception as e:
            log_degraded("TTS_FAIL", e, session_id=session_id)
            return None

    async def _log_chat(self, user_id: str, role: str, message: str) -> None:
        if self.chat_log is None:
            return
        try:
            await self.chat_log.push(user_id, role, message)
        except Exception as e:
            log_degraded("CHAT_LOG_FAIL", e, user_id=user_id, role=role)

    def _spawn_background_store(self, user_id: str, transcript: str, reply: str,
                                embedding: List[float]) -> None:
        task = asyncio.create_task(self._store_memories(user_id, transcript, reply, embedding))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _store_memories(self, user_id: str, transcript: str, reply: str,
                              embedding: List[float]) -> None:
        async def store_user_line():
            if embedding:
                await self.memory.store(user_id, transcript, embedding)

        async def store_reply_line():
            # The reply has no embedding yet; compute it here off the response path.
            vector = await self.embedder.embed(reply)
            if vector:
                await self.memory.store(user_id, reply, vector)

        results = await asyncio.gather(store_user_line(), store_reply_line(), return_exceptions=True)
        for role, res in zip(("user", "ai"), results):
            if isinstance(res, BaseException):
                log_degraded("MEMORY_STORE_FAIL", res, user_id=user_id, role=role)

    async def drain(self, timeout_s: Optional[float] = None) -> None:
        """Wait for detached memory writes; used at shutdown and in tests."""
        if not self._background:
            return
        done, pending = await asyncio.wait(set(self._background), timeout=timeout_s)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Abandoned {len(pending)} background memory writes")
