"""WebSocket connection gateway: frame loop, routing and best-effort writes"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set
from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from .errors import ProtocolError, SessionStoreError, emit_error, log_event
from .orchestrator import ConversationOrchestrator
from .protocol import (AudioMessage, InitMessage, ProcessingMessage, ReadyMessage, ResponseMessage,
                       decode_frame, frame)
from .session import Session, SessionStore, session_key

logger = logging.getLogger(__name__)

NOT_INITIALIZED = "Session not initialized. Please send init message first."
ALREADY_PROCESSING = "Already processing audio. Please wait for current request to complete."


@dataclass
class ClientBinding:
    user_id: str
    friend_id: str
    session_id: str


@dataclass
class Connection:
    ws: WebSocket
    binding: Optional[ClientBinding] = None
    turns: Set[asyncio.Task] = field(default_factory=set)

    async def send_json(self, payload: Dict[str, Any]) -> None:
        """Never raises; writes to a socket that is not open are dropped."""
        if (self.ws.client_state != WebSocketState.CONNECTED
                or self.ws.application_state != WebSocketState.CONNECTED):
            logger.warning(f"Dropping '{payload.get('type')}' frame for closed WebSocket")
            return
        try:
            await self.ws.send_json(payload)
        except Exception as e:
            logger.warning(f"Failed to send '{payload.get('type')}' frame: {e}")


class ConnectionGateway:
    def __init__(self, store: SessionStore, orchestrator: ConversationOrchestrator):
        self.store = store
        self.orchestrator = orchestrator
        self.active_connections = 0
        self._turn_tasks: Set[asyncio.Task] = set()
        # Connections currently bound to each session key.
        self._bound: Dict[str, int] = {}

    async def handle(self, ws: WebSocket) -> None:
        await ws.accept()
        conn = Connection(ws=ws)
        self.active_connections += 1
        log_event("connection_open", active=self.active_connections)
        try:
            while True:
                data = await ws.receive()
                if data.get('type') == 'websocket.disconnect':
                    break
                text = data.get('text')
                if text is None:
                    await emit_error(conn.send_json, "Invalid message format",
                                     "binary frames are not supported; send JSON text frames",
                                     code="PROTOCOL_VIOLATION")
                    continue
                try:
                    msg = decode_frame(text)
                except ProtocolError as e:
                    await emit_error(conn.send_json, e.message, e.details, code=e.code)
                    continue
                if isinstance(msg, InitMessage):
                    await self.handle_init(conn, msg)
                else:
                    await self.handle_audio(conn, msg)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket transport error: {e}")
        finally:
            self.handle_disconnect(conn)

    async def handle_init(self, conn: Connection, msg: InitMessage) -> None:
        if not msg.userId or not msg.friendId:
            await emit_error(conn.send_json, "userId and friendId are required", code="PROTOCOL_VIOLATION")
            return
        try:
            session = await self.store.get_or_create(msg.userId, msg.friendId)
        except SessionStoreError as e:
            await emit_error(conn.send_json, "Failed to initialize session", str(e), code="INIT_FAIL")
            return
        self._bind(conn, ClientBinding(msg.userId, msg.friendId, session.id))
        await conn.send_json(frame(ReadyMessage(sessionId=session.id)))
        logger.info(f"Session initialized: {session.id}")

    async def handle_audio(self, conn: Connection, msg: AudioMessage) -> None:
        if conn.binding is None:
            await emit_error(conn.send_json, NOT_INITIALIZED, code="NOT_INITIALIZED")
            return
        try:
            audio = msg.audio_bytes()
        except ProtocolError as e:
            await emit_error(conn.send_json, e.message, e.details, code=e.code)
            return
        b = conn.binding
        session = self.store.get(b.user_id, b.friend_id)
        if session is None:
            # Bound sessions are not evicted; rebuild defensively.
            try:
                session = await self.store.get_or_create(b.user_id, b.friend_id)
            except SessionStoreError as e:
                await emit_error(conn.send_json, "Failed to initialize session", str(e), code="INIT_FAIL")
                return
        if not session.try_acquire():
            await emit_error(conn.send_json, ALREADY_PROCESSING, code="BUSY", session_id=session.id)
            return
        try:
            await conn.send_json(frame(ProcessingMessage()))
            task = asyncio.create_task(self.run_turn(conn, session, audio))
        except BaseException:
            session.release()
            raise
        conn.turns.add(task)
        self._turn_tasks.add(task)
        task.add_done_callback(conn.turns.discard)
        task.add_done_callback(self._turn_tasks.discard)

    async def run_turn(self, conn: Connection, session: Session, audio: bytes) -> None:
        """Run one turn for a claimed session; releases the claim on every path."""
        try:
            logger.info(f"Processing complete audio for {session.id}: {len(audio)} bytes")
            result = await self.orchestrator.process_turn(session, audio)
            if result.error:
                # Error frames carry no audio; the spoken apology in result.audio is dropped.
                await emit_error(conn.send_json, "Audio processing failed", result.error,
                                 code="TURN_FAIL", session_id=session.id)
                return
            await conn.send_json(frame(ResponseMessage.from_result(result.response, result.transcript, result.audio)))
            log_event("response_sent", session_id=session.id, transcript_chars=len(result.transcript),
                      reply_chars=len(result.response), audio=result.audio is not None)
        except Exception as e:
            logger.error(f"Error processing complete audio for {session.id}: {e}")
            await emit_error(conn.send_json, "Failed to process audio", str(e) or type(e).__name__,
                             code="INTERNAL", session_id=session.id)
        finally:
            session.release()
            if not self._bound.get(session.id) and self.store.get(session.user_id, session.friend_id) is session:
                # Last connection closed mid-turn.
                self.store.evict(session.user_id, session.friend_id)

    def handle_disconnect(self, conn: Connection) -> None:
        self.active_connections -= 1
        b = conn.binding
        conn.binding = None
        if b is not None:
            self._unbind(b)
        log_event("connection_close", session_id=b.session_id if b else None,
                  in_flight_turns=len(conn.turns), active=self.active_connections)

    def _bind(self, conn: Connection, binding: ClientBinding) -> None:
        previous = conn.binding
        if previous is not None and previous.session_id == binding.session_id:
            return
        conn.binding = binding
        self._bound[binding.session_id] = self._bound.get(binding.session_id, 0) + 1
        if previous is not None:
            self._unbind(previous)

    def _unbind(self, binding: ClientBinding) -> None:
        """Drop one reference; evict when no connection is left and no turn is running."""
        remaining = self._bound.get(binding.session_id, 0) - 1
        if remaining > 0:
            self._bound[binding.session_id] = remaining
            return
        self._bound.pop(binding.session_id, None)
        session = self.store.get(binding.user_id, binding.friend_id)
        if session is not None and not session.busy:
            self.store.evict(binding.user_id, binding.friend_id)

    def bound_connections(self, user_id: str, friend_id: str) -> int:
        return self._bound.get(session_key(user_id, friend_id), 0)

    async def drain(self, timeout_s: Optional[float] = None) -> None:
        if self._turn_tasks:
            await asyncio.wait(set(self._turn_tasks), timeout=timeout_s)
