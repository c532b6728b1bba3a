"""
Lumi Voice Relay API
WebSocket voice chat: one recorded clip in, one spoken reply out, per turn
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, WebSocket

from backend.relay.asr import Transcriber
from backend.relay.chat_log import ChatLog
from backend.relay.config import RelaySettings, load_relay_config
from backend.relay.errors import log_event
from backend.relay.gateway import ConnectionGateway
from backend.relay.llm import Embedder, Responder
from backend.relay.memory import VectorMemory
from backend.relay.orchestrator import ConversationOrchestrator
from backend.relay.session import SessionStore
from backend.relay.tts import Speaker


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@dataclass
class RelayComponents:
    """Everything one process needs; built once at start-up."""
    settings: RelaySettings
    transcriber: Any
    embedder: Any
    responder: Any
    speaker: Any
    memory: Any
    chat_log: Optional[Any]
    store: SessionStore
    orchestrator: ConversationOrchestrator
    gateway: ConnectionGateway


def build_components(settings: RelaySettings) -> RelayComponents:
    chat_log = None
    if settings.redis_url:
        chat_log = ChatLog.from_url(settings.redis_url, max_entries=settings.chat_log_max_entries)
    else:
        logger.warning("REDIS_URL not set; short-term chat log disabled")
    return assemble(
        settings,
        transcriber=Transcriber(settings),
        embedder=Embedder(settings),
        responder=Responder(settings),
        speaker=Speaker(settings),
        memory=VectorMemory(top_k=settings.memory_top_k),
        chat_log=chat_log,
    )


def assemble(settings: RelaySettings, *, transcriber, embedder, responder, speaker, memory,
             chat_log) -> RelayComponents:
    store = SessionStore(chat_log, context_window=settings.context_window,
                         seed_entries=settings.session_seed_entries)
    orchestrator = ConversationOrchestrator(settings, transcriber, embedder, responder, speaker, memory, chat_log)
    gateway = ConnectionGateway(store, orchestrator)
    return RelayComponents(settings, transcriber, embedder, responder, speaker, memory, chat_log,
                           store, orchestrator, gateway)


async def shutdown(components: RelayComponents) -> None:
    await components.gateway.drain(timeout_s=5.0)
    await components.orchestrator.drain(timeout_s=5.0)
    if isinstance(components.speaker, Speaker):
        components.speaker.close()
    if isinstance(components.chat_log, ChatLog):
        try:
            await components.chat_log.close()
        except Exception as e:
            logger.warning(f"Error closing chat log connection: {e}")


def create_app(components: Optional[RelayComponents] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Build the relay on start-up, drain in-flight work on shutdown"""
        comps = components or build_components(load_relay_config())
        logging.getLogger().setLevel(comps.settings.log_level.upper())
        app.state.relay = comps
        log_event("relay_start", **comps.settings.as_dict())
        if isinstance(comps.chat_log, ChatLog) and not await comps.chat_log.ping():
            logger.warning("Redis unreachable at start-up; chat log writes will degrade")
        try:
            yield
        finally:
            await shutdown(comps)
            log_event("relay_stop")

    app = FastAPI(
        title="Lumi Voice Relay",
        description="Voice chat relay: transcribe, remember, reply, speak",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        comps: RelayComponents = app.state.relay
        return {
            "status": "ok",
            "sessions": len(comps.store),
            "connections": comps.gateway.active_connections,
            "background_tasks": comps.orchestrator.background_tasks,
            "asr_loaded": getattr(comps.transcriber, "model_loaded", False),
            "llm_enabled": getattr(comps.responder, "available", True),
            "tts_enabled": getattr(comps.speaker, "enabled", True),
        }

    @app.get("/api/relay_config")
    async def relay_config():
        return app.state.relay.settings.as_dict()

    @app.websocket("/ws")
    async def ws_primary(ws: WebSocket):
        await app.state.relay.gateway.handle(ws)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    _settings = load_relay_config()
    uvicorn.run(app, host=_settings.host, port=_settings.port)
