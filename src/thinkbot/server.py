"""FastAPI application: the WebSocket chat endpoint plus HTTP debug routes.

WebSocket frames are JSON objects ``{"event": <name>, "data": <payload>}``.
On connect the server sends ``session_started`` with the session id that
the ``/history`` and ``/clear-history`` routes accept.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from thinkbot import __version__
from thinkbot.config import RelayConfig
from thinkbot.core.history import HistorySweeper, HistoryStore
from thinkbot.core.relay import ChannelSink, StreamingRelay
from thinkbot.core.retry import RetryOrchestrator, RetryPolicy
from thinkbot.core.session import MISSING_CONFIG, ChatSession
from thinkbot.diagnostics import EventRecorder, log_event
from thinkbot.events.bus import EventBus
from thinkbot.providers import create_provider
from thinkbot.providers.base import Provider
from thinkbot.types import (
    CLEAR_HISTORY,
    ERROR,
    GET_HISTORY_SUMMARY,
    SESSION_STARTED,
    USER_MESSAGE,
    EventType,
    ProviderError,
)

_logger = logging.getLogger(__name__)


@dataclass
class RelayServices:
    """Everything the handlers share, built once per application."""

    config: RelayConfig
    provider: Provider
    store: HistoryStore
    orchestrator: RetryOrchestrator
    relay: StreamingRelay
    bus: EventBus
    sweeper: HistorySweeper
    sessions: dict[str, ChatSession] = field(default_factory=dict)
    recorder: EventRecorder | None = None

    def new_session(self, sink: ChannelSink) -> ChatSession:
        session = ChatSession(
            sink,
            self.store,
            self.provider,
            self.orchestrator,
            self.relay,
            event_bus=self.bus,
            summary_size=self.config.history.summary_size,
        )
        sink.session_id = session.id
        return session


def build_services(
    config: RelayConfig,
    provider: Provider | None = None,
) -> RelayServices:
    bus = EventBus()
    bus.subscribe("*", log_event)
    store = HistoryStore(max_turns=config.history.max_turns)

    async def _on_evict(count: int) -> None:
        await bus.publish(EventType.HISTORY_EVICTED, count=count)

    services = RelayServices(
        config=config,
        provider=provider or create_provider(config),
        store=store,
        orchestrator=RetryOrchestrator(RetryPolicy.from_config(config.retry)),
        relay=StreamingRelay(
            words_per_chunk=config.stream.words_per_chunk,
            chunk_delay=config.stream.chunk_delay,
        ),
        bus=bus,
        sweeper=HistorySweeper(
            store,
            interval=config.history.sweep_interval,
            max_age=config.history.max_age,
            on_evict=_on_evict,
        ),
    )
    if config.diagnostics.events_file:
        services.recorder = EventRecorder(config.diagnostics.events_file)
        bus.subscribe("*", services.recorder)
    return services


def create_app(
    config: RelayConfig | None = None,
    provider: Provider | None = None,
) -> FastAPI:
    """Build the relay application.

    A *provider* passed in is used as-is and left open on shutdown;
    otherwise one is created from ``config.upstream`` and closed with the app.
    """
    config = config or RelayConfig()
    owns_provider = provider is None
    services = build_services(config, provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services.sweeper.start()
        _logger.info(
            "Relay ready: upstream=%s api_type=%s model=%s",
            config.upstream.base_url, config.upstream.api_type, config.upstream.model,
        )
        try:
            yield
        finally:
            for session in list(services.sessions.values()):
                await session.close()
            services.sessions.clear()
            await services.sweeper.stop()
            if owns_provider:
                await services.provider.close()
            if services.recorder is not None:
                services.bus.unsubscribe("*", services.recorder)
                services.recorder.close()
            _logger.info("Relay shut down")

    app = FastAPI(title="Thinkbot Relay", version=__version__, lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------
    # HTTP routes
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health() -> dict[str, Any]:
        upstream = config.upstream
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "env": {
                "hasApiKey": bool(upstream.api_key),
                "hasApiUrl": bool(upstream.base_url),
                "apiType": upstream.api_type,
                "model": upstream.model,
                "providerConfigured": services.provider.is_configured,
            },
            "activeConversations": services.store.session_count(),
            "connectedClients": len(services.sessions),
        }

    @app.get("/test-api")
    async def test_api() -> JSONResponse:
        if not services.provider.is_configured:
            return JSONResponse(status_code=500, content={
                "success": False,
                "error": MISSING_CONFIG,
                "code": "missing_config",
            })
        _logger.info("Testing API connectivity...")
        try:
            reply = await services.provider.generate([], "Hello")
        except ProviderError as e:
            _logger.error("API connectivity test failed: %s", e.log_fields())
            return JSONResponse(status_code=500, content={
                "success": False,
                "error": str(e),
                "code": e.kind.value,
                "status": e.status_code,
                "details": e.detail,
            })
        return JSONResponse(content={
            "success": True,
            "message": "API connectivity test passed",
            "response": reply,
        })

    @app.get("/history/{session_id}")
    async def get_history(session_id: str) -> dict[str, Any]:
        turns = services.store.get(session_id)
        return {
            "sessionId": session_id,
            "messageCount": len(turns),
            "history": [turn.to_message() for turn in turns],
        }

    @app.post("/clear-history/{session_id}")
    async def clear_history(session_id: str) -> dict[str, Any]:
        existed = services.store.clear(session_id)
        await services.bus.publish(
            EventType.HISTORY_CLEARED, session_id=session_id, source="http",
        )
        return {
            "success": True,
            "sessionId": session_id,
            "message": "History cleared" if existed else "No history for session",
        }

    # ------------------------------------------------------------------
    # WebSocket
    # ------------------------------------------------------------------

    @app.websocket("/ws")
    async def chat_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        sink = ChannelSink()
        session = services.new_session(sink)
        services.sessions[session.id] = session
        writer = asyncio.create_task(sink.drain(websocket.send_json))
        _logger.info("User connected: session %s", session.id[:8])
        await services.bus.publish(EventType.SESSION_OPENED, session_id=session.id)
        await sink.emit(SESSION_STARTED, {"sessionId": session.id})
        session.start()

        try:
            while True:
                raw = await websocket.receive_text()
                await _dispatch(session, sink, raw)
        except WebSocketDisconnect:
            _logger.info("User disconnected: session %s", session.id[:8])
        finally:
            services.sessions.pop(session.id, None)
            writer.cancel()
            try:
                await session.close()
            finally:
                await asyncio.gather(writer, return_exceptions=True)

    return app


async def _dispatch(session: ChatSession, sink: ChannelSink, raw: str) -> None:
    """Route one inbound frame to the session."""
    try:
        frame = json.loads(raw)
    except ValueError:
        await sink.emit(ERROR, "Invalid frame: expected JSON")
        return
    if not isinstance(frame, dict):
        await sink.emit(ERROR, "Invalid frame: expected an object")
        return

    event = frame.get("event")
    if event == USER_MESSAGE:
        await session.submit(frame.get("data"))
    elif event == CLEAR_HISTORY:
        await session.clear_history()
    elif event == GET_HISTORY_SUMMARY:
        await session.send_history_summary()
    else:
        _logger.warning("Unknown event %r from session %s", event, session.id[:8])
        await sink.emit(ERROR, f"Unknown event: {event}")
