"""
FastAPI application: one WebSocket endpoint carrying the realtime protocol.

Frames are JSON objects {"event": <name>, "data": {...}} in both directions.
Run with `uvicorn src.api.app:app`.
"""

import asyncio
import contextlib
import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from src.api.connections import ConnectionManager
from src.core.config import Settings, configure_logging
from src.core.exceptions import AuthenticationError, RepositoryError
from src.db.database import build_session_factory
from src.db.sql_repository import SQLGameRepository, SQLUserRepository
from src.realtime.events import ServerEvent
from src.realtime.protocol import RealtimeProtocol
from src.services.game_service import GameService
from src.services.lobby_service import LobbyService
from src.services.matchmaking import MatchmakingQueue
from src.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)

AUTH_FAILURE_CLOSE_CODE = 4401


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        session_factory = build_session_factory(settings.database_url)
        db = session_factory()

        games = SQLGameRepository(db)
        users = SQLUserRepository(db)
        registry = SessionRegistry(games, users, settings)
        protocol = RealtimeProtocol(
            GameService(registry, games, users, settings),
            LobbyService(registry, MatchmakingQueue(), games, users, settings),
            users,
            settings,
        )
        connections = ConnectionManager(protocol)
        protocol.attach_sink(connections.deliver)

        app.state.settings = settings
        app.state.users = users
        app.state.games = games
        app.state.protocol = protocol
        app.state.connections = connections

        tasks = [
            asyncio.create_task(registry.run_eviction()),
            asyncio.create_task(protocol.run_liveness_sweep()),
        ]
        logger.info("Realtime server ready")
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            protocol.shutdown()
            db.close()
            logger.info("Realtime server stopped")

    app = FastAPI(title="Chess realtime server", lifespan=lifespan)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        protocol: RealtimeProtocol = websocket.app.state.protocol
        connections: ConnectionManager = websocket.app.state.connections

        await websocket.accept()
        token = websocket.query_params.get("token") or websocket.headers.get("authorization")
        connection_id = connections.register(websocket)
        try:
            await protocol.connect(connection_id, token)
        except (AuthenticationError, RepositoryError) as e:
            connections.unregister(connection_id)
            await websocket.send_json(
                {
                    "event": str(ServerEvent.ERROR),
                    "data": {"code": e.code, "message": str(e)},
                }
            )
            await websocket.close(code=AUTH_FAILURE_CLOSE_CODE, reason=e.code)
            return

        try:
            while True:
                try:
                    frame = await websocket.receive_json()
                except (json.JSONDecodeError, UnicodeDecodeError):
                    frame = {}
                if not isinstance(frame, dict):
                    frame = {}
                data = frame.get("data")
                outbound = await protocol.handle(
                    connection_id,
                    frame.get("event"),
                    data if isinstance(data, dict) else {},
                )
                await connections.deliver(outbound)
        except WebSocketDisconnect:
            logger.debug("Connection %s closed", connection_id)
        finally:
            connections.unregister(connection_id)
            protocol.disconnect(connection_id)

    return app


app = create_app()
