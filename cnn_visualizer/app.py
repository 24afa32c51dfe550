"""
Real-time CNN visualization server.
Serves the browser client and streams layer-by-layer activations over a
WebSocket, one engine per connected browser.
"""

import argparse
import json
import logging
import uuid
from pathlib import Path

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.staticfiles import StaticFiles
from fastapi.websockets import WebSocketState

from .chat import ChatResponder, CompletionClient
from .config import Settings
from .engines import ENGINES, create_engine
from .logging_config import setup_logging
from .session import Session

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).parent / 'static'


def _channel(websocket):
    async def send(event):
        connected = WebSocketState.CONNECTED
        if websocket.client_state != connected or websocket.application_state != connected:
            logger.debug("Socket gone, dropping %s", event.get('type'))
            return
        await websocket.send_json(event)
    return send


def create_app(settings=None, engine_factory=None):
    settings = settings or Settings.from_env()
    if settings.engine not in ENGINES:
        raise ValueError(f"Unknown engine {settings.engine!r}, expected one of {sorted(ENGINES)}")
    if engine_factory is None:
        def engine_factory():
            return create_engine(settings.engine, pacing=settings.pacing)

    app = FastAPI(title='CNN Visualizer')
    app.state.settings = settings
    app.state.sessions = {}
    app.state.responder = ChatResponder(CompletionClient.from_settings(settings))

    if not settings.chat_enabled:
        logger.warning("OPENAI_API_KEY not set; chat assistant will use local fallback answers")

    @app.websocket('/ws')
    async def websocket_endpoint(websocket: WebSocket):
        await websocket.accept()

        session_id = uuid.uuid4().hex[:8]
        session = Session(_channel(websocket), engine_factory(), app.state.responder)
        app.state.sessions[session_id] = session
        logger.info("User connected: %s (%d active)", session_id, len(app.state.sessions))

        try:
            await session.start()
            while True:
                frame = await websocket.receive()
                if frame['type'] == 'websocket.disconnect':
                    raise WebSocketDisconnect(frame.get('code', 1000))
                raw = frame.get('text')
                if raw is None:
                    logger.warning("Session %s sent a non-text frame, ignoring", session_id)
                    continue
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Session %s sent invalid JSON", session_id)
                    continue
                await session.handle(message)
        except WebSocketDisconnect:
            logger.info("User disconnected: %s", session_id)
        finally:
            await session.close()
            app.state.sessions.pop(session_id, None)

    app.mount('/', StaticFiles(directory=STATIC_DIR, html=True), name='static')
    return app


def main(argv=None):
    parser = argparse.ArgumentParser(description='Real-time CNN visualization server')
    parser.add_argument('--host', default=None)
    parser.add_argument('--port', type=int, default=None)
    parser.add_argument('--engine', choices=sorted(ENGINES), default=None)
    parser.add_argument('--pacing', type=float, default=None,
                        help='multiplier for visualization delays, 0 disables them')
    parser.add_argument('--log-level', default=None)
    args = parser.parse_args(argv)

    settings = Settings.from_env().override(host=args.host, port=args.port, engine=args.engine,
                                            pacing=args.pacing, log_level=args.log_level)
    setup_logging(settings.log_level)
    logger.info("CNN visualization server on http://localhost:%d (engine=%s)", settings.port, settings.engine)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == '__main__':
    main()
