"""FastAPI application: session control endpoints and a control websocket."""
from __future__ import annotations

import asyncio
from json import JSONDecodeError
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from guiavision.config import settings
from guiavision.logging_config import get_logger, setup_default_logging
from guiavision.session.orchestrator import SessionOrchestrator
from guiavision.session.state import SessionState
from .handlers import busy_error, dispatch, error_message, session_error, status_message, unknown_error

setup_default_logging()
logger = get_logger(__name__)


async def send_user_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Forward orchestrator state/transcript/notice messages to the client."""
    while True:
        message = await queue.get()
        logger.debug(f"Send event {message}")
        await websocket.send_json(message)


def create_app(orchestrator: Optional[SessionOrchestrator] = None) -> FastAPI:
    orchestrator = orchestrator if orchestrator is not None else SessionOrchestrator(settings)
    # one control client at a time
    control_slot = asyncio.BoundedSemaphore(1)

    app = FastAPI(title="GuiaVision Live Assistant")
    app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(JSONDecodeError)
    async def bad_json(request: Request, exc: JSONDecodeError):
        return JSONResponse(status_code=400, content=unknown_error())

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/session")
    async def get_session() -> JSONResponse:
        return JSONResponse(orchestrator.status())

    @app.post("/session/start")
    async def start_session() -> JSONResponse:
        if orchestrator.state in (SessionState.CONNECTING, SessionState.ACTIVE):
            return JSONResponse(status_code=409, content=busy_error())
        if await orchestrator.start() is SessionState.ERROR:
            return JSONResponse(status_code=500, content=session_error(orchestrator))
        return JSONResponse(status_message(orchestrator))

    @app.post("/session/stop")
    async def stop_session() -> JSONResponse:
        orchestrator.stop()
        return JSONResponse(status_message(orchestrator))

    @app.websocket("/ws")
    async def control_ws(websocket: WebSocket):  # type: ignore[override]
        """Control commands in, session events out."""
        await websocket.accept()

        if control_slot.locked():
            await websocket.send_json(error_message(
                "SERVICE_BUSY", "Reached max count of connected clients. Service busy."
            ))
            await websocket.close()
            return

        async with control_slot:
            queue = orchestrator.subscribe()
            forwarder = asyncio.create_task(send_user_events(websocket, queue))
            try:
                while True:
                    reply = await dispatch(await websocket.receive_text(), orchestrator)
                    await websocket.send_json(reply)
            except WebSocketDisconnect as e:
                logger.info(f"Control websocket disconnected, code: {e.code}")
            finally:
                forwarder.cancel()
                orchestrator.unsubscribe(queue)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        logger.info("Application shutdown – stopping live session")
        await orchestrator.aclose()
        logger.info("Application shutdown complete")

    return app


app = create_app()
