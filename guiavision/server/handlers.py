"""Control-socket commands: ``{"type": "start" | "stop" | "status"}``."""
from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict

from guiavision.session.orchestrator import SessionOrchestrator

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any], SessionOrchestrator], Awaitable[Dict[str, Any]]]


class CommandError(ValueError):
    """Control message that cannot be dispatched."""


def error_message(code: str, message: str) -> Dict[str, Any]:
    return {"type": "error", "code": code, "message": message}


def unknown_error() -> Dict[str, Any]:
    return error_message("UNKNOWN_ERROR", "Unknown error occured.")


def busy_error() -> Dict[str, Any]:
    return error_message("SESSION_BUSY", "Session is already running.")


def session_error(orchestrator: SessionOrchestrator) -> Dict[str, Any]:
    return error_message("SESSION_ERROR", str(orchestrator.last_error or "Session failed."))


def status_message(orchestrator: SessionOrchestrator) -> Dict[str, Any]:
    return {"type": "status", **orchestrator.status()}


# ────────────────────────── Handlers ────────────────────────────
async def handle_start(message: Dict[str, Any], orchestrator: SessionOrchestrator) -> Dict[str, Any]:
    """Kick off devices and the live session without blocking the socket.

    The reply carries CONNECTING; the outcome follows as state and notice
    events, and a ``stop`` sent meanwhile is handled right away.
    """
    if orchestrator.launch() is None:
        return busy_error()
    logger.info("Start requested over control socket")
    return status_message(orchestrator)


async def handle_stop(message: Dict[str, Any], orchestrator: SessionOrchestrator) -> Dict[str, Any]:
    orchestrator.stop()
    return status_message(orchestrator)


async def handle_status(message: Dict[str, Any], orchestrator: SessionOrchestrator) -> Dict[str, Any]:
    return status_message(orchestrator)


async def handle_help(message: Dict[str, Any], orchestrator: SessionOrchestrator) -> Dict[str, Any]:
    orchestrator.announce_help()
    return status_message(orchestrator)


HANDLERS: Dict[str, Handler] = {
    "start": handle_start,
    "stop": handle_stop,
    "status": handle_status,
    "help": handle_help,
}


def parse_command(text: str) -> tuple:
    """Return ``(message, handler)`` for a raw socket frame or raise :class:`CommandError`."""
    try:
        message = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CommandError(f"invalid JSON: {exc}") from exc
    if not isinstance(message, dict) or "type" not in message:
        raise CommandError("message missing 'type' field")
    handler = HANDLERS.get(message["type"])
    if handler is None:
        raise CommandError(f"unknown message type {message['type']!r}")
    return message, handler


async def dispatch(text: str, orchestrator: SessionOrchestrator) -> Dict[str, Any]:
    """Run one control frame and build the reply; bad frames get UNKNOWN_ERROR."""
    try:
        message, handler = parse_command(text)
    except CommandError as exc:
        logger.warning(f"Rejected control message {text!r} -> {exc}")
        return unknown_error()
    logger.info("Received WS command: %s", message["type"])
    return await handler(message, orchestrator)
