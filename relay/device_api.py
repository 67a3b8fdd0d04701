"""HTTP ingestion for devices that cannot hold a WebSocket.

  GET  /api/computers                 — connected devices and their functions
  POST /api/computercraft/register    — announce a device
  POST /api/computercraft/message     — submit a complete envelope
  POST /api/computercraft/command     — send a command (operator/testing)

HTTP is stateless, so every request is routed under a synthetic
connection id that no WebSocket owns.  Replies the router addresses to
that id (welcome chats, command failures) are silently undeliverable.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request

from relay.messages import BASE_FIELDS, InvalidEnvelope, create_message, now_ms, parse_envelope
from relay.router import MessageRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["devices"])

_REGISTER_REQUIRED = ["computerName", "computerType", "functions"]
_COMMAND_REQUIRED = ["targetComputer", "functionName"]


def _router(request: Request) -> MessageRouter:
    return request.app.state.router


def _as_object(body: Any) -> dict[str, Any]:
    # An empty, null or non-object body is missing every required field.
    return body if isinstance(body, dict) else {}


def _missing(body: dict[str, Any], required: list[str]) -> list[str]:
    return [name for name in required if body.get(name) in (None, "")]


def _bad_request(error: str, required: list[str]) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": error, "required": required})


@router.get("/computers")
async def list_computers(request: Request):
    return _router(request).computer_summary()


@router.post("/computercraft/register")
async def register_computer(request: Request, body: Any = Body(None)):
    body = _as_object(body)
    missing = _missing(body, _REGISTER_REQUIRED)
    if missing:
        raise _bad_request("Missing required fields", missing)

    name = body["computerName"]
    try:
        envelope = create_message(
            "api_registration",
            source=name if isinstance(name, str) else "",
            computerName=name,
            computerType=body["computerType"],
            functions=body["functions"],
            status=body.get("status") or {},
        )
    except InvalidEnvelope as exc:
        raise _bad_request("Invalid registration", exc.fields)

    await _router(request).route(envelope, f"http_{name}_register")

    return {
        "success": True,
        "message": f"Computer {name} registered successfully",
        "registeredFunctions": len(envelope.functions),
    }


@router.post("/computercraft/message")
async def post_message(request: Request, body: Any = Body(None)):
    try:
        envelope = parse_envelope(body)
    except InvalidEnvelope as exc:
        logger.warning("Rejected HTTP message: %s", exc)
        raise _bad_request("Invalid message format", list(BASE_FIELDS))

    logger.info("HTTP message from %s: %s", envelope.source, envelope.kind)
    await _router(request).route(envelope, f"http_{envelope.source}_{now_ms()}")

    return {
        "success": True,
        "timestamp": now_ms(),
        "message": "Message received and processed",
    }


@router.post("/computercraft/command")
async def send_command(request: Request, body: Any = Body(None)):
    body = _as_object(body)
    missing = _missing(body, _COMMAND_REQUIRED)
    if missing:
        raise _bad_request("Missing required fields", missing)

    try:
        envelope = create_message(
            "command",
            source="http_api",
            targetComputer=body["targetComputer"],
            functionName=body["functionName"],
            parameters=body.get("parameters") or {},
        )
    except InvalidEnvelope as exc:
        raise _bad_request("Invalid command", exc.fields)

    await _router(request).route(envelope, f"http_command_{now_ms()}")

    return {
        "success": True,
        "message": f"Command sent to {envelope.target_computer}",
        "command": envelope.function_name,
    }
