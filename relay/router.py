"""Message routing between dashboards (viewers) and devices.

Routing table:

  chat              → every viewer
  command           → the device named by ``targetComputer``; a failure
                      response goes back to the sender if it cannot be
                      delivered
  api_registration  → promotes the sender to a device, then every viewer,
                      then a welcome chat back to the sender
  status_update     → every viewer
  command_response  → every viewer (they filter on ``originalCommandId``)

Nothing here raises into the caller: malformed input is logged and
dropped, and delivery failures surface only as counts and booleans.
"""

from __future__ import annotations

import logging
from typing import Any

from relay.messages import (
    SERVER_SOURCE,
    APIRegistrationMessage,
    BaseEnvelope,
    ChatMessage,
    CommandMessage,
    CommandResponseMessage,
    InvalidEnvelope,
    StatusUpdateMessage,
    create_message,
    parse_envelope,
    sanitize,
)
from relay.registry import DEVICE, VIEWER, ConnectionRegistry

logger = logging.getLogger(__name__)


class MessageRouter:
    """Dispatches envelopes to the registry by kind."""

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        self._handlers = {
            "chat": self._handle_chat,
            "command": self._handle_command,
            "api_registration": self._handle_registration,
            "status_update": self._handle_status_update,
            "command_response": self._handle_command_response,
        }

    async def route(self, message: Any, origin_id: str) -> None:
        """Validate, sanitize and dispatch one inbound message.

        *message* is either raw decoded JSON or an already-built envelope.
        *origin_id* is the connection it came from; HTTP requests pass a
        synthetic id that no connection owns.
        """
        try:
            envelope = message if isinstance(message, BaseEnvelope) else parse_envelope(message)
        except InvalidEnvelope as exc:
            logger.warning("Dropping invalid message from %s: %s", origin_id, exc)
            return

        logger.info("INCOMING [%s]: %s from %s", origin_id, envelope.kind, envelope.source)
        envelope = sanitize(envelope)

        handler = self._handlers.get(envelope.kind)
        if handler is None:
            logger.warning("Unknown message type from %s: %s", origin_id, envelope.kind)
            return

        try:
            await handler(envelope, origin_id)
        except Exception:
            logger.exception("Error routing %s from %s", envelope.kind, origin_id)

    # ── Handlers ───────────────────────────────────────────────────

    async def _handle_chat(self, msg: ChatMessage, origin_id: str) -> None:
        sent = await self.registry.broadcast(VIEWER, msg)
        logger.info(
            "Chat from %s [%s] broadcast to %d dashboards", msg.source, msg.priority, sent
        )

    async def _handle_command(self, msg: CommandMessage, origin_id: str) -> None:
        logger.info(
            "Command from %s to %s: %s", msg.source, msg.target_computer, msg.function_name
        )
        target = self.registry.find_device_by_name(msg.target_computer)
        if target is None:
            logger.warning("Target computer not found: %s", msg.target_computer)
            await self._reply_failure(
                msg, origin_id, f"Computer '{msg.target_computer}' is not connected"
            )
            return

        if await self.registry.send_to(target.id, msg):
            logger.info("Command forwarded to %s", msg.target_computer)
        else:
            logger.warning("Failed to forward command to %s", msg.target_computer)
            await self._reply_failure(
                msg, origin_id, f"Failed to communicate with computer '{msg.target_computer}'"
            )

    async def _handle_registration(self, msg: APIRegistrationMessage, origin_id: str) -> None:
        logger.info(
            "API registration from %s (%s): %s",
            msg.computer_name,
            msg.computer_type,
            ", ".join(f.name for f in msg.functions) or "no functions",
        )
        self.registry.update(
            origin_id,
            role=DEVICE,
            computer_name=msg.computer_name,
            computer_type=msg.computer_type,
            registered_functions=list(msg.functions),
        )

        sent = await self.registry.broadcast(VIEWER, msg)
        logger.info("Registration of %s broadcast to %d dashboards", msg.computer_name, sent)

        welcome = create_message(
            "chat",
            source=SERVER_SOURCE,
            content=(
                f"Welcome {msg.computer_name}! Registration successful. "
                f"Functions: {len(msg.functions)}"
            ),
            priority="medium",
            category="system",
        )
        await self.registry.send_to(origin_id, welcome)

    async def _handle_status_update(self, msg: StatusUpdateMessage, origin_id: str) -> None:
        sent = await self.registry.broadcast(VIEWER, msg)
        if sent > 0:
            logger.debug("Status update from %s broadcast to %d dashboards", msg.computer_name, sent)

    async def _handle_command_response(self, msg: CommandResponseMessage, origin_id: str) -> None:
        if msg.success:
            logger.info("Command %s succeeded", msg.original_command_id)
        else:
            logger.info("Command %s failed: %s", msg.original_command_id, msg.error)
        sent = await self.registry.broadcast(VIEWER, msg)
        logger.info("Command response broadcast to %d dashboards", sent)

    async def _reply_failure(self, msg: CommandMessage, origin_id: str, error: str) -> None:
        response = create_message(
            "command_response",
            source=SERVER_SOURCE,
            original_command_id=msg.id,
            success=False,
            error=error,
        )
        if not await self.registry.send_to(origin_id, response):
            logger.debug("Failure response for %s had no reachable sender", msg.id)

    # ── Host-facing helpers ────────────────────────────────────────

    async def announce(self, content: str, priority: str = "medium") -> int:
        """Push a server chat message to every dashboard."""
        message = create_message(
            "chat",
            source=SERVER_SOURCE,
            content=content,
            priority=priority,
            category="system",
        )
        sent = await self.registry.broadcast(VIEWER, message)
        logger.info("Server message sent to %d dashboards: %s", sent, content)
        return sent

    def computer_summary(self) -> dict[str, Any]:
        """Connected devices with their functions (parameter specs omitted)."""
        computers = self.registry.computer_list()
        return {
            "totalComputers": len(computers),
            "onlineComputers": sum(1 for c in computers if c["isOnline"]),
            "computers": [
                {
                    "name": c["computerName"],
                    "type": c["computerType"],
                    "functionCount": len(c["functions"]),
                    "isOnline": c["isOnline"],
                    "availableFunctions": [
                        {"name": f.name, "description": f.description, "category": f.category}
                        for f in c["functions"]
                    ],
                }
                for c in computers
            ],
        }
