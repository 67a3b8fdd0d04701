"""Envelope model shared by dashboards, devices and the relay.

Every frame on the wire is a JSON object with four base keys::

    {"id": "...", "timestamp": 1700000000000, "type": "chat", "source": "..."}

plus the kind-specific keys listed below.  Keys are camelCase on the wire
and snake_case in Python; the discriminator travels as ``type`` and is
exposed as :attr:`BaseEnvelope.kind`.  Parsing accepts wire names only, so a
frame carrying ``kind`` or ``target_computer`` is missing its ``type`` or
``targetComputer``.

  chat              content, priority, [category]
  command           targetComputer, functionName, parameters
  api_registration  computerName, computerType, functions, status
  status_update     computerName, status (with isActive)
  command_response  originalCommandId, success, [result], [error]

Validation never coerces: a string where a number is expected, or a
boolean where a number is expected, rejects the whole envelope.
"""

from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import (
    AllowInfNan,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

KINDS = ("chat", "command", "api_registration", "status_update", "command_response")
BASE_FIELDS = ["id", "timestamp", "type", "source"]

SERVER_SOURCE = "server"

Priority = Literal["low", "medium", "high", "critical"]
ComputerType = Literal["computer", "turtle", "pocket"]
Number = Union[StrictInt, Annotated[StrictFloat, AllowInfNan(False)]]


def now_ms() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


def generate_message_id() -> str:
    return f"msg_{now_ms()}_{uuid.uuid4().hex[:9]}"


class InvalidEnvelope(ValueError):
    """Raised when raw input is not a well-formed envelope.

    ``fields`` names the wire keys that were missing or had the wrong type.
    """

    def __init__(self, fields: list[str], detail: str = "") -> None:
        self.fields = fields
        self.detail = detail
        super().__init__(f"invalid envelope fields: {', '.join(fields) or '<root>'}")


def _empty_table_as_list(value: Any) -> Any:
    # Lua serializes an empty table as {} rather than [].
    if isinstance(value, dict) and not value:
        return []
    return value


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        extra="allow",
    )


# ── Capability descriptors ────────────────────────────────────────


class ParameterSpec(_WireModel):
    name: StrictStr
    type: Literal["string", "number", "boolean", "select"]
    required: StrictBool
    description: StrictStr
    default_value: Any = None
    options: list[StrictStr] | None = None  # select only
    min: Number | None = None  # number only
    max: Number | None = None


class FunctionSpec(_WireModel):
    """A callable a device advertises.  The relay never executes it."""

    name: StrictStr
    description: StrictStr
    category: StrictStr
    parameters: list[ParameterSpec]
    cooldown: Number | None = None

    empty_parameters = field_validator("parameters", mode="before")(_empty_table_as_list)


class DeviceStatus(_WireModel):
    is_active: StrictBool


# ── Envelopes ─────────────────────────────────────────────────────


class BaseEnvelope(_WireModel):
    id: StrictStr
    timestamp: Number
    kind: StrictStr = Field(alias="type")
    source: StrictStr

    def to_wire(self) -> dict[str, Any]:
        """Serialize using wire key names, leaving out fields never supplied."""
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class ChatMessage(BaseEnvelope):
    kind: Literal["chat"] = Field(alias="type")
    content: StrictStr
    priority: Priority
    category: StrictStr | None = None


class CommandMessage(BaseEnvelope):
    kind: Literal["command"] = Field(alias="type")
    target_computer: StrictStr
    function_name: StrictStr
    parameters: dict[str, Any]


class APIRegistrationMessage(BaseEnvelope):
    kind: Literal["api_registration"] = Field(alias="type")
    computer_name: StrictStr
    computer_type: ComputerType
    functions: list[FunctionSpec]
    status: dict[str, Any]

    empty_functions = field_validator("functions", mode="before")(_empty_table_as_list)


class StatusUpdateMessage(BaseEnvelope):
    kind: Literal["status_update"] = Field(alias="type")
    computer_name: StrictStr
    status: DeviceStatus


class CommandResponseMessage(BaseEnvelope):
    kind: Literal["command_response"] = Field(alias="type")
    original_command_id: StrictStr
    success: StrictBool
    result: Any = None
    error: StrictStr | None = None


Envelope = Union[
    ChatMessage,
    CommandMessage,
    APIRegistrationMessage,
    StatusUpdateMessage,
    CommandResponseMessage,
]

_MODELS: dict[str, type[BaseEnvelope]] = {
    "chat": ChatMessage,
    "command": CommandMessage,
    "api_registration": APIRegistrationMessage,
    "status_update": StatusUpdateMessage,
    "command_response": CommandResponseMessage,
}


def _error_fields(exc: ValidationError) -> list[str]:
    fields: list[str] = []
    for err in exc.errors():
        loc = err.get("loc") or ()
        name = str(loc[0]) if loc else "<root>"
        if name not in fields:
            fields.append(name)
    return fields


# ── Parsing / construction ────────────────────────────────────────


def parse_envelope(raw: Any) -> Envelope:
    """Validate untyped input (usually decoded JSON) into an envelope.

    The base fields are checked first so that a frame with an unknown or
    missing ``type`` is reported against the base contract.

    Raises :class:`InvalidEnvelope` on any failure.
    """
    if not isinstance(raw, dict):
        raise InvalidEnvelope(list(BASE_FIELDS), "envelope must be a JSON object")

    try:
        base = BaseEnvelope.model_validate(raw)
    except ValidationError as exc:
        raise InvalidEnvelope(_error_fields(exc), str(exc)) from exc

    model = _MODELS.get(base.kind)
    if model is None:
        raise InvalidEnvelope(["type"], f"unknown message type: {base.kind!r}")

    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        raise InvalidEnvelope(_error_fields(exc), str(exc)) from exc


def create_message(kind: str, **fields: Any) -> Envelope:
    """Build a server-originated envelope, filling ``id`` and ``timestamp``.

    Field names may be given in either snake_case or wire form::

        create_message("chat", source="server", content="hi", priority="low")
    """
    wire = {(to_camel(key) if "_" in key else key): value for key, value in fields.items()}
    wire.setdefault("id", generate_message_id())
    wire.setdefault("timestamp", now_ms())
    return parse_envelope({**wire, "type": kind})


def sanitize(envelope: Envelope) -> Envelope:
    """Strip angle brackets from chat content; every other kind is untouched."""
    if isinstance(envelope, ChatMessage):
        cleaned = envelope.content.replace("<", "").replace(">", "")
        if cleaned != envelope.content:
            return envelope.model_copy(update={"content": cleaned})
    return envelope
