"""Inbound session message models.

Clients send JSON objects tagged with ``type``.  Fields may sit at the top
level or inside a ``data`` object (older HUD builds nest them); both shapes
parse to the same model.
"""

from __future__ import annotations

import json
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from jarvis.errors import MalformedMessage


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class VoiceInput(_Inbound):
    type: Literal["voice_input"]
    transcript: str = Field(min_length=1)
    is_partial: bool = Field(default=False, alias="isPartial")
    timestamp: str | None = None


class ToolRequest(_Inbound):
    type: Literal["tool_request"]
    tool: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)
    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex, alias="requestId")


class Subscribe(_Inbound):
    type: Literal["subscribe"]
    topics: list[str] | str


class Unsubscribe(_Inbound):
    type: Literal["unsubscribe"]
    topics: list[str] | str


class Ping(_Inbound):
    type: Literal["ping"]
    request_id: str | None = Field(default=None, alias="requestId")


class AuthorizationResponse(_Inbound):
    type: Literal["authorization_response"]
    auth_id: str = Field(alias="authId")
    pin: str | None = None
    totp: str | None = None


class ClientInfo(_Inbound):
    type: Literal["client_info"]
    info: dict[str, Any] = Field(default_factory=dict)


InboundMessage = Annotated[
    Union[
        VoiceInput,
        ToolRequest,
        Subscribe,
        Unsubscribe,
        Ping,
        AuthorizationResponse,
        ClientInfo,
    ],
    Field(discriminator="type"),
]

_ADAPTER: TypeAdapter = TypeAdapter(InboundMessage)


def parse_message(raw: str | bytes | dict[str, Any]) -> BaseModel:
    """Parse one inbound frame; raise :class:`MalformedMessage` on any problem."""
    if isinstance(raw, (str, bytes)):
        try:
            obj = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedMessage("Invalid JSON format") from exc
    else:
        obj = raw

    if not isinstance(obj, dict):
        raise MalformedMessage("Message must be a JSON object")
    if "type" not in obj:
        raise MalformedMessage("Message must have a type field")

    nested = obj.get("data")
    if isinstance(nested, dict):
        if obj["type"] == "client_info":
            obj = {"type": obj["type"], "info": nested}
        else:
            obj = {**nested, **{k: v for k, v in obj.items() if k != "data"}}

    try:
        return _ADAPTER.validate_python(obj)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        if first.get("type") == "union_tag_invalid":
            raise MalformedMessage(f"Unknown message type: {obj.get('type')}") from exc
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise MalformedMessage(
            f"Invalid {obj.get('type')} message: {where} {first.get('msg', '')}".strip()
        ) from exc
