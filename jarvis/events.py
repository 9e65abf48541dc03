"""Outbound event types sent to connected sessions.

Every event serialises to ``{"type", "data", "timestamp"}`` with an ISO-8601
UTC wall-clock timestamp.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now() -> str:
    """ISO-8601 UTC timestamp used on every outbound message."""
    return datetime.now(timezone.utc).isoformat()


class EventType(str, enum.Enum):
    CONNECTION = "connection"
    PONG = "pong"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    UNSUBSCRIPTION_CONFIRMED = "unsubscription_confirmed"
    TRANSCRIPT = "transcript"
    INTENT = "intent"
    TOOL_EXECUTING = "tool_executing"
    TOOL_RESULT = "tool_result"
    TOOL_ERROR = "tool_error"
    AUTHORIZATION_REQUIRED = "authorization_required"
    AUTHORIZATION_SUCCESS = "authorization_success"
    AUTHORIZATION_FAILED = "authorization_failed"
    AUTHORIZATION_DENIED = "authorization_denied"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    AUDIT_ENTRY = "audit_entry"
    SYSTEM_METRICS = "system_metrics"
    NETWORK_SCAN_COMPLETE = "network_scan_complete"


class Topic(str, enum.Enum):
    """Broadcast topics a session may subscribe to."""

    AUDIT = "audit"
    SYSTEM_METRICS = "system_metrics"
    NETWORK = "network"


@dataclass(frozen=True)
class Event:
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}


def error_event(message: str, code: str = "error", **extra: Any) -> Event:
    return Event(EventType.ERROR, {"message": message, "code": code, **extra})
