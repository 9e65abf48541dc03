"""Live duplex sessions: registry, inbound messages and the WebSocket handler."""

from .registry import Session, SessionRegistry

__all__ = ["Session", "SessionRegistry"]
