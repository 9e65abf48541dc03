"""WebSocket endpoint for HUD and voice clients.

  Client → Hub:
    voice_input, tool_request, authorization_response,
    subscribe, unsubscribe, ping, client_info

  Hub → Client:
    connection, transcript, intent, tool_executing, tool_result,
    tool_error, authorization_*, audit_entry, system_metrics,
    network_scan_complete, heartbeat, pong, error

Commands are run as tasks so the receive loop keeps answering pings and
marking the session alive while a skill is busy.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import WebSocket, WebSocketDisconnect, status

from jarvis import auth
from jarvis.errors import MalformedMessage
from jarvis.events import Event, EventType, error_event
from jarvis.sessions.messages import (
    AuthorizationResponse,
    ClientInfo,
    Ping,
    Subscribe,
    ToolRequest,
    Unsubscribe,
    VoiceInput,
    parse_message,
)

if TYPE_CHECKING:
    from jarvis.hub import Hub

logger = logging.getLogger(__name__)


async def hub_ws_handler(websocket: WebSocket, hub: "Hub") -> None:
    """Serve one client connection until it disconnects."""
    if auth.JWT_SECRET:
        token = websocket.query_params.get("token", "")
        try:
            claims = auth.decode_token(token)
        except auth.TokenError as exc:
            logger.warning("Rejected WebSocket client: %s", exc)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
    else:
        claims = {}

    await websocket.accept()
    remote = websocket.client.host if websocket.client else ""
    sessions = hub.sessions
    session_id = await sessions.register(websocket, remote_addr=remote)
    if claims.get("sub"):
        sessions.update_metadata(session_id, {"user": claims["sub"]})
    sessions.send(
        session_id,
        Event(EventType.CONNECTION, {"sessionId": session_id, "message": "Connected to Jarvis hub"}),
    )

    tasks: set[asyncio.Task] = set()

    def _spawn(coro) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(_finished)

    def _finished(task: asyncio.Task) -> None:
        tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Command task for %s failed", session_id, exc_info=task.exception())

    try:
        while True:
            raw = await websocket.receive_text()
            sessions.mark_alive(session_id)
            try:
                msg = parse_message(raw)
            except MalformedMessage as exc:
                sessions.send(session_id, error_event(exc.message, exc.code))
                continue

            if isinstance(msg, Ping):
                data = {"requestId": msg.request_id} if msg.request_id else {}
                sessions.send(session_id, Event(EventType.PONG, data))

            elif isinstance(msg, Subscribe):
                topics = sessions.subscribe(session_id, msg.topics)
                sessions.send(
                    session_id, Event(EventType.SUBSCRIPTION_CONFIRMED, {"topics": sorted(topics)})
                )

            elif isinstance(msg, Unsubscribe):
                topics = sessions.unsubscribe(session_id, msg.topics)
                sessions.send(
                    session_id, Event(EventType.UNSUBSCRIPTION_CONFIRMED, {"topics": sorted(topics)})
                )

            elif isinstance(msg, ClientInfo):
                sessions.update_metadata(session_id, msg.info)

            elif isinstance(msg, VoiceInput):
                if msg.is_partial:
                    sessions.send(
                        session_id,
                        Event(EventType.TRANSCRIPT, {"text": msg.transcript, "isFinal": False}),
                    )
                else:
                    _spawn(hub.orchestrator.handle_input(session_id, msg.transcript))

            elif isinstance(msg, ToolRequest):
                _spawn(
                    hub.orchestrator.handle_tool_request(
                        session_id, msg.tool, msg.args, request_id=msg.request_id
                    )
                )

            elif isinstance(msg, AuthorizationResponse):
                _spawn(
                    hub.orchestrator.submit_authorization(session_id, msg.auth_id, msg.pin, msg.totp)
                )

    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", session_id)
    except Exception:
        logger.exception("Error in WebSocket session %s", session_id)
    finally:
        for task in list(tasks):
            task.cancel()
        await sessions.unregister(session_id)
