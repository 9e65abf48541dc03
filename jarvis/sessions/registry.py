"""Session registry — owns every live duplex connection.

Each session gets a bounded outbox drained by its own writer task, so a
slow or broken consumer never blocks ``send`` / ``broadcast`` for anyone
else: when the outbox overflows or a write fails, that session is dropped.

Liveness is tracked with an application-level heartbeat: every interval all
sessions are marked not-alive and sent a ``heartbeat`` event; any inbound
message marks the session alive again.  A session still not-alive on the
next sweep is closed and unregistered.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from jarvis.events import Event, EventType, utc_now

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 30.0
DEFAULT_OUTBOX_SIZE = 256
_SEND_TIMEOUT = 10.0


class Connection(Protocol):
    """Transport seen by the registry (a Starlette ``WebSocket`` fits)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class SessionObserver(Protocol):
    """Component that must react when a session goes away."""

    def session_closed(self, session_id: str) -> None: ...


@dataclass
class Session:
    id: str
    connection: Connection
    remote_addr: str = ""
    connected_at: float = field(default_factory=time.time)
    subscriptions: set[str] = field(default_factory=set)
    alive: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)
    last_activity: float = field(default_factory=time.time)
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(DEFAULT_OUTBOX_SIZE))
    writer: asyncio.Task | None = None

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "remoteAddr": self.remote_addr,
            "connectedAt": self.connected_at,
            "lastActivity": self.last_activity,
            "subscriptions": sorted(self.subscriptions),
            "alive": self.alive,
            "metadata": dict(self.metadata),
        }


class SessionRegistry:
    """Registry of live sessions with topic fan-out and heartbeat sweeping."""

    def __init__(
        self,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        outbox_size: int = DEFAULT_OUTBOX_SIZE,
    ) -> None:
        self.heartbeat_interval = heartbeat_interval
        self._outbox_size = outbox_size
        self._sessions: dict[str, Session] = {}
        self._observers: list[SessionObserver] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._running = False

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the heartbeat sweep."""
        if self._running:
            return
        self._running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Session heartbeat started (%.0fs interval)", self.heartbeat_interval)

    async def stop(self) -> None:
        """Stop the heartbeat and close every session."""
        self._running = False
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        for session_id in list(self._sessions):
            await self.unregister(session_id, reason="server shutting down")
        logger.info("Session registry stopped")

    def add_observer(self, observer: SessionObserver) -> None:
        self._observers.append(observer)

    # ── CRUD ───────────────────────────────────────────────────────

    async def register(self, conn: Connection, remote_addr: str = "") -> str:
        """Register a connection and start its writer; return the session id."""
        session_id = f"client_{uuid.uuid4().hex[:12]}"
        session = Session(
            id=session_id,
            connection=conn,
            remote_addr=remote_addr,
            outbox=asyncio.Queue(self._outbox_size),
        )
        session.writer = asyncio.create_task(self._writer(session))
        self._sessions[session_id] = session
        logger.info("Session connected: %s from %s", session_id, remote_addr or "?")
        return session_id

    async def unregister(self, session_id: str, reason: str = "disconnected") -> None:
        """Remove a session and close its transport.  Unknown ids are ignored."""
        session = self._drop(session_id, reason)
        if session is None:
            return
        try:
            await session.connection.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Close failed for %s: %s", session_id, exc)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def list_sessions(self) -> list[dict[str, Any]]:
        return [s.describe() for s in self._sessions.values()]

    # ── Messaging ──────────────────────────────────────────────────

    def send(self, session_id: str, message: Event | dict[str, Any]) -> bool:
        """Queue *message* for one session.

        Never raises: unknown or closed sessions are a no-op returning
        ``False``.  A session whose outbox is full is dropped.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        payload = _serialise(message)
        try:
            session.outbox.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Dropping slow consumer %s (outbox full)", session_id)
            self._schedule_close(session_id, "slow consumer")
            return False
        return True

    def broadcast(self, topic: str, message: Event | dict[str, Any]) -> int:
        """Send to every session subscribed to *topic*; return delivery count."""
        payload = _serialise(message)
        delivered = 0
        for session_id, session in list(self._sessions.items()):
            if topic in session.subscriptions and self.send(session_id, payload):
                delivered += 1
        return delivered

    async def flush(self) -> None:
        """Wait until every queued outbound message has been written."""
        for session in list(self._sessions.values()):
            if session.writer is not None and not session.writer.done():
                await session.outbox.join()

    # ── Subscriptions ──────────────────────────────────────────────

    def subscribe(self, session_id: str, topics: Iterable[str] | str) -> set[str]:
        session = self._sessions.get(session_id)
        if session is None:
            return set()
        session.subscriptions.update(_topics(topics))
        logger.info("Session %s subscribed to %s", session_id, sorted(session.subscriptions))
        return set(session.subscriptions)

    def unsubscribe(self, session_id: str, topics: Iterable[str] | str) -> set[str]:
        session = self._sessions.get(session_id)
        if session is None:
            return set()
        session.subscriptions.difference_update(_topics(topics))
        return set(session.subscriptions)

    def update_metadata(self, session_id: str, metadata: dict[str, Any]) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.metadata.update(metadata)

    # ── Liveness ───────────────────────────────────────────────────

    def mark_alive(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.alive = True
            session.last_activity = time.time()

    async def heartbeat_once(self) -> list[str]:
        """Run one heartbeat sweep; return the ids of sessions closed as dead."""
        dead = [sid for sid, s in self._sessions.items() if not s.alive]
        for session_id in dead:
            logger.info("Terminating dead connection: %s", session_id)
            await self.unregister(session_id, reason="heartbeat timeout")
        for session_id, session in list(self._sessions.items()):
            session.alive = False
            self.send(session_id, Event(EventType.HEARTBEAT))
        return dead

    # ── Internal ───────────────────────────────────────────────────

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat_once()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    async def _writer(self, session: Session) -> None:
        while True:
            payload = await session.outbox.get()
            try:
                await asyncio.wait_for(
                    session.connection.send_json(payload), timeout=_SEND_TIMEOUT
                )
            except asyncio.CancelledError:
                session.outbox.task_done()
                raise
            except Exception as exc:  # noqa: BLE001
                session.outbox.task_done()
                logger.warning("Send to %s failed (%s); dropping session", session.id, exc)
                self._schedule_close(session.id, "send failed")
                return
            session.outbox.task_done()

    def _drop(self, session_id: str, reason: str) -> Session | None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        current = asyncio.current_task()
        if session.writer is not None and session.writer is not current:
            session.writer.cancel()
        _drain(session.outbox)
        duration = time.time() - session.connected_at
        logger.info("Session %s closed after %ds (%s)", session_id, round(duration), reason)
        for observer in self._observers:
            try:
                observer.session_closed(session_id)
            except Exception:
                logger.exception("Session observer failed for %s", session_id)
        return session

    def _schedule_close(self, session_id: str, reason: str) -> None:
        session = self._drop(session_id, reason)
        if session is None:
            return

        async def _close() -> None:
            try:
                await session.connection.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Close failed for %s: %s", session_id, exc)

        asyncio.get_running_loop().create_task(_close())


def _serialise(message: Event | dict[str, Any]) -> dict[str, Any]:
    if isinstance(message, Event):
        return message.to_dict()
    if "timestamp" not in message:
        return {**message, "timestamp": utc_now()}
    return message


def _topics(topics: Iterable[str] | str) -> set[str]:
    if isinstance(topics, str):
        return {topics}
    return {str(t) for t in topics}


def _drain(queue: asyncio.Queue) -> None:
    while True:
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            return
        queue.task_done()
