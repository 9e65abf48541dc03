"""Audit trail — one record per dispatched command, success or not."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from jarvis.db import get_db
from jarvis.events import Event, EventType, Topic, utc_now
from jarvis.sessions.registry import SessionRegistry

logger = logging.getLogger(__name__)

_SUMMARY_LIMIT = 200


def summarize(value: Any, limit: int = _SUMMARY_LIMIT) -> str:
    """Compact one-line JSON rendering, truncated to *limit* characters."""
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value, sort_keys=True, default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."


@dataclass(frozen=True)
class AuditEntry:
    session_id: str
    tool: str | None
    action: str | None
    args_summary: str
    success: bool
    result_summary: str
    authorization: str | None = None
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
            "tool": self.tool,
            "action": self.action,
            "argsSummary": self.args_summary,
            "success": self.success,
            "resultSummary": self.result_summary,
            "authorization": self.authorization,
        }


class AuditTrail:
    """Persists audit entries to SQLite and broadcasts them on the audit topic."""

    def __init__(self, sessions: SessionRegistry, persist: bool = True) -> None:
        self._sessions = sessions
        self._persist = persist

    def record(
        self,
        session_id: str,
        tool: str | None,
        action: str | None,
        args: Any,
        success: bool,
        result: Any,
        authorization: str | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            session_id=session_id,
            tool=tool,
            action=action,
            args_summary=summarize(args),
            success=success,
            result_summary=summarize(result),
            authorization=authorization,
        )
        if self._persist:
            self._write(entry)
        self._sessions.broadcast(Topic.AUDIT.value, Event(EventType.AUDIT_ENTRY, entry.to_dict()))
        logger.info(
            "AUDIT %s %s.%s success=%s", session_id, tool, action, success,
        )
        return entry

    def recent(self, limit: int = 50, session_id: str | None = None) -> list[dict[str, Any]]:
        """Newest entries first."""
        sql = "SELECT * FROM audit_log"
        params: tuple = ()
        if session_id:
            sql += " WHERE session_id = ?"
            params = (session_id,)
        sql += " ORDER BY id DESC LIMIT ?"
        rows = get_db().execute(sql, (*params, limit)).fetchall()
        return [
            {
                "timestamp": r["timestamp"],
                "sessionId": r["session_id"],
                "tool": r["tool"],
                "action": r["action"],
                "argsSummary": r["args_summary"],
                "success": bool(r["success"]),
                "resultSummary": r["result_summary"],
                "authorization": r["auth_mode"],
            }
            for r in rows
        ]

    def _write(self, entry: AuditEntry) -> None:
        try:
            conn = get_db()
            conn.execute(
                "INSERT INTO audit_log (timestamp, session_id, tool, action, args_summary,"
                " success, result_summary, auth_mode) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.timestamp,
                    entry.session_id,
                    entry.tool,
                    entry.action,
                    entry.args_summary,
                    int(entry.success),
                    entry.result_summary,
                    entry.authorization,
                ),
            )
            conn.commit()
        except sqlite3.Error as exc:
            logger.error("Failed to persist audit entry: %s", exc)
