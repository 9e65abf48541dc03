"""Tests for audit persistence and broadcast."""

from __future__ import annotations

from jarvis.orchestrator.audit import AuditTrail, summarize

from conftest import FakeConnection


class TestSummaries:
    def test_json_is_stable_and_truncated(self):
        assert summarize({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
        long = summarize({"text": "x" * 500}, limit=40)
        assert len(long) == 40
        assert long.endswith("...")

    def test_none_is_empty(self):
        assert summarize(None) == ""


class TestAuditTrail:
    async def test_record_persists_and_broadcasts(self, sessions):
        conn = FakeConnection()
        sid = await sessions.register(conn)
        sessions.subscribe(sid, "audit")
        trail = AuditTrail(sessions)

        trail.record(sid, "docker", "restart", {"container": "plex"}, True, {"ok": True},
                     authorization="pin")
        await sessions.flush()

        [event] = conn.of_type("audit_entry")
        assert event["data"]["authorization"] == "pin"
        [row] = trail.recent()
        assert row["argsSummary"] == '{"container": "plex"}'
        assert row["success"] is True
        await sessions.stop()

    async def test_recent_filters_and_orders(self, sessions):
        trail = AuditTrail(sessions)
        trail.record("client_a", "docker", "status", {}, True, {})
        trail.record("client_b", "system", "status", {}, True, {})
        trail.record("client_a", "docker", "stop", {}, False, {"error": "boom"})

        assert [e["action"] for e in trail.recent(session_id="client_a")] == ["stop", "status"]
        assert len(trail.recent(limit=1)) == 1

    async def test_without_persistence(self, sessions):
        trail = AuditTrail(sessions, persist=False)
        trail.record("client_a", "docker", "status", {}, True, {})
        assert trail.recent() == []
