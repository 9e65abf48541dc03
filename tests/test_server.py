"""HTTP and WebSocket surface tests using FastAPI's TestClient."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from jarvis import auth
from jarvis.devices import DeviceRegistry
from jarvis.hub import Hub
from jarvis.orchestrator.audit import AuditTrail
from jarvis.orchestrator.authorization import AuthorizationManager, CredentialVerifier
from jarvis.orchestrator.core import Orchestrator
from jarvis.orchestrator.policy import PolicyEngine
from jarvis.server import create_app
from jarvis.sessions.registry import SessionRegistry
from jarvis.skills import SkillRegistry
from jarvis.skills.network import NetworkSkill

from conftest import RecordingSkill, make_scanner


@pytest.fixture
def hub(pin_hash):
    sessions = SessionRegistry(heartbeat_interval=3600)
    scanner = make_scanner()
    skills = SkillRegistry()
    skills.register(RecordingSkill("docker", {"status", "restart"}))
    skills.register(NetworkSkill(scanner))
    authorizer = AuthorizationManager(CredentialVerifier(pin_hash=pin_hash), max_attempts=3, timeout=60)
    orchestrator = Orchestrator(sessions, skills, PolicyEngine(), authorizer, AuditTrail(sessions))
    return Hub(sessions, orchestrator, scanner, DeviceRegistry(), metrics_interval=0)


@pytest.fixture
def client(hub):
    with TestClient(create_app(hub)) as test_client:
        yield test_client


class TestHttp:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["skills"] == {"docker": True, "network": True}
        assert body["sessions"] == 0
        assert body["network"]["scanning"] is False

    def test_scan_and_query(self, client):
        scan = client.post("/api/network/scan", json={"subnet": "192.168.1.0/24"}).json()
        assert scan["ok"] is True
        assert scan["deviceCount"] == 2

        listed = client.get("/api/network/devices", params={"type": "Printer"}).json()
        assert listed["filteredCount"] == 1
        assert listed["totalCount"] == 2

        device = client.get("/api/network/devices/192.168.1.30").json()
        assert device["openPorts"] == [631, 9100]

    def test_unknown_device_is_404(self, client):
        assert client.get("/api/network/devices/10.9.9.9").status_code == 404

    def test_scan_rejects_bad_timeout(self, client):
        assert client.post("/api/network/scan", json={"timeout": 0}).status_code == 422

    def test_monitoring(self, client):
        started = client.post("/api/network/monitoring/start", json={"interval": 600}).json()
        assert started["monitoring"] is True
        assert started["interval"] == 600
        assert client.post("/api/network/monitoring/stop").json() == {"stopped": True}
        assert client.post("/api/network/monitoring/stop").json() == {"stopped": False}

    def test_classify(self, client):
        client.post("/api/network/scan", json={})
        body = client.post("/api/network/classify").json()
        assert body["classified"] == 2


class TestWebSocket:
    def test_session_flow(self, client):
        with client.websocket_connect("/ws") as ws:
            hello = ws.receive_json()
            assert hello["type"] == "connection"
            session_id = hello["data"]["sessionId"]

            ws.send_json({"type": "ping", "requestId": "p1"})
            pong = ws.receive_json()
            assert pong["type"] == "pong"
            assert pong["data"] == {"requestId": "p1"}

            ws.send_text("{not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["data"]["code"] == "malformed_message"

            ws.send_json({"type": "subscribe", "topics": ["audit"]})
            assert ws.receive_json()["data"]["topics"] == ["audit"]

            ws.send_json({"type": "tool_request", "tool": "docker.status", "requestId": "r1"})
            assert ws.receive_json()["type"] == "tool_executing"
            result = ws.receive_json()
            assert result["type"] == "tool_result"
            assert result["data"]["requestId"] == "r1"
            assert ws.receive_json()["type"] == "audit_entry"

            sessions = client.get("/api/sessions").json()["sessions"]
            assert [s["id"] for s in sessions] == [session_id]

        entries = client.get("/api/audit", params={"session": session_id}).json()["entries"]
        assert [(e["tool"], e["action"], e["success"]) for e in entries] == [("docker", "status", True)]

    def test_partial_transcript_is_echoed(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "voice_input", "data": {"transcript": "turn on", "isPartial": True}})
            event = ws.receive_json()
            assert event["type"] == "transcript"
            assert event["data"] == {"text": "turn on", "isFinal": False}

    def test_gated_command_asks_for_pin(self, client, hub):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_json({"type": "tool_request", "tool": "docker.restart", "args": {"container": "plex"}})
            required = ws.receive_json()
            assert required["type"] == "authorization_required"
            auth_id = required["data"]["authId"]

            ws.send_json({"type": "authorization_response", "authId": auth_id, "pin": "0000"})
            failed = ws.receive_json()
            assert failed["type"] == "authorization_failed"
            assert failed["data"]["remainingAttempts"] == 2

            ws.send_json({"type": "authorization_response", "authId": auth_id, "pin": "4821"})
            assert ws.receive_json()["type"] == "authorization_success"
            assert ws.receive_json()["type"] == "tool_executing"
            assert ws.receive_json()["type"] == "tool_result"
        assert hub.skills.get("docker").calls == [("restart", {"container": "plex"})]


class TestWebSocketAuth:
    def test_missing_token_rejected(self, client, monkeypatch):
        monkeypatch.setattr(auth, "JWT_SECRET", "s3cret")
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws") as ws:
                ws.receive_json()

    def test_valid_token_records_user(self, client, monkeypatch):
        monkeypatch.setattr(auth, "JWT_SECRET", "s3cret")
        token = auth.create_token("kitchen-hud")
        with client.websocket_connect(f"/ws?token={token}") as ws:
            assert ws.receive_json()["type"] == "connection"
            [session] = client.get("/api/sessions").json()["sessions"]
            assert session["metadata"] == {"user": "kitchen-hud"}
