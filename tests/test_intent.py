"""Tests for intent classification and inbound message parsing."""

from __future__ import annotations

import re

import pytest

from jarvis.errors import MalformedMessage
from jarvis.orchestrator.intent import Intent, IntentClassifier, IntentMatcher
from jarvis.sessions.messages import (
    AuthorizationResponse,
    ClientInfo,
    Ping,
    Subscribe,
    ToolRequest,
    VoiceInput,
    parse_message,
)


@pytest.fixture
def classifier():
    return IntentClassifier()


class TestIntentClassifier:
    @pytest.mark.parametrize("text,path,args", [
        ("turn on the kitchen lights", "homeassistant.turn_on", {"entity_type": "light", "entity": "kitchen"}),
        ("Turn off living room light", "homeassistant.turn_off", {"entity_type": "light", "entity": "living room"}),
        ("lights off", "homeassistant.turn_off", {"entity_type": "light", "entity": "all"}),
        ("scan the network", "network.scan_network", {}),
        ("show me all devices", "network.get_devices", {}),
        ("status of docker containers", "docker.status", {}),
        ("how is the server", "system.status", {}),
        ("ban ip 10.0.0.66", "security.ban_ip", {"ip": "10.0.0.66"}),
        ("activate movie night", "homeassistant.activate_scene", {"scene": "movie_night"}),
        ("arm the alarm in night", "homeassistant.arm_night", {}),
        ("arm the alarm", "homeassistant.arm_away", {}),
        ("unlock the front door", "homeassistant.unlock_door", {"entity": "front"}),
        ("restart the plex container", "docker.restart", {"container": "plex"}),
        ("stop the sonarr container", "docker.stop", {"container": "sonarr"}),
        ("search for alien on plex", "media.search", {"query": "alien"}),
    ])
    def test_builtin_commands(self, classifier, text, path, args):
        intent = classifier.classify(text)
        assert intent.understood
        assert intent.path == path
        assert intent.args == args
        assert intent.original_text == text

    def test_unknown_text(self, classifier):
        intent = classifier.classify("what is the meaning of life")
        assert not intent.understood
        assert intent.tool is None and intent.action is None
        assert intent.confidence == 0.0

    def test_deterministic(self, classifier):
        first = classifier.classify("restart the plex container")
        second = classifier.classify("restart the plex container")
        assert first == second

    def test_first_declared_matcher_wins(self):
        anything = re.compile(r"plex", re.IGNORECASE)
        classifier = IntentClassifier([
            IntentMatcher("first", (anything,), lambda m: Intent("media", "search", {}, 0.5)),
            IntentMatcher("second", (anything,), lambda m: Intent("docker", "restart", {}, 0.99)),
        ])
        assert classifier.classify("restart plex").path == "media.search"


class TestIntent:
    def test_from_tool_path(self):
        intent = Intent.from_tool_path("network.scan_ports", {"ip": "10.0.0.2"}, request_id="r1")
        assert (intent.tool, intent.action) == ("network", "scan_ports")
        assert intent.understood
        assert intent.request_id == "r1"

    @pytest.mark.parametrize("path", ["network", "network.", ".scan", ""])
    def test_from_bad_tool_path(self, path):
        assert not Intent.from_tool_path(path).understood

    def test_key_ignores_arg_order(self):
        a = Intent("docker", "restart", {"a": 1, "b": 2}, 1.0)
        b = Intent("docker", "restart", {"b": 2, "a": 1}, 0.5)
        assert a.key() == b.key()


class TestParseMessage:
    def test_voice_input(self):
        msg = parse_message('{"type": "voice_input", "transcript": "lights on", "isPartial": true}')
        assert isinstance(msg, VoiceInput)
        assert msg.is_partial

    def test_nested_data_shape(self):
        msg = parse_message({"type": "tool_request", "data": {"tool": "docker.status", "args": {"all": True}}})
        assert isinstance(msg, ToolRequest)
        assert msg.tool == "docker.status"
        assert msg.args == {"all": True}
        assert msg.request_id

    def test_authorization_response(self):
        msg = parse_message({"type": "authorization_response", "authId": "auth_1", "pin": "1234"})
        assert isinstance(msg, AuthorizationResponse)
        assert (msg.auth_id, msg.pin, msg.totp) == ("auth_1", "1234", None)

    def test_subscribe_and_ping(self):
        assert parse_message({"type": "subscribe", "topics": ["audit"]}).topics == ["audit"]
        assert isinstance(parse_message({"type": "ping", "requestId": "p"}), Ping)
        assert isinstance(parse_message({"type": "subscribe", "topics": "network"}), Subscribe)

    def test_client_info_keeps_nested_payload(self):
        msg = parse_message({"type": "client_info", "data": {"device": "tablet", "room": "kitchen"}})
        assert isinstance(msg, ClientInfo)
        assert msg.info == {"device": "tablet", "room": "kitchen"}

    @pytest.mark.parametrize("raw,fragment", [
        ("{not json", "Invalid JSON"),
        ("[1, 2]", "JSON object"),
        ('{"transcript": "hi"}', "type field"),
        ('{"type": "teleport"}', "Unknown message type"),
        ('{"type": "voice_input", "transcript": ""}', "voice_input"),
        ('{"type": "authorization_response"}', "authorization_response"),
    ])
    def test_malformed(self, raw, fragment):
        with pytest.raises(MalformedMessage) as exc_info:
            parse_message(raw)
        assert fragment in exc_info.value.message
