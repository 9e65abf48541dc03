"""Intent classification — an ordered list of (pattern, handler) pairs.

Deterministic and first-match-wins: matchers are tried in declaration
order, and within a matcher its patterns in order.  Text that matches
nothing yields a zero-confidence :class:`Intent`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Intent:
    tool: str | None
    action: str | None
    args: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    original_text: str = ""
    request_id: str | None = None

    @property
    def understood(self) -> bool:
        return bool(self.tool and self.action) and self.confidence > 0

    @property
    def path(self) -> str:
        return f"{self.tool}.{self.action}"

    def key(self) -> str:
        """Stable identity used to reject duplicate authorizations."""
        return f"{self.path}:{json.dumps(self.args, sort_keys=True, default=str)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "action": self.action,
            "args": self.args,
            "confidence": self.confidence,
            "originalText": self.original_text,
        }

    @classmethod
    def from_tool_path(
        cls, tool_path: str, args: dict[str, Any] | None = None, request_id: str | None = None
    ) -> "Intent":
        """Build an explicit intent from ``"<tool>.<action>"``."""
        tool, _, action = tool_path.partition(".")
        return cls(
            tool=tool or None,
            action=action or None,
            args=dict(args or {}),
            confidence=1.0 if tool and action else 0.0,
            original_text=tool_path,
            request_id=request_id,
        )


Handler = Callable[[re.Match], Intent]


@dataclass(frozen=True)
class IntentMatcher:
    name: str
    patterns: tuple[re.Pattern, ...]
    handler: Handler

    def match(self, text: str) -> Intent | None:
        for pattern in self.patterns:
            m = pattern.search(text)
            if m:
                return self.handler(m)
        return None


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


def _slug(text: str) -> str:
    return re.sub(r"\s+", "_", text.strip().lower())


# ── Handlers ──────────────────────────────────────────────────────


def _lights(m: re.Match) -> Intent:
    groups = m.groupdict()
    state = groups.get("state") or "on"
    return Intent(
        "homeassistant",
        "turn_on" if state.lower() == "on" else "turn_off",
        {"entity_type": "light", "entity": (groups.get("entity") or "all").strip()},
        0.9,
    )


def _scan(m: re.Match) -> Intent:
    return Intent("network", "scan_network", {}, 0.9)


def _list_devices(m: re.Match) -> Intent:
    return Intent("network", "get_devices", {}, 0.85)


def _status(m: re.Match) -> Intent:
    subject = (m.groupdict().get("subject") or "").lower()
    if "container" in subject or "docker" in subject:
        return Intent("docker", "status", {}, 0.85)
    return Intent("system", "status", {}, 0.8)


def _ban(m: re.Match) -> Intent:
    return Intent("security", "ban_ip", {"ip": m.group("ip")}, 0.95)


def _scene(m: re.Match) -> Intent:
    return Intent("homeassistant", "activate_scene", {"scene": _slug(m.group("scene"))}, 0.9)


def _arm(m: re.Match) -> Intent:
    mode = _slug(m.groupdict().get("mode") or "away")
    return Intent("homeassistant", f"arm_{mode}", {}, 0.9)


def _unlock(m: re.Match) -> Intent:
    return Intent("homeassistant", "unlock_door", {"entity": _slug(m.group("door"))}, 0.9)


def _docker_restart(m: re.Match) -> Intent:
    return Intent("docker", "restart", {"container": m.group("container").strip()}, 0.85)


def _docker_start_stop(m: re.Match) -> Intent:
    return Intent(
        "docker", m.group("verb").lower(), {"container": m.group("container").strip()}, 0.85
    )


def _media(m: re.Match) -> Intent:
    groups = m.groupdict()
    if groups.get("verb"):
        return Intent("media", groups["verb"].lower(), {"query": groups["query"].strip()}, 0.8)
    return Intent("media", "search", {"query": groups["query"].strip()}, 0.8)


DEFAULT_MATCHERS: tuple[IntentMatcher, ...] = (
    IntentMatcher(
        "lights",
        _compile(
            r"turn (?P<state>on|off) (?:the )?(?P<entity>.+?) lights?\b",
            r"\blights? (?P<state>on|off)\b",
        ),
        _lights,
    ),
    IntentMatcher(
        "network_scan",
        _compile(r"\b(?:scan|discover)\b.*\b(?:network|devices)\b"),
        _scan,
    ),
    IntentMatcher(
        "network_devices",
        _compile(r"\b(?:list|show)\b.*\bdevices\b", r"what(?:'s| is) on (?:the|my) network"),
        _list_devices,
    ),
    IntentMatcher(
        "status",
        _compile(r"\b(?:status|health) (?:of )?(?P<subject>.+)", r"how (?:is|are) (?P<subject>.+)"),
        _status,
    ),
    IntentMatcher(
        "security",
        _compile(r"\bban (?:ip )?(?P<ip>\d{1,3}(?:\.\d{1,3}){3})\b"),
        _ban,
    ),
    IntentMatcher(
        "scenes",
        _compile(r"\b(?P<scene>night mode|movie night|work focus|away mode)\b"),
        _scene,
    ),
    IntentMatcher(
        "alarm",
        _compile(r"\barm (?:the )?(?:alarm|security)(?: (?:in )?(?P<mode>away|home|night))?"),
        _arm,
    ),
    IntentMatcher(
        "locks",
        _compile(r"\bunlock (?:the )?(?P<door>.+?)(?: door)?$"),
        _unlock,
    ),
    IntentMatcher(
        "docker_restart",
        _compile(r"\brestart (?:the )?(?P<container>.+?) container\b"),
        _docker_restart,
    ),
    IntentMatcher(
        "docker_start_stop",
        _compile(r"\b(?P<verb>stop|start) (?:the )?(?P<container>.+?) container\b"),
        _docker_start_stop,
    ),
    IntentMatcher(
        "media",
        _compile(
            r"\bsearch (?:for )?(?P<query>.+) (?:on|in) plex\b",
            r"^(?P<verb>play|pause|stop) (?P<query>.+)",
        ),
        _media,
    ),
)


class IntentClassifier:
    """Runs an ordered matcher list over free text."""

    def __init__(self, matchers: Sequence[IntentMatcher] = DEFAULT_MATCHERS) -> None:
        self._matchers = tuple(matchers)

    @property
    def matchers(self) -> tuple[IntentMatcher, ...]:
        return self._matchers

    def classify(self, raw_text: str) -> Intent:
        text = raw_text.strip()
        for matcher in self._matchers:
            intent = matcher.match(text)
            if intent is not None:
                logger.debug("Intent %s matched %r via %s", intent.path, text, matcher.name)
                return Intent(
                    tool=intent.tool,
                    action=intent.action,
                    args=intent.args,
                    confidence=intent.confidence,
                    original_text=raw_text,
                )
        return Intent(tool=None, action=None, confidence=0.0, original_text=raw_text)
