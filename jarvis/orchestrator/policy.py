"""Policy engine — decides which actions need extra authorization.

Rules are scanned in declaration order and the first match governs; rules
are never merged.  A pattern matches ``"<tool>.<action>"`` exactly, or by
prefix when it ends in ``*``.

Rules can be loaded from YAML::

    risk_rules:
      - match: docker.restart
        require: [pin]
      - match: "security.*"
        require: [pin, totp]
    max_retry_attempts: 3
    authorization_timeout: 60
"""

from __future__ import annotations

import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import yaml

logger = logging.getLogger(__name__)

POLICY_FILE = os.environ.get("JARVIS_POLICY_FILE", "")
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_AUTH_TIMEOUT = 60.0


class Factor(str, enum.Enum):
    PIN = "pin"
    TOTP = "totp"


@dataclass(frozen=True)
class PolicyRule:
    pattern: str
    required_factors: frozenset[Factor]

    def matches(self, action_path: str) -> bool:
        if self.pattern.endswith("*"):
            return action_path.startswith(self.pattern[:-1])
        return action_path == self.pattern


@dataclass(frozen=True)
class PolicyDecision:
    required: bool
    factors: frozenset[Factor] = frozenset()
    rule: PolicyRule | None = None

    @property
    def requires_pin(self) -> bool:
        return Factor.PIN in self.factors

    @property
    def requires_totp(self) -> bool:
        return Factor.TOTP in self.factors


NOT_REQUIRED = PolicyDecision(required=False)


def _rule(pattern: str, *factors: Factor) -> PolicyRule:
    return PolicyRule(pattern, frozenset(factors))


DEFAULT_RULES: tuple[PolicyRule, ...] = (
    _rule("security.*", Factor.PIN, Factor.TOTP),
    _rule("docker.restart", Factor.PIN),
    _rule("homeassistant.arm_*", Factor.PIN),
    _rule("homeassistant.unlock_*", Factor.PIN, Factor.TOTP),
    _rule("wireguard.*", Factor.PIN, Factor.TOTP),
    _rule("system.shutdown", Factor.PIN, Factor.TOTP),
)


@dataclass
class PolicyEngine:
    rules: Sequence[PolicyRule] = DEFAULT_RULES
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout: float = DEFAULT_AUTH_TIMEOUT
    source: str = field(default="defaults")

    def classify(self, tool: str, action: str) -> PolicyDecision:
        path = f"{tool}.{action}"
        for rule in self.rules:
            if rule.matches(path):
                if not rule.required_factors:
                    return PolicyDecision(required=False, rule=rule)
                return PolicyDecision(required=True, factors=rule.required_factors, rule=rule)
        return NOT_REQUIRED


# ── Loading ───────────────────────────────────────────────────────


def parse_policy(document: Any, source: str = "<memory>") -> PolicyEngine:
    """Build a :class:`PolicyEngine` from a parsed YAML document."""
    if not isinstance(document, dict):
        raise ValueError(f"Policy document must be a mapping: {source}")

    raw_rules = document.get("risk_rules", [])
    if not isinstance(raw_rules, list):
        raise ValueError(f"risk_rules must be a list: {source}")

    rules: list[PolicyRule] = []
    for i, item in enumerate(raw_rules):
        if not isinstance(item, dict) or "match" not in item:
            raise ValueError(f"risk_rules[{i}] must be a mapping with 'match': {source}")
        try:
            factors = frozenset(Factor(str(f).lower()) for f in item.get("require") or [])
        except ValueError as exc:
            raise ValueError(f"risk_rules[{i}] has an unknown factor: {exc}") from exc
        rules.append(PolicyRule(str(item["match"]), factors))

    return PolicyEngine(
        rules=tuple(rules),
        max_attempts=int(document.get("max_retry_attempts", DEFAULT_MAX_ATTEMPTS)),
        timeout=float(document.get("authorization_timeout", DEFAULT_AUTH_TIMEOUT)),
        source=source,
    )


def load_policy(path: str | Path | None = None) -> PolicyEngine:
    """Load policy from *path* (or ``JARVIS_POLICY_FILE``).

    A missing or unreadable file falls back to :data:`DEFAULT_RULES`; a file
    that exists but is malformed raises :class:`ValueError`.
    """
    path = path or POLICY_FILE
    if not path:
        return PolicyEngine()
    try:
        with open(path, encoding="utf-8") as fh:
            document = yaml.safe_load(fh)
    except OSError as exc:
        logger.warning("Policy file %s unreadable (%s); using default rules", path, exc)
        return PolicyEngine()
    except yaml.YAMLError as exc:
        raise ValueError(f"Policy file {path} is not valid YAML: {exc}") from exc
    engine = parse_policy(document, source=str(path))
    logger.info("Loaded %d policy rules from %s", len(engine.rules), path)
    return engine
