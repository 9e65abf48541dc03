"""Tests for the policy engine and YAML policy loading."""

from __future__ import annotations

import pytest

from jarvis.orchestrator.policy import (
    DEFAULT_RULES,
    Factor,
    PolicyEngine,
    PolicyRule,
    load_policy,
    parse_policy,
)


class TestPolicyRule:
    def test_exact_match(self):
        rule = PolicyRule("docker.restart", frozenset({Factor.PIN}))
        assert rule.matches("docker.restart")
        assert not rule.matches("docker.restart_all")
        assert not rule.matches("docker.stop")

    def test_prefix_match(self):
        rule = PolicyRule("security.*", frozenset({Factor.PIN, Factor.TOTP}))
        assert rule.matches("security.ban_ip")
        assert rule.matches("security.")
        assert not rule.matches("securityx.ban")


class TestPolicyEngine:
    def test_default_gated_actions(self):
        engine = PolicyEngine()
        restart = engine.classify("docker", "restart")
        assert restart.required
        assert restart.requires_pin and not restart.requires_totp

        ban = engine.classify("security", "ban_ip")
        assert ban.requires_pin and ban.requires_totp

        arm = engine.classify("homeassistant", "arm_away")
        assert arm.required and arm.factors == frozenset({Factor.PIN})

        unlock = engine.classify("homeassistant", "unlock_door")
        assert unlock.factors == frozenset({Factor.PIN, Factor.TOTP})

    def test_ungated_action(self):
        decision = PolicyEngine().classify("homeassistant", "turn_on")
        assert not decision.required
        assert decision.factors == frozenset()

    def test_first_match_wins_without_merging(self):
        engine = PolicyEngine(rules=(
            PolicyRule("docker.*", frozenset({Factor.PIN})),
            PolicyRule("docker.restart", frozenset({Factor.PIN, Factor.TOTP})),
        ))
        decision = engine.classify("docker", "restart")
        assert decision.factors == frozenset({Factor.PIN})
        assert decision.rule.pattern == "docker.*"

    def test_rule_without_factors_exempts(self):
        engine = PolicyEngine(rules=(
            PolicyRule("security.status", frozenset()),
            PolicyRule("security.*", frozenset({Factor.PIN})),
        ))
        assert not engine.classify("security", "status").required
        assert engine.classify("security", "ban_ip").required


class TestPolicyLoading:
    def test_parse_document(self):
        engine = parse_policy({
            "risk_rules": [
                {"match": "docker.restart", "require": ["pin"]},
                {"match": "lights.*", "require": ["PIN", "totp"]},
            ],
            "max_retry_attempts": 5,
            "authorization_timeout": 30,
        })
        assert engine.max_attempts == 5
        assert engine.timeout == 30.0
        assert engine.classify("lights", "on").factors == frozenset({Factor.PIN, Factor.TOTP})

    def test_unknown_factor_rejected(self):
        with pytest.raises(ValueError):
            parse_policy({"risk_rules": [{"match": "x.y", "require": ["retina"]}]})

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError):
            parse_policy(["docker.restart"])

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(
            "risk_rules:\n"
            "  - match: system.reboot\n"
            "    require: [pin]\n"
            "max_retry_attempts: 2\n"
        )
        engine = load_policy(path)
        assert engine.source == str(path)
        assert engine.max_attempts == 2
        assert engine.classify("system", "reboot").requires_pin
        assert not engine.classify("docker", "restart").required

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        engine = load_policy(tmp_path / "nope.yaml")
        assert tuple(engine.rules) == DEFAULT_RULES

    def test_malformed_yaml_is_value_error(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("risk_rules: [docker.restart\n")
        with pytest.raises(ValueError, match="not valid YAML"):
            load_policy(path)
