"""Command orchestration: intents, policy, authorization and audit."""

from .authorization import AuthorizationManager, CredentialVerifier
from .core import Orchestrator
from .intent import Intent, IntentClassifier
from .policy import Factor, PolicyEngine, load_policy

__all__ = [
    "AuthorizationManager",
    "CredentialVerifier",
    "Factor",
    "Intent",
    "IntentClassifier",
    "Orchestrator",
    "PolicyEngine",
    "load_policy",
]
