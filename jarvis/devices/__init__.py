"""Controllable devices, their capabilities, scenes and automation rules."""

from .commands import ProtocolRouter
from .registry import (
    CAPABILITY_COMMANDS,
    AutomationRule,
    DeviceRegistry,
    ManagedDevice,
    Scene,
    infer_capabilities,
)

__all__ = [
    "CAPABILITY_COMMANDS",
    "AutomationRule",
    "DeviceRegistry",
    "ManagedDevice",
    "ProtocolRouter",
    "Scene",
    "infer_capabilities",
]
