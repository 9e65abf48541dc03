"""Skill base class.

A skill binds one domain (Docker, Home Assistant, the network scanner...)
behind ``execute(action, args) -> dict``.  Results always carry ``ok``;
the orchestrator treats everything else in the payload as opaque.
"""

from __future__ import annotations

import abc
from typing import Any

from jarvis.errors import CapabilityNotSupported


class Skill(abc.ABC):
    """Abstract base class for all hub skills."""

    #: Registry key, e.g. ``"docker"``; the ``tool`` part of ``tool.action``
    name: str = ""

    #: Human-readable name shown in logs and ``/health``
    display_name: str = ""

    #: Actions this skill declares
    actions: frozenset[str] = frozenset()

    def supports(self, action: str) -> bool:
        return action in self.actions

    async def execute(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        """Run *action*; raise :class:`CapabilityNotSupported` for undeclared ones."""
        if not self.supports(action):
            raise CapabilityNotSupported(f"{self.name} does not support '{action}'")
        result = await self.run(action, dict(args or {}))
        if "ok" not in result:
            result = {"ok": True, **result}
        return result

    @abc.abstractmethod
    async def run(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        """Execute a declared action."""
        raise NotImplementedError

    async def health(self) -> bool:
        """Return ``True`` if the skill's back-end is reachable."""
        return True

    async def close(self) -> None:
        """Release any resources held by the skill."""
