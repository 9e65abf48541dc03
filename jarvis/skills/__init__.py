"""Skill registry.

Skills are registered by name at startup; the orchestrator looks them up
by the ``tool`` part of an intent.
"""

from __future__ import annotations

import logging

from jarvis.errors import SkillNotFound

from .base import Skill

logger = logging.getLogger(__name__)

__all__ = ["Skill", "SkillRegistry"]


class SkillRegistry:
    """Lookup table of active skills.

    Anything with a ``name`` and an async ``execute(action, args)`` can be
    registered; ``supports``, ``health`` and ``close`` are used when present.
    """

    def __init__(self) -> None:
        self._skills: dict[str, Skill] = {}

    def register(self, skill: Skill) -> None:
        """Register (or replace) a skill instance."""
        name = getattr(skill, "name", "")
        if not name:
            raise ValueError(f"{type(skill).__name__} has no name")
        self._skills[name] = skill
        logger.info("Skill registered: %s (%s)", name, getattr(skill, "display_name", "") or name)

    def unregister(self, name: str) -> None:
        self._skills.pop(name, None)

    def get(self, name: str | None) -> Skill:
        skill = self._skills.get(name or "")
        if skill is None:
            raise SkillNotFound(f"Unknown skill: {name}")
        return skill

    def __contains__(self, name: object) -> bool:
        return name in self._skills

    def names(self) -> list[str]:
        return list(self._skills)

    async def health(self) -> dict[str, bool]:
        status: dict[str, bool] = {}
        for name, skill in self._skills.items():
            check = getattr(skill, "health", None)
            if check is None:
                status[name] = True
                continue
            try:
                status[name] = bool(await check())
            except Exception as exc:
                logger.warning("Health check for %s failed: %s", name, exc)
                status[name] = False
        return status

    async def close(self) -> None:
        for name, skill in self._skills.items():
            close = getattr(skill, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception:
                logger.exception("Closing skill %s failed", name)
