"""Home Assistant skill — entity control through the HA REST API."""

from __future__ import annotations

import logging
import re
from typing import Any

from jarvis.integrations.ha import HAClient, HAClientError

from .base import Skill

logger = logging.getLogger(__name__)

_ARM_MODES = {"away", "home", "night", "vacation"}


def entity_id_for(domain: str, name: str | None) -> str:
    """``("light", "Living Room")`` -> ``"light.living_room"``; ``all`` stays ``all``."""
    if not name or name.lower() in ("all", "every", "the"):
        return "all"
    if "." in name:
        return name
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return f"{domain}.{slug}"


class HomeAssistantSkill(Skill):
    name = "homeassistant"
    display_name = "Home Assistant"
    actions = frozenset({
        "get_states",
        "get_state",
        "turn_on",
        "turn_off",
        "toggle",
        "set_brightness",
        "set_temperature",
        "call_service",
        "activate_scene",
        "unlock_door",
    })

    def __init__(self, client: HAClient) -> None:
        self.client = client

    def supports(self, action: str) -> bool:
        if action.startswith("arm_"):
            return action[4:] in _ARM_MODES
        return action in self.actions

    async def health(self) -> bool:
        return await self.client.health()

    async def close(self) -> None:
        await self.client.aclose()

    async def run(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._run(action, args)
        except HAClientError as exc:
            logger.warning("Home Assistant %s failed: %s", action, exc)
            return {"ok": False, "error": str(exc)}

    async def _run(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        if action == "get_states":
            states = await self.client.get_states()
            domain = args.get("domain")
            if domain:
                states = [s for s in states if s.get("entity_id", "").startswith(f"{domain}.")]
            return {"states": states, "count": len(states)}

        if action == "get_state":
            return {"state": await self.client.get_state(args["entity_id"])}

        if action in ("turn_on", "turn_off", "toggle"):
            domain = args.get("entity_type") or args.get("domain") or "homeassistant"
            entity_id = args.get("entity_id") or entity_id_for(domain, args.get("entity"))
            return await self._call(domain, action, {"entity_id": entity_id})

        if action == "set_brightness":
            entity_id = args.get("entity_id") or entity_id_for("light", args.get("entity"))
            return await self._call(
                "light", "turn_on", {"entity_id": entity_id, "brightness_pct": int(args.get("level", 100))}
            )

        if action == "set_temperature":
            entity_id = args.get("entity_id") or entity_id_for("climate", args.get("entity"))
            return await self._call(
                "climate", "set_temperature", {"entity_id": entity_id, "temperature": args["temperature"]}
            )

        if action == "call_service":
            return await self._call(args["domain"], args["service"], dict(args.get("data") or {}))

        if action == "activate_scene":
            return await self._call("scene", "turn_on", {"entity_id": entity_id_for("scene", args.get("scene"))})

        if action == "unlock_door":
            entity_id = args.get("entity_id") or entity_id_for("lock", args.get("entity"))
            return await self._call("lock", "unlock", {"entity_id": entity_id})

        # arm_<mode>
        data = {"entity_id": args.get("entity_id") or "all"}
        if args.get("code"):
            data["code"] = args["code"]
        return await self._call("alarm_control_panel", f"alarm_{action}", data)

    async def _call(self, domain: str, service: str, data: dict[str, Any]) -> dict[str, Any]:
        changed = await self.client.call_service(domain, service, data)
        logger.info("HA %s.%s %s", domain, service, data.get("entity_id", ""))
        return {"service": f"{domain}.{service}", "data": data, "changed": changed}
