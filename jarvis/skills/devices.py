"""Device skill — capability-checked control, scenes and automations."""

from __future__ import annotations

from typing import Any

from jarvis.devices.registry import DeviceRegistry
from jarvis.discovery.inventory import DeviceInventory

from .base import Skill


class DeviceSkill(Skill):
    name = "devices"
    display_name = "Device Manager"
    actions = frozenset({
        "register_device",
        "get_devices",
        "control_device",
        "get_device_state",
        "bulk_control",
        "create_scene",
        "get_scenes",
        "activate_scene",
        "create_automation",
        "get_automations",
        "trigger_automation",
        "sync_devices",
    })

    def __init__(self, registry: DeviceRegistry, inventory: DeviceInventory | None = None) -> None:
        self.registry = registry
        self.inventory = inventory

    async def run(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        reg = self.registry

        if action == "register_device":
            device = reg.register_device(args.get("device") or args)
            return {"device": device.to_dict(), "message": f"Device {device.name or device.id} registered"}

        if action == "get_devices":
            devices = reg.devices(args.get("filter") or {})
            return {
                "devices": [d.to_dict() for d in devices],
                "totalCount": len(reg),
                "filteredCount": len(devices),
            }

        if action == "control_device":
            return await reg.control_device(
                args.get("deviceId", ""), args.get("command", ""), args.get("params")
            )

        if action == "get_device_state":
            return reg.device_state(args.get("deviceId", ""))

        if action == "bulk_control":
            device_ids = list(args.get("deviceIds") or args.get("devices") or [])
            return await reg.bulk_control(device_ids, args.get("command", ""), args.get("params"))

        if action == "create_scene":
            data = args.get("scene") or args
            scene = reg.create_scene(
                data.get("name", "scene"), data.get("deviceStates") or {}, data.get("description", "")
            )
            return {"scene": scene.to_dict()}

        if action == "get_scenes":
            return {"scenes": [s.to_dict() for s in reg.scenes()]}

        if action == "activate_scene":
            return await reg.activate_scene(args.get("sceneId", ""))

        if action == "create_automation":
            automation = reg.create_automation(args.get("rule") or args)
            return {"automation": automation.to_dict()}

        if action == "get_automations":
            return {"automations": [a.to_dict() for a in reg.automations()]}

        if action == "trigger_automation":
            return await reg.trigger_automation(args.get("automationId", ""))

        # sync_devices
        if self.inventory is None:
            return {"ok": False, "error": "No discovery inventory attached"}
        counts = reg.sync_from_inventory(self.inventory)
        return {"message": "Device sync completed", **counts}
