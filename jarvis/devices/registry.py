"""Device / capability registry with scenes and automation rules.

Capabilities are inferred once, at registration, from the device type and
its open ports.  ``control_device`` rejects any command outside them.

Scenes and automation rules are validated as a whole before any command
is sent: one missing device or unsupported command and nothing is applied.
``bulk_control`` is the opposite: every device is tried independently.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

from jarvis.devices.commands import CommandExecutor, ProtocolRouter
from jarvis.discovery.inventory import DeviceInventory
from jarvis.errors import (
    CapabilityNotSupported,
    DeviceNotFound,
    JarvisError,
    SceneNotFound,
)
from jarvis.events import utc_now

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100

CAPABILITY_COMMANDS: dict[str, tuple[str, ...]] = {
    "switch": ("on", "off", "toggle"),
    "dimmer": ("on", "off", "dim", "brighten", "set_level"),
    "thermostat": ("heat", "cool", "set_temperature", "get_temperature"),
    "media_player": ("play", "pause", "stop", "volume_up", "volume_down", "mute"),
    "camera": ("stream", "snapshot", "record", "pan", "tilt", "zoom"),
    "sensor": ("read", "calibrate"),
    "lock": ("lock", "unlock", "status"),
    "garage": ("open", "close", "status"),
    "speaker": ("play", "pause", "volume", "next", "previous"),
    "display": ("on", "off", "brightness", "input"),
    "hvac": ("set_mode", "set_temperature", "set_fan"),
}

# (type keywords, capabilities they imply)
_TYPE_RULES: tuple[tuple[tuple[str, ...], tuple[str, ...]], ...] = (
    (("light", "bulb", "hue"), ("switch",)),
    (("switch", "plug", "outlet"), ("switch",)),
    (("thermostat", "hvac", "nest"), ("thermostat", "hvac")),
    (("media", "plex", "chromecast"), ("media_player",)),
    (("camera", "webcam", "doorbell"), ("camera",)),
    (("sensor",), ("sensor",)),
    (("lock",), ("lock",)),
    (("garage",), ("garage",)),
    (("speaker", "echo", "sonos"), ("speaker",)),
    (("tv", "display", "monitor"), ("display",)),
)

_PORT_RULES: dict[int, str] = {
    8008: "media_player",  # Chromecast
    554: "camera",  # RTSP
    1900: "media_player",  # UPnP
}


def infer_capabilities(
    device_type: str | None,
    open_ports: Iterable[int] = (),
    features: dict[str, Any] | None = None,
) -> frozenset[str]:
    caps: set[str] = set()
    kind = (device_type or "").lower()
    for keywords, implied in _TYPE_RULES:
        if any(k in kind for k in keywords):
            caps.update(implied)
    if "switch" in caps and (features or {}).get("dimmable"):
        caps.add("dimmer")
    for port in open_ports:
        if port in _PORT_RULES:
            caps.add(_PORT_RULES[port])
    return frozenset(caps)


def commands_for(capabilities: Iterable[str]) -> frozenset[str]:
    return frozenset(c for cap in capabilities for c in CAPABILITY_COMMANDS.get(cap, ()))


@dataclass
class ManagedDevice:
    id: str
    ip: str | None
    type: str
    name: str = ""
    protocol: str | None = None
    entity_id: str | None = None
    mac: str | None = None
    open_ports: set[int] = field(default_factory=set)
    web_services: list[dict[str, Any]] = field(default_factory=list)
    capabilities: frozenset[str] = frozenset()
    status: str = "online"
    auto_discovered: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    registered_at: str = field(default_factory=utc_now)
    last_seen: str = field(default_factory=utc_now)
    last_command: dict[str, Any] | None = None
    history: deque = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))

    @property
    def commands(self) -> frozenset[str]:
        return commands_for(self.capabilities)

    def supports(self, command: str) -> bool:
        return command in self.commands

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "ip": self.ip,
            "type": self.type,
            "name": self.name or self.id,
            "protocol": self.protocol,
            "entityId": self.entity_id,
            "mac": self.mac,
            "openPorts": sorted(self.open_ports),
            "capabilities": sorted(self.capabilities),
            "commands": sorted(self.commands),
            "status": self.status,
            "autoDiscovered": self.auto_discovered,
            "metadata": dict(self.metadata),
            "registeredAt": self.registered_at,
            "lastSeen": self.last_seen,
        }


@dataclass(frozen=True)
class DeviceAction:
    device_id: str
    command: str
    params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"deviceId": self.device_id, "command": self.command, "params": self.params}


@dataclass
class Scene:
    id: str
    name: str
    actions: tuple[DeviceAction, ...]
    description: str = ""
    created_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "deviceStates": {a.device_id: {"command": a.command, "params": a.params} for a in self.actions},
            "createdAt": self.created_at,
        }


@dataclass
class AutomationRule:
    id: str
    name: str
    trigger: dict[str, Any]
    actions: tuple[DeviceAction, ...]
    conditions: list[dict[str, Any]] = field(default_factory=list)
    enabled: bool = True
    created_at: str = field(default_factory=utc_now)
    last_triggered: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "trigger": self.trigger,
            "conditions": self.conditions,
            "actions": [a.to_dict() for a in self.actions],
            "enabled": self.enabled,
            "createdAt": self.created_at,
            "lastTriggered": self.last_triggered,
        }


def parse_actions(raw: Any) -> tuple[DeviceAction, ...]:
    """Accept ``{device_id: {command, params}}`` or ``[{deviceId, command, params}]``."""
    if isinstance(raw, dict):
        items = [{"deviceId": k, **(v if isinstance(v, dict) else {"command": v})} for k, v in raw.items()]
    elif isinstance(raw, list):
        items = raw
    else:
        raise ValueError("Device states must be a mapping or a list")
    actions = []
    for item in items:
        device_id = item.get("deviceId") or item.get("device_id")
        command = item.get("command")
        if not device_id or not command:
            raise ValueError(f"Each device action needs deviceId and command: {item!r}")
        actions.append(DeviceAction(str(device_id), str(command), dict(item.get("params") or {})))
    return tuple(actions)


class DeviceRegistry:
    """Catalog of controllable devices, scenes and automation rules."""

    def __init__(self, executor: CommandExecutor | None = None) -> None:
        self.executor = executor or ProtocolRouter()
        self._devices: dict[str, ManagedDevice] = {}
        self._scenes: dict[str, Scene] = {}
        self._automations: dict[str, AutomationRule] = {}

    # ── Devices ────────────────────────────────────────────────────

    def register_device(self, data: dict[str, Any]) -> ManagedDevice:
        ip = data.get("ip")
        kind = str(data.get("type") or (data.get("classification") or {}).get("type") or "unknown")
        if not ip and not data.get("entityId"):
            raise ValueError("A device needs an ip or a Home Assistant entityId")
        open_ports = {int(p) for p in data.get("openPorts") or ()}
        device = ManagedDevice(
            id=str(data.get("id") or _device_id(kind, ip or data["entityId"])),
            ip=ip,
            type=kind,
            name=str(data.get("name") or ""),
            protocol=data.get("protocol"),
            entity_id=data.get("entityId"),
            mac=data.get("mac"),
            open_ports=open_ports,
            web_services=list(data.get("webServices") or ()),
            capabilities=infer_capabilities(kind, open_ports, data.get("features")),
            auto_discovered=bool(data.get("autoDiscovered", False)),
            metadata=dict(data.get("metadata") or {}),
        )
        self._devices[device.id] = device
        logger.info(
            "Registered device %s (%s) with %s",
            device.name or device.id, kind, ",".join(sorted(device.capabilities)) or "no capabilities",
        )
        return device

    def get(self, device_id: str) -> ManagedDevice:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFound(f"Device {device_id} not found")
        return device

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def remove(self, device_id: str) -> None:
        self._devices.pop(device_id, None)

    def devices(self, filter: dict[str, Any] | None = None) -> list[ManagedDevice]:
        filter = filter or {}
        result = list(self._devices.values())
        if filter.get("type"):
            result = [d for d in result if d.type == filter["type"]]
        if filter.get("capability"):
            result = [d for d in result if filter["capability"] in d.capabilities]
        if filter.get("status"):
            result = [d for d in result if d.status == filter["status"]]
        return result

    def device_state(self, device_id: str) -> dict[str, Any]:
        device = self.get(device_id)
        return {
            "deviceId": device.id,
            "status": device.status,
            "lastCommand": device.last_command,
            "commandHistory": list(device.history),
        }

    # ── Control ────────────────────────────────────────────────────

    async def control_device(
        self, device_id: str, command: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        device = self.get(device_id)
        if not device.supports(command):
            raise CapabilityNotSupported(f"Device {device_id} does not support command: {command}")
        params = dict(params or {})
        result = await self.executor.execute(device, command, params)
        self._record(device, command, params, result)
        logger.info("Controlled device %s: %s", device.name or device.id, command)
        return {
            "success": True,
            "deviceId": device_id,
            "command": command,
            "params": params,
            "result": result,
            "timestamp": utc_now(),
        }

    async def bulk_control(
        self, device_ids: list[str], command: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        """Run *command* on every device concurrently; failures stay per-device."""
        outcomes = await asyncio.gather(
            *(self.control_device(d, command, params) for d in device_ids),
            return_exceptions=True,
        )
        results = []
        for device_id, outcome in zip(device_ids, outcomes):
            if isinstance(outcome, BaseException):
                results.append({"deviceId": device_id, "success": False, "error": _message(outcome)})
            else:
                results.append({"deviceId": device_id, "success": True, "result": outcome})
        success_count = sum(1 for r in results if r["success"])
        return {
            "success": True,
            "command": command,
            "totalDevices": len(device_ids),
            "successCount": success_count,
            "failureCount": len(device_ids) - success_count,
            "results": results,
        }

    # ── Scenes ─────────────────────────────────────────────────────

    def create_scene(self, name: str, device_states: Any, description: str = "") -> Scene:
        actions = parse_actions(device_states)
        self._validate(actions)
        scene = Scene(id=f"scene_{uuid.uuid4().hex[:12]}", name=name, actions=actions,
                      description=description)
        self._scenes[scene.id] = scene
        logger.info("Created scene %s (%d devices)", name, len(actions))
        return scene

    def get_scene(self, scene_id: str) -> Scene:
        scene = self._scenes.get(scene_id)
        if scene is None:
            raise SceneNotFound(f"Scene {scene_id} not found")
        return scene

    def scenes(self) -> list[Scene]:
        return list(self._scenes.values())

    async def activate_scene(self, scene_id: str) -> dict[str, Any]:
        """Apply a scene; if any referenced device is gone, apply nothing."""
        scene = self.get_scene(scene_id)
        self._validate(scene.actions)
        results = await self._apply(scene.actions)
        success_count = sum(1 for r in results if r["success"])
        logger.info("Activated scene %s: %d/%d devices", scene.name, success_count, len(results))
        return {
            "success": success_count == len(results),
            "sceneId": scene.id,
            "sceneName": scene.name,
            "totalDevices": len(results),
            "successCount": success_count,
            "results": results,
        }

    # ── Automations ────────────────────────────────────────────────

    def create_automation(self, rule: dict[str, Any]) -> AutomationRule:
        if not rule.get("name"):
            raise ValueError("Automation needs a name")
        automation = AutomationRule(
            id=f"automation_{uuid.uuid4().hex[:12]}",
            name=str(rule["name"]),
            trigger=dict(rule.get("trigger") or {}),
            actions=parse_actions(rule.get("actions") or []),
            conditions=list(rule.get("conditions") or []),
            enabled=rule.get("enabled", True) is not False,
        )
        self._automations[automation.id] = automation
        logger.info("Created automation: %s", automation.name)
        return automation

    def automations(self) -> list[AutomationRule]:
        return list(self._automations.values())

    async def trigger_automation(self, automation_id: str) -> dict[str, Any]:
        automation = self._automations.get(automation_id)
        if automation is None:
            raise SceneNotFound(f"Automation {automation_id} not found")
        if not automation.enabled:
            return {"success": False, "automationId": automation_id, "message": "Automation is disabled"}
        self._validate(automation.actions)
        results = await self._apply(automation.actions)
        automation.last_triggered = utc_now()
        success_count = sum(1 for r in results if r["success"])
        return {
            "success": success_count == len(results),
            "automationId": automation_id,
            "successCount": success_count,
            "results": results,
        }

    # ── Discovery sync ─────────────────────────────────────────────

    def sync_from_inventory(self, inventory: DeviceInventory) -> dict[str, int]:
        """Register classified discoveries; refresh address data of known ones."""
        by_mac = {d.mac: d for d in self._devices.values() if d.mac}
        by_ip = {d.ip: d for d in self._devices.values() if d.ip}
        new = updated = 0
        for found in inventory.devices():
            if found.stale or found.classification.type == "Unknown":
                continue
            known = (found.mac and by_mac.get(found.mac)) or by_ip.get(found.ip)
            if known is not None:
                known.ip = found.ip
                known.mac = known.mac or found.mac
                known.open_ports |= found.open_ports
                known.last_seen = utc_now()
                known.status = "online"
                updated += 1
                continue
            self.register_device({
                "ip": found.ip,
                "mac": found.mac,
                "type": found.classification.type,
                "name": found.hostname or found.classification.type,
                "openPorts": sorted(found.open_ports),
                "webServices": [w.to_dict() for w in found.web_services],
                "protocol": "http" if found.web_services else None,
                "autoDiscovered": True,
                "metadata": {"vendor": found.vendor, "confidence": found.classification.confidence},
            })
            new += 1
        return {"newDevices": new, "updatedDevices": updated}

    # ── Internal ───────────────────────────────────────────────────

    def _validate(self, actions: Iterable[DeviceAction]) -> None:
        for action in actions:
            device = self.get(action.device_id)
            if not device.supports(action.command):
                raise CapabilityNotSupported(
                    f"Device {action.device_id} does not support command: {action.command}"
                )

    async def _apply(self, actions: Iterable[DeviceAction]) -> list[dict[str, Any]]:
        results = []
        for action in actions:
            try:
                result = await self.control_device(action.device_id, action.command, action.params)
                results.append({"deviceId": action.device_id, "success": True, "result": result})
            except Exception as exc:
                logger.warning("Device %s failed during apply: %s", action.device_id, exc)
                results.append({"deviceId": action.device_id, "success": False, "error": _message(exc)})
        return results

    def _record(self, device: ManagedDevice, command: str, params: dict, result: Any) -> None:
        entry = {"command": command, "params": params, "result": result, "timestamp": utc_now()}
        device.last_command = entry
        device.history.append(entry)
        device.last_seen = entry["timestamp"]


def _device_id(kind: str, address: str) -> str:
    slug = "".join(c if c.isalnum() else "_" for c in kind.lower())
    return f"{slug}_{address.replace('.', '_')}_{uuid.uuid4().hex[:6]}"


def _message(exc: BaseException) -> str:
    return exc.message if isinstance(exc, JarvisError) else str(exc) or type(exc).__name__
