"""Protocol routing for device commands."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from jarvis.errors import CapabilityNotSupported, SkillExecutionError
from jarvis.integrations.ha import HAClient, HAClientError

if TYPE_CHECKING:
    from jarvis.devices.registry import ManagedDevice

logger = logging.getLogger(__name__)

# device command -> HA service (domain taken from the entity id)
HA_SERVICES: dict[str, str] = {
    "on": "turn_on",
    "off": "turn_off",
    "toggle": "toggle",
    "dim": "turn_on",
    "brighten": "turn_on",
    "set_level": "turn_on",
    "brightness": "turn_on",
    "lock": "lock",
    "unlock": "unlock",
    "open": "open_cover",
    "close": "close_cover",
    "play": "media_play",
    "pause": "media_pause",
    "stop": "media_stop",
    "next": "media_next_track",
    "previous": "media_previous_track",
    "volume_up": "volume_up",
    "volume_down": "volume_down",
    "mute": "volume_mute",
    "set_temperature": "set_temperature",
    "set_mode": "set_hvac_mode",
    "set_fan": "set_fan_mode",
}


class CommandExecutor(Protocol):
    async def execute(
        self, device: "ManagedDevice", command: str, params: dict[str, Any]
    ) -> dict[str, Any]: ...


class ProtocolRouter:
    """Sends a device command over the device's protocol.

    ``homeassistant`` devices go through :class:`HAClient`; ``http`` devices
    (or devices with a known web service) get ``POST /api/<command>``.
    """

    def __init__(self, ha: HAClient | None = None, timeout: float = 5.0) -> None:
        self.ha = ha
        self.timeout = timeout

    async def execute(
        self, device: "ManagedDevice", command: str, params: dict[str, Any]
    ) -> dict[str, Any]:
        if device.protocol == "homeassistant":
            return await self._homeassistant(device, command, params)
        if device.protocol == "http" or device.web_services:
            return await self._http(device, command, params)
        raise SkillExecutionError(f"Unsupported device protocol: {device.protocol or 'unknown'}")

    async def _homeassistant(
        self, device: "ManagedDevice", command: str, params: dict[str, Any]
    ) -> dict[str, Any]:
        if self.ha is None:
            raise SkillExecutionError("Home Assistant token not configured")
        if not device.entity_id:
            raise SkillExecutionError(f"Device {device.id} has no Home Assistant entity id")
        service = HA_SERVICES.get(command)
        if service is None:
            raise CapabilityNotSupported(f"Command {command} not mapped for Home Assistant")
        domain = device.entity_id.split(".", 1)[0]
        try:
            changed = await self.ha.call_service(
                domain, service, {"entity_id": device.entity_id, **params}
            )
        except HAClientError as exc:
            raise SkillExecutionError(str(exc)) from exc
        return {"service": f"{domain}.{service}", "entityId": device.entity_id, "changed": changed}

    async def _http(
        self, device: "ManagedDevice", command: str, params: dict[str, Any]
    ) -> dict[str, Any]:
        port = device.web_services[0].get("port", 80) if device.web_services else 80
        scheme = "https" if port == 443 else "http"
        url = f"{scheme}://{device.ip}:{port}/api/{command}"
        try:
            async with httpx.AsyncClient(verify=False, timeout=self.timeout) as client:
                resp = await client.post(url, json=params)
        except httpx.HTTPError as exc:
            raise SkillExecutionError(f"HTTP command to {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise SkillExecutionError(f"{url} returned {resp.status_code}")
        return {"status": resp.status_code, "url": url, "method": "POST"}
