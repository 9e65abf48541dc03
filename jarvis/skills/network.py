"""Network skill — the discovery query surface."""

from __future__ import annotations

import logging
from typing import Any

from jarvis.discovery.models import DiscoveryRecord
from jarvis.discovery.scanner import DEFAULT_TIMEOUT, SCAN_INTERVAL, NetworkScanner
from jarvis.errors import ScanInProgress

from .base import Skill

logger = logging.getLogger(__name__)


class NetworkSkill(Skill):
    name = "network"
    display_name = "Network Discovery"
    actions = frozenset({
        "scan_network",
        "get_devices",
        "get_device_info",
        "scan_ports",
        "identify_device",
        "mdns_scan",
        "upnp_scan",
        "start_monitoring",
        "stop_monitoring",
        "classify_devices",
    })

    def __init__(self, scanner: NetworkScanner) -> None:
        self.scanner = scanner
        self.inventory = scanner.inventory

    async def run(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        handler = getattr(self, f"_{action}")
        return await handler(args)

    async def _scan_network(self, args: dict[str, Any]) -> dict[str, Any]:
        try:
            result = await self.scanner.scan_network(
                args.get("subnet"), float(args.get("timeout") or DEFAULT_TIMEOUT)
            )
        except ScanInProgress as exc:
            return {"ok": False, "error": exc.message, "code": exc.code}
        return result.to_dict()

    async def _get_devices(self, args: dict[str, Any]) -> dict[str, Any]:
        devices = self.inventory.find(args.get("filter") or {})
        return {
            "devices": [d.to_dict() for d in devices],
            "totalCount": len(self.inventory),
            "filteredCount": len(devices),
            "lastScan": self.scanner.status()["lastScan"],
        }

    async def _get_device_info(self, args: dict[str, Any]) -> dict[str, Any]:
        ip = _require(args, "ip")
        device = self.inventory.get(ip)
        if device is None:
            device = await self.scanner.enrich(ip)
        return {"device": device.to_dict()}

    async def _scan_ports(self, args: dict[str, Any]) -> dict[str, Any]:
        ip = _require(args, "ip")
        ports = [int(p) for p in args.get("ports") or []] or None
        open_ports = await self.scanner.scan_ports(ip, ports)
        return {"ip": ip, "openPorts": open_ports}

    async def _identify_device(self, args: dict[str, Any]) -> dict[str, Any]:
        ip = _require(args, "ip")
        if args.get("mac"):
            self.inventory.merge(DiscoveryRecord(ip=ip, mac=args["mac"], discovery_method="manual"))
        device = await self.scanner.enrich(ip)
        return {"ip": ip, "classification": device.classification.to_dict()}

    async def _mdns_scan(self, args: dict[str, Any]) -> dict[str, Any]:
        devices = await self.scanner.mdns_scan()
        return {"devices": [d.to_dict() for d in devices]}

    async def _upnp_scan(self, args: dict[str, Any]) -> dict[str, Any]:
        devices = await self.scanner.upnp_scan()
        return {"devices": [d.to_dict() for d in devices]}

    async def _start_monitoring(self, args: dict[str, Any]) -> dict[str, Any]:
        interval = float(args.get("interval") or SCAN_INTERVAL)
        self.scanner.start_monitoring(interval, args.get("subnet"))
        return {"interval": interval}

    async def _stop_monitoring(self, args: dict[str, Any]) -> dict[str, Any]:
        if await self.scanner.stop_monitoring():
            return {"message": "Continuous discovery stopped"}
        return {"ok": False, "error": "No continuous discovery running"}

    async def _classify_devices(self, args: dict[str, Any]) -> dict[str, Any]:
        devices = self.inventory.classify_all()
        return {
            "classified": len(devices),
            "devices": [
                {"ip": d.ip, "classification": d.classification.to_dict()} for d in devices
            ],
        }

    async def close(self) -> None:
        await self.scanner.close()


def _require(args: dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value in (None, ""):
        raise ValueError(f"Missing required argument: {key}")
    return value
