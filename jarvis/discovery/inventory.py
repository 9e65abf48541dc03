"""Device inventory — the per-IP accumulator that probe records merge into.

Merge rules:
  - scalar fields: last non-empty value wins, never overwritten by empty
  - port / service / method sets: unioned
  - web services: one entry per port, latest observation wins
  - a MAC already known under another IP moves that device to the new IP

Classification is recomputed from the full accumulated evidence after
every merge.  Devices silent for ``stale_after`` seconds are flagged
stale, never deleted.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Callable, Iterable

from jarvis.discovery.classifier import DeviceClassifier
from jarvis.discovery.models import Device, DiscoveryRecord, WebService

logger = logging.getLogger(__name__)

STALE_AFTER = float(os.environ.get("JARVIS_STALE_AFTER", "900"))

_SCALARS = ("mac", "vendor", "hostname", "device_type", "location", "response_time")


class DeviceInventory:
    """Canonical device table keyed by IP."""

    def __init__(
        self,
        classifier: DeviceClassifier | None = None,
        stale_after: float = STALE_AFTER,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.classifier = classifier or DeviceClassifier()
        self.stale_after = stale_after
        self._clock = clock
        self._devices: dict[str, Device] = {}
        self._mac_index: dict[str, str] = {}
        self.last_scan: float | None = None

    # ── Queries ────────────────────────────────────────────────────

    def get(self, ip: str) -> Device | None:
        return self._devices.get(ip)

    def by_mac(self, mac: str) -> Device | None:
        ip = self._mac_index.get(mac.lower())
        return self._devices.get(ip) if ip else None

    def __len__(self) -> int:
        return len(self._devices)

    def __contains__(self, ip: object) -> bool:
        return ip in self._devices

    def devices(self) -> list[Device]:
        return sorted(self._devices.values(), key=_ip_sort_key)

    def find(self, filter: dict[str, Any] | None = None, include_stale: bool = True) -> list[Device]:
        """Filter by ``type`` (exact), ``vendor`` (substring) and ``ip`` (substring)."""
        filter = filter or {}
        wanted_type = filter.get("type")
        vendor = (filter.get("vendor") or "").lower()
        ip = filter.get("ip") or ""
        result = []
        for device in self.devices():
            if not include_stale and device.stale:
                continue
            if wanted_type and device.classification.type != wanted_type:
                continue
            if vendor and vendor not in (device.vendor or "").lower():
                continue
            if ip and ip not in device.ip:
                continue
            result.append(device)
        return result

    # ── Mutation ───────────────────────────────────────────────────

    def merge(self, record: DiscoveryRecord) -> Device:
        """Fold one probe record into the inventory; return the updated device."""
        mac = record.mac.lower() if record.mac else None
        if mac:
            self._follow_mac(mac, record.ip)

        device = self._devices.get(record.ip)
        if device is None:
            device = Device(ip=record.ip, first_seen=record.timestamp, last_seen=record.timestamp)
            self._devices[record.ip] = device
            logger.debug("New device %s via %s", record.ip, record.discovery_method)

        for name in _SCALARS:
            value = mac if name == "mac" else getattr(record, name)
            if value not in (None, ""):
                setattr(device, name, value)
        device.open_ports |= record.open_ports
        device.services |= record.services
        device.discovery_methods.add(record.discovery_method)
        device.web_services = _merge_web(device.web_services, record.web_services)
        device.first_seen = min(device.first_seen, record.timestamp)
        device.last_seen = max(device.last_seen, record.timestamp)
        device.stale = False

        if device.mac:
            self._mac_index[device.mac] = device.ip
        device.classification = self.classifier.classify(device)
        return device

    def merge_all(self, records: Iterable[DiscoveryRecord]) -> list[Device]:
        touched: dict[str, Device] = {}
        for record in records:
            device = self.merge(record)
            touched[device.ip] = device
        return list(touched.values())

    def classify_all(self) -> list[Device]:
        """Recompute every classification from current evidence."""
        for device in self._devices.values():
            device.classification = self.classifier.classify(device)
        return self.devices()

    def mark_stale(self, now: float | None = None) -> list[Device]:
        """Flag devices unseen for ``stale_after`` seconds; return the newly stale."""
        now = self._clock() if now is None else now
        newly = []
        for device in self._devices.values():
            if not device.stale and now - device.last_seen > self.stale_after:
                device.stale = True
                newly.append(device)
        if newly:
            logger.info("%d device(s) marked stale", len(newly))
        return newly

    def clear(self) -> None:
        self._devices.clear()
        self._mac_index.clear()

    # ── Internal ───────────────────────────────────────────────────

    def _follow_mac(self, mac: str, ip: str) -> None:
        old_ip = self._mac_index.get(mac)
        if old_ip is None or old_ip == ip:
            return
        moved = self._devices.pop(old_ip, None)
        self._mac_index[mac] = ip
        if moved is None:
            return
        logger.info("Device %s moved from %s to %s", mac, old_ip, ip)
        existing = self._devices.get(ip)
        if existing is None:
            moved.ip = ip
            self._devices[ip] = moved
            return
        for name in _SCALARS:
            if getattr(existing, name) in (None, ""):
                setattr(existing, name, getattr(moved, name))
        existing.open_ports |= moved.open_ports
        existing.services |= moved.services
        existing.discovery_methods |= moved.discovery_methods
        existing.web_services = _merge_web(moved.web_services, existing.web_services)
        existing.first_seen = min(existing.first_seen, moved.first_seen)
        existing.last_seen = max(existing.last_seen, moved.last_seen)


def _merge_web(current: Iterable[WebService], incoming: Iterable[WebService]) -> list[WebService]:
    by_key = {(w.port, w.path): w for w in current}
    for w in incoming:
        by_key[(w.port, w.path)] = w
    return [by_key[k] for k in sorted(by_key)]


def _ip_sort_key(device: Device) -> tuple:
    try:
        return (0, tuple(int(part) for part in device.ip.split(".")))
    except ValueError:
        return (1, device.ip)
