"""Data types for network discovery."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


@dataclass(frozen=True)
class WebService:
    """One HTTP(S) endpoint answered by a device."""

    port: int
    scheme: str = "http"
    status: int | None = None
    server: str = ""
    content_type: str = ""
    title: str = ""
    path: str = "/"

    def to_dict(self) -> dict[str, Any]:
        return {
            "port": self.port,
            "scheme": self.scheme,
            "status": self.status,
            "server": self.server,
            "contentType": self.content_type,
            "title": self.title,
            "path": self.path,
        }


@dataclass(frozen=True)
class DiscoveryRecord:
    """A single probe's partial observation of one host.  Never mutated."""

    ip: str
    discovery_method: str
    mac: str | None = None
    vendor: str | None = None
    hostname: str | None = None
    open_ports: frozenset[int] = frozenset()
    web_services: tuple[WebService, ...] = ()
    services: frozenset[str] = frozenset()
    device_type: str | None = None
    location: str | None = None
    response_time: float | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Classification:
    type: str = "Unknown"
    confidence: int = 0
    reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "confidence": self.confidence, "reasons": list(self.reasons)}


UNKNOWN = Classification()


@dataclass
class Device:
    """Canonical, accumulated view of one host, keyed by IP."""

    ip: str
    mac: str | None = None
    vendor: str | None = None
    hostname: str | None = None
    open_ports: set[int] = field(default_factory=set)
    web_services: list[WebService] = field(default_factory=list)
    services: set[str] = field(default_factory=set)
    device_type: str | None = None
    location: str | None = None
    response_time: float | None = None
    classification: Classification = UNKNOWN
    discovery_methods: set[str] = field(default_factory=set)
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "mac": self.mac,
            "vendor": self.vendor,
            "hostname": self.hostname,
            "openPorts": sorted(self.open_ports),
            "webServices": [w.to_dict() for w in self.web_services],
            "services": sorted(self.services),
            "deviceType": self.device_type,
            "location": self.location,
            "responseTime": self.response_time,
            "classification": self.classification.to_dict(),
            "discoveryMethods": sorted(self.discovery_methods),
            "firstSeen": _iso(self.first_seen),
            "lastSeen": _iso(self.last_seen),
            "stale": self.stale,
        }


@dataclass
class ScanResult:
    ok: bool
    subnet: str | None = None
    devices: list[Device] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    probe_errors: dict[str, str] = field(default_factory=dict)
    message: str = ""

    @property
    def duration(self) -> float:
        return round((self.finished_at or time.time()) - self.started_at, 3)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "subnet": self.subnet,
            "devices": [d.to_dict() for d in self.devices],
            "deviceCount": len(self.devices),
            "scanTime": _iso(self.finished_at),
            "duration": self.duration,
            "probeErrors": dict(self.probe_errors),
            "message": self.message,
        }
