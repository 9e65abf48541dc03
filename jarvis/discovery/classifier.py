"""Signature-based device classification.

Every signature is scored against the device's full accumulated evidence;
the highest total wins and ties keep the first-declared signature.  Signal
strength, strongest first: MAC prefix, open ports, web hints (paths and
banner patterns), vendor/hostname similarity.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Sequence

from jarvis.discovery.models import UNKNOWN, Classification, Device

logger = logging.getLogger(__name__)

MAC_WEIGHT = 50
PORT_WEIGHT = 20
WEB_HINT_WEIGHT = 15
NAME_WEIGHT = 10


@dataclass(frozen=True)
class Signature:
    name: str
    mac_prefixes: tuple[str, ...] = ()
    ports: tuple[int, ...] = ()
    path_hints: tuple[str, ...] = ()
    banner_pattern: re.Pattern | None = None
    name_hints: tuple[str, ...] = ()


def _sig(name: str, *, mac=(), ports=(), paths=(), banner: str | None = None, hints=()) -> Signature:
    return Signature(
        name=name,
        mac_prefixes=tuple(p.lower() for p in mac),
        ports=tuple(ports),
        path_hints=tuple(paths),
        banner_pattern=re.compile(banner, re.IGNORECASE) if banner else None,
        name_hints=tuple(hints),
    )


DEFAULT_SIGNATURES: tuple[Signature, ...] = (
    _sig("Home Assistant", ports=(8123,), paths=("/api/",), banner=r"home\s?assistant",
         hints=("homeassistant", "home-assistant")),
    _sig("Plex Media Server", ports=(32400,), paths=("/web/index.html",), banner=r"plex",
         hints=("plex",)),
    _sig("Router", mac=("00:1f:3f", "b8:27:eb", "dc:a6:32"), ports=(80, 443),
         paths=("/cgi-bin/", "/admin"), hints=("router", "gateway", "fritz")),
    _sig("Raspberry Pi", mac=("b8:27:eb", "dc:a6:32", "e4:5f:01"), hints=("raspberry",)),
    _sig("Philips Hue", mac=("00:17:88", "ec:b5:fa"), ports=(80,),
         paths=("/api", "/description.xml"), banner=r"hue|philips", hints=("philips", "hue")),
    _sig("Ring Doorbell", mac=("74:c2:46", "b0:7d:64"), hints=("ring",)),
    _sig("Nest Device", mac=("18:b4:30", "64:16:66"), hints=("nest",)),
    _sig("Chromecast", ports=(8008, 8009), banner=r"googlecast|chromecast",
         hints=("chromecast", "googlecast")),
    _sig("Amazon Echo", mac=("44:65:0d", "f0:d2:f1", "50:f5:da"), hints=("echo", "amazon")),
    _sig("Smart TV", ports=(1900, 8080), banner=r"smarttv|webos|tizen",
         hints=("smarttv", "webos", "tizen", "bravia")),
    _sig("IP Camera", ports=(554, 80, 443), paths=("/onvif/", "/cgi-bin/"),
         banner=r"axis|hikvision|dahua", hints=("camera", "ipcam")),
    _sig("NAS/Storage", ports=(22, 445, 548, 5000, 5001), banner=r"synology|qnap|freenas",
         hints=("nas", "synology", "qnap", "diskstation")),
    _sig("Printer", ports=(631, 9100), banner=r"\b(?:hp|canon|epson|brother)\b",
         hints=("printer", "ipp")),
)


class DeviceClassifier:
    """Scores devices against an ordered signature table."""

    def __init__(self, signatures: Sequence[Signature] = DEFAULT_SIGNATURES) -> None:
        self.signatures = tuple(signatures)

    def path_hints(self) -> list[str]:
        """Web paths named by any signature, in table order, without duplicates."""
        return list(dict.fromkeys(p for s in self.signatures for p in s.path_hints))

    def classify(self, device: Device) -> Classification:
        best = UNKNOWN
        for signature in self.signatures:
            candidate = self.score(signature, device)
            if candidate.confidence > best.confidence:
                best = candidate
        return best

    def score(self, signature: Signature, device: Device) -> Classification:
        confidence = 0
        reasons: list[str] = []

        mac = (device.mac or "").lower()
        if mac and any(mac.startswith(p) for p in signature.mac_prefixes):
            confidence += MAC_WEIGHT
            reasons.append(f"MAC matches {signature.name} pattern")

        matching_ports = [p for p in signature.ports if p in device.open_ports]
        if matching_ports:
            confidence += PORT_WEIGHT * len(matching_ports)
            reasons.append(f"Open ports: {', '.join(str(p) for p in matching_ports)}")

        matching_paths = [
            hint for hint in signature.path_hints
            if any(hint in (w.path or "") for w in device.web_services)
        ]
        if matching_paths:
            confidence += WEB_HINT_WEIGHT * len(matching_paths)
            reasons.append(f"Web paths: {', '.join(matching_paths)}")

        if signature.banner_pattern is not None:
            banners = [w.server for w in device.web_services] + [w.title for w in device.web_services]
            if device.device_type:
                banners.append(device.device_type)
            hit = next((b for b in banners if b and signature.banner_pattern.search(b)), None)
            if hit:
                confidence += WEB_HINT_WEIGHT
                reasons.append(f"Banner matches {signature.name}: {hit}")

        names = " ".join(
            filter(None, [device.vendor, device.hostname, *sorted(device.services)])
        ).lower()
        hint = next((h for h in signature.name_hints if h in names), None)
        if hint:
            confidence += NAME_WEIGHT
            reasons.append(f"Name/vendor suggests {signature.name} ({hint})")

        return Classification(
            type=signature.name if confidence > 0 else UNKNOWN.type,
            confidence=max(0, min(100, confidence)),
            reasons=tuple(reasons),
        )
