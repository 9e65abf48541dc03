"""Discovery probes.

Each probe is one independent technique for finding or enriching hosts:

  - NeighborProbe   kernel neighbor (ARP) table, ``ip neigh show``
  - PingSweepProbe  one ICMP echo per host, bounded fan-out
  - MdnsProbe       zeroconf browse over common service types
  - SsdpProbe       one M-SEARCH to 239.255.255.250:1900
  - PortProbe       TCP connect over a candidate port list
  - BannerProbe     bounded HTTP(S) GET, server/content-type/title

``run(target, timeout)`` never raises: a failing probe logs and returns
``[]``.  ``run_checked`` raises :class:`ProbeFailure` instead, for callers
that want to report which technique failed.
"""

from __future__ import annotations

import abc
import asyncio
import ipaddress
import itertools
import logging
import re
import socket
import threading
from typing import Iterable

import httpx
from zeroconf import ServiceBrowser, Zeroconf

from jarvis.discovery.models import DiscoveryRecord, WebService
from jarvis.errors import ProbeFailure

logger = logging.getLogger(__name__)

DEFAULT_SUBNET = "192.168.1.0/24"
DNS_TIMEOUT = 2.0

QUICK_PORTS: tuple[int, ...] = (
    22, 23, 53, 80, 110, 443, 554, 631, 993, 995, 1900, 5000, 8008, 8080, 8123, 9100, 32400,
)
WEB_PORTS: tuple[int, ...] = (80, 443, 8080, 8123, 5000)
HTTPS_PORTS = frozenset({443, 5001, 8443})

MDNS_SERVICE_TYPES: tuple[str, ...] = (
    "_http._tcp.local.",
    "_googlecast._tcp.local.",
    "_hap._tcp.local.",
    "_airplay._tcp.local.",
    "_raop._tcp.local.",
    "_ipp._tcp.local.",
    "_printer._tcp.local.",
    "_spotify-connect._tcp.local.",
    "_hue._tcp.local.",
    "_home-assistant._tcp.local.",
    "_smb._tcp.local.",
    "_ssh._tcp.local.",
    "_workstation._tcp.local.",
    "_sonos._tcp.local.",
    "_matter._tcp.local.",
)

SSDP_ADDR = ("239.255.255.250", 1900)
SSDP_SEARCH = (
    "M-SEARCH * HTTP/1.1\r\n"
    "HOST: 239.255.255.250:1900\r\n"
    'MAN: "ssdp:discover"\r\n'
    "ST: upnp:rootdevice\r\n"
    "MX: 3\r\n"
    "\r\n"
).encode("ascii")

# OUI prefixes the neighbor probe can name without a lookup service
OUI_VENDORS: dict[str, str] = {
    "b8:27:eb": "Raspberry Pi Foundation",
    "dc:a6:32": "Raspberry Pi Trading",
    "e4:5f:01": "Raspberry Pi Trading",
    "00:17:88": "Philips Lighting",
    "ec:b5:fa": "Philips Lighting",
    "74:c2:46": "Amazon Technologies",
    "b0:7d:64": "Intel Corporate",
    "18:b4:30": "Nest Labs",
    "64:16:66": "Nest Labs",
    "44:65:0d": "Amazon Technologies",
    "f0:d2:f1": "Amazon Technologies",
    "50:f5:da": "Amazon Technologies",
    "00:1f:3f": "AVM GmbH",
}

_TIME_RE = re.compile(r"time[=<]([0-9.]+)")
_TITLE_RE = re.compile(rb"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


# ── Shared helpers ─────────────────────────────────────────────────


async def run_command(*argv: str, timeout: float = 10.0) -> tuple[int, str]:
    """Run a command; return ``(returncode, stdout)``.  Raises ``FileNotFoundError``."""
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, ""
    return proc.returncode or 0, stdout.decode(errors="replace")


async def detect_subnet() -> str:
    """Local subnet from the ``scope link`` route, or :data:`DEFAULT_SUBNET`."""
    try:
        _, out = await run_command("ip", "route")
    except OSError as exc:
        logger.warning("Could not auto-detect subnet (%s); using %s", exc, DEFAULT_SUBNET)
        return DEFAULT_SUBNET
    for line in out.splitlines():
        if "scope link" not in line:
            continue
        candidate = line.split()[0]
        if "/" not in candidate:
            continue
        try:
            network = ipaddress.ip_network(candidate, strict=False)
        except ValueError:
            continue
        if network.version == 4 and not network.is_loopback:
            return str(network)
    logger.warning("No link-scope route found; using %s", DEFAULT_SUBNET)
    return DEFAULT_SUBNET


async def reverse_dns(ip: str, timeout: float = DNS_TIMEOUT) -> str:
    """Attempt reverse DNS lookup; empty string when unresolved or slow."""
    loop = asyncio.get_running_loop()
    try:
        result = await asyncio.wait_for(
            loop.run_in_executor(None, socket.gethostbyaddr, ip), timeout=timeout
        )
    except asyncio.TimeoutError:
        logger.debug("Reverse DNS for %s timed out after %.1fs", ip, timeout)
        return ""
    except (socket.herror, socket.gaierror, OSError):
        return ""
    return result[0]


def vendor_for_mac(mac: str | None) -> str | None:
    if not mac:
        return None
    return OUI_VENDORS.get(mac.lower()[:8])


def _in_network(ip: str, network: ipaddress.IPv4Network | ipaddress.IPv6Network | None) -> bool:
    if network is None:
        return True
    try:
        return ipaddress.ip_address(ip) in network
    except ValueError:
        return False


def _parse_network(target: str | None):
    if not target:
        return None
    return ipaddress.ip_network(target, strict=False)


# ── Base ───────────────────────────────────────────────────────────


class Probe(abc.ABC):
    """One discovery technique."""

    #: Discovery method recorded on every record this probe yields
    name: str = ""

    async def run(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        try:
            return await self.run_checked(target, timeout)
        except ProbeFailure as exc:
            logger.warning("%s", exc.message)
            return []

    async def run_checked(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        try:
            return await self.probe(target, timeout)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise ProbeFailure(f"{self.name} probe failed for {target}: {exc}") from exc

    @abc.abstractmethod
    async def probe(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        raise NotImplementedError


# ── Neighbor table ─────────────────────────────────────────────────


class NeighborProbe(Probe):
    """Reads the kernel neighbor table; ``/proc/net/arp`` when ``ip`` is missing."""

    name = "arp"
    arp_table = "/proc/net/arp"

    async def probe(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        network = _parse_network(target)
        try:
            _, out = await run_command("ip", "neigh", "show", timeout=timeout)
            entries = self.parse_ip_neigh(out)
        except FileNotFoundError:
            entries = self.parse_proc_arp(await asyncio.to_thread(self._read_arp_table))

        return [
            DiscoveryRecord(ip=ip, mac=mac, vendor=vendor_for_mac(mac), discovery_method=self.name)
            for ip, mac in entries
            if _in_network(ip, network)
        ]

    def _read_arp_table(self) -> str:
        with open(self.arp_table, encoding="utf-8") as fh:
            return fh.read()

    @staticmethod
    def parse_ip_neigh(output: str) -> list[tuple[str, str | None]]:
        """``192.168.1.1 dev eth0 lladdr aa:bb:cc:dd:ee:ff REACHABLE``"""
        entries = []
        for line in output.strip().splitlines():
            parts = line.split()
            if len(parts) < 2 or parts[-1] in ("FAILED", "INCOMPLETE"):
                continue
            mac = None
            if "lladdr" in parts:
                idx = parts.index("lladdr")
                if idx + 1 < len(parts):
                    mac = parts[idx + 1].lower()
            entries.append((parts[0], mac))
        return entries

    @staticmethod
    def parse_proc_arp(content: str) -> list[tuple[str, str | None]]:
        entries = []
        for line in content.strip().splitlines()[1:]:
            parts = line.split()
            if len(parts) < 4 or parts[2] == "0x0":
                continue
            mac = parts[3].lower()
            entries.append((parts[0], None if mac == "00:00:00:00:00:00" else mac))
        return entries


# ── ICMP sweep ─────────────────────────────────────────────────────


class PingSweepProbe(Probe):
    """One ``ping -c 1`` per usable host, at most ``concurrency`` at a time."""

    name = "ping"

    def __init__(self, concurrency: int = 64, max_hosts: int = 1024) -> None:
        self.concurrency = concurrency
        self.max_hosts = max_hosts

    async def probe(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        network = _parse_network(target or DEFAULT_SUBNET)
        # network.hosts() is lazy; never materialise more than the cap
        hosts = [str(h) for h in itertools.islice(network.hosts(), self.max_hosts + 1)]
        if len(hosts) > self.max_hosts:
            logger.warning(
                "Ping sweep of %s limited to the first %d of %d addresses",
                network, self.max_hosts, network.num_addresses,
            )
            hosts = hosts[: self.max_hosts]

        sem = asyncio.Semaphore(self.concurrency)

        async def _bounded(ip: str) -> DiscoveryRecord | None:
            async with sem:
                return await self.ping(ip, timeout)

        results = await asyncio.gather(*(_bounded(ip) for ip in hosts), return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if hosts and len(errors) == len(hosts):
            raise errors[0]
        return [r for r in results if isinstance(r, DiscoveryRecord)]

    async def ping(self, ip: str, timeout: float) -> DiscoveryRecord | None:
        wait = max(1, int(round(timeout)))
        code, out = await run_command("ping", "-c", "1", "-W", str(wait), ip, timeout=wait + 1)
        if code != 0:
            return None
        m = _TIME_RE.search(out)
        return DiscoveryRecord(
            ip=ip,
            response_time=float(m.group(1)) if m else None,
            discovery_method=self.name,
        )


# ── mDNS ───────────────────────────────────────────────────────────


class _MdnsCollector:
    """Zeroconf listener that folds announcements into one record per address."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.found: dict[str, dict] = {}

    def add_service(self, zc, type_: str, name: str) -> None:
        info = zc.get_service_info(type_, name)
        if not info or not info.parsed_addresses():
            return
        service = type_.split(".")[0].lstrip("_")
        hostname = (info.server or "").rstrip(".") or None
        with self._lock:
            for ip in info.parsed_addresses():
                entry = self.found.setdefault(ip, {"services": set(), "hostname": None})
                entry["services"].add(service)
                entry["hostname"] = entry["hostname"] or hostname

    def remove_service(self, zc, type_: str, name: str) -> None:
        pass

    def update_service(self, zc, type_: str, name: str) -> None:
        self.add_service(zc, type_, name)


class MdnsProbe(Probe):
    """Browses common DNS-SD service types for a fixed collection window."""

    name = "mdns"

    def __init__(self, service_types: Iterable[str] = MDNS_SERVICE_TYPES) -> None:
        self.service_types = list(service_types)

    async def probe(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        network = _parse_network(target)
        collector = _MdnsCollector()
        zc = Zeroconf()
        try:
            browser = ServiceBrowser(zc, self.service_types, collector)
            await asyncio.sleep(timeout)
            browser.cancel()
        finally:
            zc.close()

        return [
            DiscoveryRecord(
                ip=ip,
                hostname=entry["hostname"],
                services=frozenset(entry["services"]),
                discovery_method=self.name,
            )
            for ip, entry in collector.found.items()
            if _in_network(ip, network)
        ]


# ── SSDP ───────────────────────────────────────────────────────────


def parse_ssdp_response(text: str) -> dict[str, str]:
    headers: dict[str, str] = {}
    for line in text.splitlines()[1:]:
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()
    return headers


class _SsdpProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.responses: list[tuple[str, dict[str, str]]] = []

    def datagram_received(self, data: bytes, addr) -> None:
        self.responses.append((addr[0], parse_ssdp_response(data.decode(errors="ignore"))))

    def error_received(self, exc: Exception) -> None:
        logger.debug("SSDP socket error: %s", exc)


class SsdpProbe(Probe):
    """Sends one M-SEARCH and listens for the response window."""

    name = "ssdp"

    async def probe(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        network = _parse_network(target)
        loop = asyncio.get_running_loop()
        transport, protocol = await loop.create_datagram_endpoint(
            _SsdpProtocol, local_addr=("0.0.0.0", 0), family=socket.AF_INET
        )
        try:
            sock = transport.get_extra_info("socket")
            if sock is not None:
                sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            transport.sendto(SSDP_SEARCH, SSDP_ADDR)
            await asyncio.sleep(timeout)
        finally:
            transport.close()
        return self.records_from(protocol.responses, network)

    def records_from(self, responses, network=None) -> list[DiscoveryRecord]:
        by_ip: dict[str, DiscoveryRecord] = {}
        for ip, headers in responses:
            if ip in by_ip or not _in_network(ip, network):
                continue
            by_ip[ip] = DiscoveryRecord(
                ip=ip,
                device_type=headers.get("server") or "Unknown UPnP Device",
                location=headers.get("location"),
                services=frozenset({"upnp"}),
                discovery_method=self.name,
            )
        return list(by_ip.values())


# ── TCP ports ──────────────────────────────────────────────────────


class PortProbe(Probe):
    """Bare TCP connect against each candidate port, all ports at once."""

    name = "ports"

    def __init__(self, ports: Iterable[int] = QUICK_PORTS) -> None:
        self.ports = tuple(ports)

    async def probe(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        if not target:
            return []
        open_ports = await self.scan(target, self.ports, timeout)
        return [DiscoveryRecord(ip=target, open_ports=frozenset(open_ports), discovery_method=self.name)]

    async def scan(self, ip: str, ports: Iterable[int], timeout: float) -> list[int]:
        ports = list(ports)
        results = await asyncio.gather(*(self.check_port(ip, p, timeout) for p in ports))
        return [p for p, is_open in zip(ports, results) if is_open]

    @staticmethod
    async def check_port(ip: str, port: int, timeout: float) -> bool:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout)
        except (asyncio.TimeoutError, OSError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


# ── HTTP banners ───────────────────────────────────────────────────


class BannerProbe(Probe):
    """Bounded GETs per web port; extracts server, content type and title.

    ``/`` is always fetched. Each extra path in ``paths`` is only tried on
    ports that answered ``/``, and is recorded when it does not return an
    error status.
    """

    name = "http"

    def __init__(
        self,
        ports: Iterable[int] = WEB_PORTS,
        max_bytes: int = 16384,
        transport: httpx.AsyncBaseTransport | None = None,
        paths: Iterable[str] = (),
    ) -> None:
        self.ports = tuple(ports)
        self.max_bytes = max_bytes
        self.paths = tuple(p for p in dict.fromkeys(paths) if p and p != "/")
        self._transport = transport

    async def probe(self, target: str | None, timeout: float) -> list[DiscoveryRecord]:
        if not target:
            return []
        services = await self.grab(target, self.ports, timeout)
        return [DiscoveryRecord(ip=target, web_services=tuple(services), discovery_method=self.name)]

    async def grab(self, ip: str, ports: Iterable[int], timeout: float) -> list[WebService]:
        async with httpx.AsyncClient(
            verify=False,  # local devices mostly use self-signed certificates
            follow_redirects=False,
            timeout=timeout,
            transport=self._transport,
        ) as client:
            roots = [r for r in await asyncio.gather(*(self._fetch(client, ip, p) for p in ports)) if r]
            if not self.paths or not roots:
                return roots
            extra = await asyncio.gather(*(
                self._fetch(client, ip, root.port, path) for root in roots for path in self.paths
            ))
        return roots + [w for w in extra if w is not None and w.status < 400]

    async def _fetch(
        self, client: httpx.AsyncClient, ip: str, port: int, path: str = "/",
    ) -> WebService | None:
        scheme = "https" if port in HTTPS_PORTS else "http"
        url = f"{scheme}://{ip}:{port}{path}"
        try:
            async with client.stream("GET", url) as resp:
                body = b""
                async for chunk in resp.aiter_bytes():
                    body += chunk
                    if len(body) >= self.max_bytes:
                        break
        except httpx.HTTPError:
            return None
        m = _TITLE_RE.search(body[: self.max_bytes])
        title = m.group(1).decode(errors="replace").strip() if m else ""
        logger.debug("HTTP banner %s -> %d %s", url, resp.status_code, resp.headers.get("server", ""))
        return WebService(
            port=port,
            scheme=scheme,
            status=resp.status_code,
            server=resp.headers.get("server", ""),
            content_type=resp.headers.get("content-type", ""),
            title=" ".join(title.split()),
            path=path,
        )
