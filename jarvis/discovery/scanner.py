"""Network scanner.

``scan_network`` runs the host-finding probes (neighbor table, ping sweep,
mDNS, SSDP) concurrently, merges their records into the
:class:`DeviceInventory`, then enriches every found IP with a port probe,
an HTTP banner probe and a reverse-DNS lookup under a bounded worker pool.

Only one scan runs at a time; a second caller gets :class:`ScanInProgress`
immediately instead of queueing.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Awaitable, Callable

from jarvis.discovery.inventory import DeviceInventory
from jarvis.discovery.models import Device, DiscoveryRecord, ScanResult
from jarvis.discovery.probes import (
    BannerProbe,
    MdnsProbe,
    NeighborProbe,
    PingSweepProbe,
    PortProbe,
    Probe,
    SsdpProbe,
    detect_subnet,
    reverse_dns,
)
from jarvis.errors import ProbeFailure, ScanInProgress

logger = logging.getLogger(__name__)

SCAN_INTERVAL = float(os.environ.get("JARVIS_SCAN_INTERVAL", "300"))
DEFAULT_TIMEOUT = 5.0
MDNS_WINDOW = 3.0
SSDP_WINDOW = 4.0
PORT_TIMEOUT = 1.0
BANNER_TIMEOUT = 2.0

ScanListener = Callable[[ScanResult], Awaitable[None] | None]


class NetworkScanner:
    """Runs discovery probes and feeds the inventory."""

    def __init__(
        self,
        inventory: DeviceInventory | None = None,
        *,
        neighbor: Probe | None = None,
        ping: Probe | None = None,
        mdns: Probe | None = None,
        ssdp: Probe | None = None,
        ports: PortProbe | None = None,
        banner: BannerProbe | None = None,
        resolver: Callable[[str], Awaitable[str]] = reverse_dns,
        subnet_detector: Callable[[], Awaitable[str]] = detect_subnet,
        enrich_concurrency: int = 16,
    ) -> None:
        self.inventory = inventory or DeviceInventory()
        self.neighbor = neighbor or NeighborProbe()
        self.ping = ping or PingSweepProbe()
        self.mdns = mdns or MdnsProbe()
        self.ssdp = ssdp or SsdpProbe()
        self.ports = ports or PortProbe()
        self.banner = banner or BannerProbe(paths=self.inventory.classifier.path_hints())
        self._resolve = resolver
        self._detect_subnet = subnet_detector
        self.enrich_concurrency = enrich_concurrency
        self._lock = asyncio.Lock()
        self._listeners: list[ScanListener] = []
        self._monitor_task: asyncio.Task | None = None
        self.monitor_interval: float | None = None
        self.last_result: ScanResult | None = None

    def add_listener(self, listener: ScanListener) -> None:
        """Call *listener* with every completed :class:`ScanResult`."""
        self._listeners.append(listener)

    @property
    def scanning(self) -> bool:
        return self._lock.locked()

    @property
    def monitoring(self) -> bool:
        return self._monitor_task is not None and not self._monitor_task.done()

    # ── Scanning ───────────────────────────────────────────────────

    async def scan_network(
        self, subnet: str | None = None, timeout: float = DEFAULT_TIMEOUT
    ) -> ScanResult:
        """Discover and classify every host on *subnet* (auto-detected if omitted)."""
        if self._lock.locked():
            raise ScanInProgress("Scan already in progress")
        async with self._lock:
            result = ScanResult(ok=True)
            result.subnet = subnet or await self._detect_subnet()
            logger.info("Starting network scan of %s", result.subnet)

            records = await self._discover(result, timeout)
            if len(result.probe_errors) == 4:
                result.ok = False
            self.inventory.merge_all(records)
            ips = sorted({r.ip for r in records})
            await self._enrich_all(ips, result)
            self.inventory.mark_stale()

            result.devices = [self.inventory.get(ip) for ip in ips if ip in self.inventory]
            result.finished_at = time.time()
            result.message = (
                f"Found {len(result.devices)} devices" if result.ok else "All discovery methods failed"
            )
            self.inventory.last_scan = result.finished_at
            self.last_result = result
            logger.info(
                "Network scan of %s completed: %d devices in %.1fs",
                result.subnet, len(result.devices), result.duration,
            )

        await self._notify(result)
        return result

    async def enrich(self, ip: str) -> Device:
        """Port + banner + reverse-DNS enrichment for one IP."""
        errors: dict[str, str] = {}
        await self._enrich_one(ip, errors)
        for name, message in errors.items():
            logger.debug("Enrichment %s for %s failed: %s", name, ip, message)
        device = self.inventory.get(ip)
        if device is None:
            device = self.inventory.merge(DiscoveryRecord(ip=ip, discovery_method="manual"))
        return device

    async def scan_ports(self, ip: str, ports: list[int] | None = None,
                         timeout: float = PORT_TIMEOUT) -> list[int]:
        open_ports = await self.ports.scan(ip, ports or self.ports.ports, timeout)
        self.inventory.merge(
            DiscoveryRecord(ip=ip, open_ports=frozenset(open_ports), discovery_method=self.ports.name)
        )
        return open_ports

    async def mdns_scan(self, timeout: float = MDNS_WINDOW) -> list[Device]:
        return self.inventory.merge_all(await self.mdns.run(None, timeout))

    async def upnp_scan(self, timeout: float = SSDP_WINDOW) -> list[Device]:
        return self.inventory.merge_all(await self.ssdp.run(None, timeout))

    # ── Monitoring ─────────────────────────────────────────────────

    def start_monitoring(self, interval: float = SCAN_INTERVAL, subnet: str | None = None) -> None:
        """(Re)start periodic scans every *interval* seconds."""
        if interval <= 0:
            raise ValueError("Monitoring interval must be positive")
        self._cancel_monitor()
        self.monitor_interval = interval
        self._monitor_task = asyncio.create_task(self._monitor_loop(interval, subnet))
        logger.info("Started continuous network discovery (interval %.0fs)", interval)

    async def stop_monitoring(self) -> bool:
        """Stop periodic scans; ``False`` if none were running."""
        task = self._monitor_task
        if task is None:
            return False
        self._cancel_monitor()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped continuous network discovery")
        return True

    # ── Internal ───────────────────────────────────────────────────

    async def _discover(self, result: ScanResult, timeout: float) -> list[DiscoveryRecord]:
        probes: list[tuple[Probe, float]] = [
            (self.neighbor, timeout),
            (self.ping, min(timeout, 2.0)),
            (self.mdns, MDNS_WINDOW),
            (self.ssdp, SSDP_WINDOW),
        ]
        outcomes = await asyncio.gather(
            *(probe.run_checked(result.subnet, t) for probe, t in probes),
            return_exceptions=True,
        )
        records: list[DiscoveryRecord] = []
        for (probe, _), outcome in zip(probes, outcomes):
            if isinstance(outcome, BaseException):
                message = outcome.message if isinstance(outcome, ProbeFailure) else repr(outcome)
                logger.warning("Scan method %s failed: %s", probe.name, message)
                result.probe_errors[probe.name] = message
                continue
            logger.debug("%s probe found %d hosts", probe.name, len(outcome))
            records.extend(outcome)
        return records

    async def _enrich_all(self, ips: list[str], result: ScanResult) -> None:
        sem = asyncio.Semaphore(self.enrich_concurrency)

        async def _bounded(ip: str) -> None:
            async with sem:
                errors: dict[str, str] = {}
                await self._enrich_one(ip, errors)
                for name, message in errors.items():
                    result.probe_errors[f"{name}:{ip}"] = message

        await asyncio.gather(*(_bounded(ip) for ip in ips))

    async def _enrich_one(self, ip: str, errors: dict[str, str]) -> None:
        async def _hostname() -> list[DiscoveryRecord]:
            name = await self._resolve(ip)
            return [DiscoveryRecord(ip=ip, hostname=name or None, discovery_method="dns")]

        outcomes = await asyncio.gather(
            self.ports.run_checked(ip, PORT_TIMEOUT),
            self.banner.run_checked(ip, BANNER_TIMEOUT),
            _hostname(),
            return_exceptions=True,
        )
        for name, outcome in zip(("ports", "http", "dns"), outcomes):
            if isinstance(outcome, BaseException):
                errors[name] = str(outcome)
                continue
            self.inventory.merge_all(outcome)

    async def _notify(self, result: ScanResult) -> None:
        for listener in self._listeners:
            try:
                maybe = listener(result)
                if asyncio.iscoroutine(maybe):
                    await maybe
            except Exception:
                logger.exception("Scan listener failed")

    async def _monitor_loop(self, interval: float, subnet: str | None) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.scan_network(subnet)
                logger.info("Continuous network discovery scan completed")
            except ScanInProgress:
                logger.info("Skipping scheduled scan; another scan is running")
            except Exception:
                logger.exception("Continuous discovery scan failed")

    def _cancel_monitor(self) -> None:
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            self._monitor_task = None
        self.monitor_interval = None

    async def close(self) -> None:
        await self.stop_monitoring()

    def status(self) -> dict[str, Any]:
        return {
            "scanning": self.scanning,
            "monitoring": self.monitoring,
            "interval": self.monitor_interval,
            "deviceCount": len(self.inventory),
            "lastScan": self.last_result.to_dict()["scanTime"] if self.last_result else None,
        }
