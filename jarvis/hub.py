"""Hub — wires sessions, orchestrator, discovery and skills together.

One :class:`Hub` per process.  :meth:`Hub.from_env` builds the production
graph from environment variables; tests build one by hand with fakes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from jarvis.devices import DeviceRegistry, ProtocolRouter
from jarvis.discovery import DeviceInventory, NetworkScanner, ScanResult
from jarvis.events import Event, EventType, Topic
from jarvis.integrations.ha import HAClient
from jarvis.orchestrator import (
    AuthorizationManager,
    CredentialVerifier,
    Orchestrator,
    load_policy,
)
from jarvis.orchestrator.audit import AuditTrail
from jarvis.sessions import SessionRegistry
from jarvis.sessions.registry import DEFAULT_HEARTBEAT_INTERVAL
from jarvis.skills import SkillRegistry
from jarvis.skills.devices import DeviceSkill
from jarvis.skills.docker import DockerSkill
from jarvis.skills.homeassistant import HomeAssistantSkill
from jarvis.skills.network import NetworkSkill
from jarvis.skills.system import SystemSkill, collect_metrics

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = float(os.environ.get("JARVIS_HEARTBEAT_INTERVAL", str(DEFAULT_HEARTBEAT_INTERVAL)))
METRICS_INTERVAL = float(os.environ.get("JARVIS_METRICS_INTERVAL", "5"))


class Hub:
    """Owns every long-lived component and their background tasks."""

    def __init__(
        self,
        sessions: SessionRegistry,
        orchestrator: Orchestrator,
        scanner: NetworkScanner,
        devices: DeviceRegistry,
        metrics_interval: float = METRICS_INTERVAL,
    ) -> None:
        self.sessions = sessions
        self.orchestrator = orchestrator
        self.scanner = scanner
        self.inventory = scanner.inventory
        self.devices = devices
        self.metrics_interval = metrics_interval
        self._metrics_task: asyncio.Task | None = None

        sessions.add_observer(orchestrator)
        scanner.add_listener(self._scan_complete)

    @property
    def skills(self) -> SkillRegistry:
        return self.orchestrator.skills

    @property
    def audit(self) -> AuditTrail:
        return self.orchestrator.audit

    @classmethod
    def from_env(cls) -> "Hub":
        sessions = SessionRegistry(heartbeat_interval=HEARTBEAT_INTERVAL)
        policy = load_policy()
        authorizer = AuthorizationManager(
            CredentialVerifier.from_env(),
            max_attempts=policy.max_attempts,
            timeout=policy.timeout,
        )

        inventory = DeviceInventory()
        scanner = NetworkScanner(inventory)
        ha = HAClient.from_env()
        devices = DeviceRegistry(ProtocolRouter(ha=ha))

        skills = SkillRegistry()
        skills.register(NetworkSkill(scanner))
        skills.register(DeviceSkill(devices, inventory))
        skills.register(DockerSkill())
        skills.register(SystemSkill())
        if ha is not None:
            skills.register(HomeAssistantSkill(ha))

        orchestrator = Orchestrator(sessions, skills, policy, authorizer, AuditTrail(sessions))
        return cls(sessions, orchestrator, scanner, devices)

    # ── Lifecycle ──────────────────────────────────────────────────

    async def start(self) -> None:
        await self.sessions.start()
        await self.orchestrator.authorizer.start()
        if self.metrics_interval > 0:
            self._metrics_task = asyncio.create_task(self._metrics_loop())
        logger.info("Hub started with skills: %s", ", ".join(self.skills.names()))

    async def stop(self) -> None:
        if self._metrics_task is not None:
            self._metrics_task.cancel()
            try:
                await self._metrics_task
            except asyncio.CancelledError:
                pass
            self._metrics_task = None
        await self.orchestrator.authorizer.stop()
        await self.sessions.stop()
        await self.skills.close()
        logger.info("Hub stopped")

    async def health(self) -> dict[str, Any]:
        skills = await self.skills.health()
        return {
            "status": "ok" if all(skills.values()) else "degraded",
            "skills": skills,
            "sessions": len(self.sessions),
            "pendingAuthorizations": len(self.orchestrator.authorizer),
            "network": self.scanner.status(),
        }

    # ── Broadcasts ─────────────────────────────────────────────────

    def _scan_complete(self, result: ScanResult) -> None:
        self.sessions.broadcast(
            Topic.NETWORK.value,
            Event(
                EventType.NETWORK_SCAN_COMPLETE,
                {
                    "ok": result.ok,
                    "subnet": result.subnet,
                    "deviceCount": len(result.devices),
                    "duration": result.duration,
                    "probeErrors": dict(result.probe_errors),
                },
            ),
        )

    async def _metrics_loop(self) -> None:
        while True:
            await asyncio.sleep(self.metrics_interval)
            try:
                metrics = await asyncio.to_thread(collect_metrics)
                self.sessions.broadcast(
                    Topic.SYSTEM_METRICS.value, Event(EventType.SYSTEM_METRICS, metrics)
                )
            except Exception:
                logger.exception("System metrics broadcast failed")
