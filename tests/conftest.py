"""pytest configuration and shared fakes for Jarvis hub tests."""

from __future__ import annotations

import asyncio
from typing import Any

import bcrypt
import pyotp
import pytest

from jarvis.db import init_db, set_db_path
from jarvis.discovery.inventory import DeviceInventory
from jarvis.discovery.models import DiscoveryRecord, WebService
from jarvis.discovery.probes import BannerProbe, PortProbe, Probe
from jarvis.discovery.scanner import NetworkScanner
from jarvis.orchestrator.audit import AuditTrail
from jarvis.orchestrator.authorization import AuthorizationManager, CredentialVerifier
from jarvis.orchestrator.core import Orchestrator
from jarvis.orchestrator.policy import PolicyEngine
from jarvis.sessions.registry import SessionRegistry
from jarvis.skills import Skill, SkillRegistry

PIN = "4821"


@pytest.fixture(autouse=True)
def db_path(tmp_path):
    path = tmp_path / "jarvis.db"
    set_db_path(path)
    init_db(path)
    return path


class FakeConnection:
    """Records everything the registry writes to it."""

    def __init__(self, fail: bool = False, block: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.fail = fail
        self._gate = asyncio.Event()
        if not block:
            self._gate.set()

    async def send_json(self, data: Any) -> None:
        await self._gate.wait()
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == kind]


class RecordingSkill(Skill):
    """Skill whose actions echo their args and count invocations."""

    def __init__(self, name: str, actions: set[str], result: dict | None = None,
                 delay: float = 0.0, error: Exception | None = None) -> None:
        self.name = name
        self.display_name = name.title()
        self.actions = frozenset(actions)
        self.result = result
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, dict]] = []

    async def run(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((action, args))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.result) if self.result is not None else {"echo": args}


@pytest.fixture(scope="session")
def pin_hash() -> str:
    return bcrypt.hashpw(PIN.encode(), bcrypt.gensalt(rounds=4)).decode()


@pytest.fixture
def totp_secret() -> str:
    return pyotp.random_base32()


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sessions() -> SessionRegistry:
    return SessionRegistry(heartbeat_interval=3600)


@pytest.fixture
def docker_skill() -> RecordingSkill:
    return RecordingSkill("docker", {"status", "restart", "start", "stop"})


@pytest.fixture
def skills(docker_skill) -> SkillRegistry:
    registry = SkillRegistry()
    registry.register(docker_skill)
    registry.register(RecordingSkill("homeassistant", {"turn_on", "turn_off", "unlock_door"}))
    registry.register(RecordingSkill("security", {"ban_ip"}))
    return registry


@pytest.fixture
def authorizer(pin_hash, totp_secret, clock) -> AuthorizationManager:
    return AuthorizationManager(
        CredentialVerifier(pin_hash=pin_hash, totp_secret=totp_secret),
        max_attempts=3,
        timeout=60.0,
        clock=clock,
    )


@pytest.fixture
def orchestrator(sessions, skills, authorizer) -> Orchestrator:
    orch = Orchestrator(
        sessions, skills, PolicyEngine(), authorizer, AuditTrail(sessions), skill_timeout=1.0
    )
    sessions.add_observer(orch)
    return orch


@pytest.fixture
async def client_session(sessions):
    """A registered session subscribed to the audit topic: ``(session_id, conn)``."""
    conn = FakeConnection()
    session_id = await sessions.register(conn, remote_addr="127.0.0.1")
    sessions.subscribe(session_id, ["audit"])
    yield session_id, conn
    await sessions.stop()


# ── Discovery fakes ────────────────────────────────────────────────


class StaticProbe(Probe):
    """Returns canned records, or raises *error*."""

    def __init__(self, name: str, records=(), error: Exception | None = None,
                 delay: float = 0.0) -> None:
        self.name = name
        self.records = list(records)
        self.error = error
        self.delay = delay
        self.targets: list[str | None] = []

    async def probe(self, target, timeout):
        self.targets.append(target)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.records)


class FakePorts(PortProbe):
    def __init__(self, open_ports: dict[str, list[int]] | None = None) -> None:
        super().__init__()
        self.open_ports = open_ports or {}

    async def scan(self, ip, ports, timeout):
        return list(self.open_ports.get(ip, []))


class FakeBanner(BannerProbe):
    def __init__(self, services: dict[str, list[WebService]] | None = None) -> None:
        super().__init__()
        self.services = services or {}

    async def grab(self, ip, ports, timeout):
        return list(self.services.get(ip, []))


async def no_reverse_dns(ip: str) -> str:
    return ""


async def fixed_subnet() -> str:
    return "192.168.1.0/24"


def make_scanner(inventory: DeviceInventory | None = None, **overrides) -> NetworkScanner:
    """A scanner whose probes never touch the network."""
    kwargs = {
        "neighbor": StaticProbe("arp", [
            DiscoveryRecord(ip="192.168.1.20", mac="00:17:88:aa:bb:cc",
                            vendor="Philips Lighting", discovery_method="arp"),
        ]),
        "ping": StaticProbe("ping", [
            DiscoveryRecord(ip="192.168.1.20", response_time=0.8, discovery_method="ping"),
            DiscoveryRecord(ip="192.168.1.30", response_time=1.2, discovery_method="ping"),
        ]),
        "mdns": StaticProbe("mdns"),
        "ssdp": StaticProbe("ssdp"),
        "ports": FakePorts({"192.168.1.30": [631, 9100]}),
        "banner": FakeBanner(),
        "resolver": no_reverse_dns,
        "subnet_detector": fixed_subnet,
    }
    kwargs.update(overrides)
    return NetworkScanner(inventory or DeviceInventory(), **kwargs)
