"""Docker skill — container control through the ``docker`` CLI."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from .base import Skill

logger = logging.getLogger(__name__)

_CONTAINER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class DockerError(Exception):
    """``docker`` exited non-zero or is not installed."""


class DockerSkill(Skill):
    name = "docker"
    display_name = "Docker"
    actions = frozenset({"status", "get_containers", "start", "stop", "restart", "logs", "get_system_info"})

    def __init__(self, binary: str = "docker", timeout: float = 30.0) -> None:
        self.binary = binary
        self.timeout = timeout

    async def health(self) -> bool:
        try:
            await self._docker("version", "--format", "{{.Server.Version}}")
            return True
        except DockerError:
            return False

    async def run(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        try:
            if action in ("status", "get_containers"):
                containers = await self.containers(all_=bool(args.get("all", True)))
                running = sum(1 for c in containers if c.get("State") == "running")
                return {"containers": containers, "total": len(containers), "running": running}

            if action == "get_system_info":
                out = await self._docker("info", "--format", "{{json .}}")
                return {"info": json.loads(out or "{}")}

            container = _container_name(args.get("container"))
            if action == "logs":
                tail = str(int(args.get("lines", 100)))
                out = await self._docker("logs", "--tail", tail, container)
                return {"container": container, "logs": out.splitlines()}

            await self._docker(action, container)
            logger.info("Docker %s %s", action, container)
            return {"container": container, "action": action, "message": f"Container {container} {action}ed"}
        except DockerError as exc:
            return {"ok": False, "error": str(exc)}

    async def containers(self, all_: bool = True) -> list[dict[str, Any]]:
        argv = ["ps", "--format", "{{json .}}"]
        if all_:
            argv.insert(1, "-a")
        out = await self._docker(*argv)
        return [json.loads(line) for line in out.splitlines() if line.strip()]

    async def _docker(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise DockerError(f"{self.binary} not installed") from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise DockerError(f"docker {args[0]} timed out")
        if proc.returncode != 0:
            raise DockerError(stderr.decode(errors="replace").strip() or f"docker {args[0]} failed")
        return stdout.decode(errors="replace")


def _container_name(raw: Any) -> str:
    name = str(raw or "").strip()
    if name.lower().startswith("the "):
        name = name[4:].strip()
    if not _CONTAINER_RE.match(name):
        raise ValueError(f"Invalid container name: {raw!r}")
    return name
