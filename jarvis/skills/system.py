"""System skill — host load, memory, disk and uptime."""

from __future__ import annotations

import asyncio
import os
import platform
import shutil
import socket
import time
from pathlib import Path
from typing import Any

from .base import Skill

_BOOT = time.time()


def read_meminfo(path: str = "/proc/meminfo") -> dict[str, int]:
    """Return ``{"total_mb", "available_mb", "used_mb"}`` from ``/proc/meminfo``."""
    values: dict[str, int] = {}
    meminfo = Path(path)
    if meminfo.exists():
        for line in meminfo.read_text().splitlines():
            key, _, rest = line.partition(":")
            if key in ("MemTotal", "MemAvailable") and rest.split():
                values[key] = int(rest.split()[0]) // 1024
    total = values.get("MemTotal", 0)
    available = values.get("MemAvailable", 0)
    return {"total_mb": total, "available_mb": available, "used_mb": max(total - available, 0)}


def read_uptime(path: str = "/proc/uptime") -> float:
    uptime = Path(path)
    if uptime.exists():
        try:
            return float(uptime.read_text().split()[0])
        except (ValueError, IndexError):
            pass
    return time.time() - _BOOT


def disk_usage(path: str | None = None) -> dict[str, Any]:
    check_path = path or os.environ.get("JARVIS_DATA_DIR", "./data")
    if not os.path.exists(check_path):
        check_path = "/"
    usage = shutil.disk_usage(check_path)
    return {
        "path": check_path,
        "total_gb": round(usage.total / (1024 ** 3), 2),
        "free_gb": round(usage.free / (1024 ** 3), 2),
        "used_percent": round(100 * usage.used / usage.total, 1) if usage.total else 0.0,
    }


def collect_metrics() -> dict[str, Any]:
    try:
        load1, load5, load15 = os.getloadavg()
    except OSError:
        load1 = load5 = load15 = 0.0
    cores = os.cpu_count() or 1
    memory = read_meminfo()
    return {
        "cpu": {
            "cores": cores,
            "load": [round(load1, 2), round(load5, 2), round(load15, 2)],
            "usage_percent": round(min(100.0, 100.0 * load1 / cores), 1),
        },
        "memory": {
            **memory,
            "usage_percent": round(100 * memory["used_mb"] / memory["total_mb"], 1)
            if memory["total_mb"] else 0.0,
        },
        "disk": disk_usage(),
        "uptime": round(read_uptime()),
    }


class SystemSkill(Skill):
    name = "system"
    display_name = "System Monitor"
    actions = frozenset({"status", "get_metrics", "get_info", "get_uptime", "get_disk_usage"})

    async def run(self, action: str, args: dict[str, Any]) -> dict[str, Any]:
        if action in ("status", "get_metrics"):
            return {"metrics": await asyncio.to_thread(collect_metrics)}
        if action == "get_uptime":
            return {"uptime": round(read_uptime())}
        if action == "get_disk_usage":
            return {"disk": await asyncio.to_thread(disk_usage, args.get("path"))}
        return {
            "info": {
                "hostname": socket.gethostname(),
                "platform": platform.system(),
                "release": platform.release(),
                "arch": platform.machine(),
                "python": platform.python_version(),
            }
        }
