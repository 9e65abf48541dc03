"""Jarvis hub — HTTP + WebSocket server.

Exposes:
  GET  /health                          — liveness and skill health
  WS   /ws                              — HUD / voice client sessions
  POST /api/network/scan                — run one discovery scan
  GET  /api/network/devices             — discovered devices (filterable)
  GET  /api/network/devices/{ip}        — one discovered device
  POST /api/network/monitoring/start    — start continuous discovery
  POST /api/network/monitoring/stop     — stop continuous discovery
  POST /api/network/classify            — re-run classification
  GET  /api/sessions                    — connected sessions
  GET  /api/audit                       — recent audit entries

Start with::

    jarvis-hub
    # or
    uvicorn jarvis.server:app --host 0.0.0.0 --port 5200
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request, WebSocket
from pydantic import BaseModel, Field

from jarvis.db import init_db
from jarvis.discovery.scanner import DEFAULT_TIMEOUT, SCAN_INTERVAL
from jarvis.errors import ScanInProgress
from jarvis.hub import Hub
from jarvis.sessions.websocket import hub_ws_handler

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────
# Request models
# ──────────────────────────────────────────────────────────────────

class ScanRequest(BaseModel):
    subnet: str | None = None
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)


class MonitoringRequest(BaseModel):
    interval: float = Field(default=SCAN_INTERVAL, gt=0)
    subnet: str | None = None


# ──────────────────────────────────────────────────────────────────
# FastAPI app
# ──────────────────────────────────────────────────────────────────

def create_app(hub: Hub | None = None) -> FastAPI:
    """Build the app; *hub* defaults to :meth:`Hub.from_env` at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db()
        app.state.hub = hub or Hub.from_env()
        await app.state.hub.start()
        try:
            yield
        finally:
            await app.state.hub.stop()

    app = FastAPI(title="Jarvis Hub", version="1.0.0", lifespan=lifespan)

    def _hub(request: Request) -> Hub:
        return request.app.state.hub

    @app.get("/health")
    async def health(request: Request):
        return await _hub(request).health()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await hub_ws_handler(websocket, websocket.app.state.hub)

    # ── Network discovery ─────────────────────────────────────────

    @app.post("/api/network/scan")
    async def network_scan(request: Request, body: ScanRequest | None = None):
        body = body or ScanRequest()
        try:
            result = await _hub(request).scanner.scan_network(body.subnet, body.timeout)
        except ScanInProgress as exc:
            raise HTTPException(status_code=409, detail=exc.message)
        return result.to_dict()

    @app.get("/api/network/devices")
    async def network_devices(
        request: Request,
        type: str | None = None,
        vendor: str | None = None,
        ip: str | None = None,
    ):
        hub = _hub(request)
        flt: dict[str, Any] = {k: v for k, v in (("type", type), ("vendor", vendor), ("ip", ip)) if v}
        devices = hub.inventory.find(flt)
        return {
            "devices": [d.to_dict() for d in devices],
            "totalCount": len(hub.inventory),
            "filteredCount": len(devices),
            "lastScan": hub.scanner.status()["lastScan"],
        }

    @app.get("/api/network/devices/{ip}")
    async def network_device(request: Request, ip: str):
        device = _hub(request).inventory.get(ip)
        if device is None:
            raise HTTPException(status_code=404, detail=f"Device {ip} not found")
        return device.to_dict()

    @app.post("/api/network/monitoring/start")
    async def monitoring_start(request: Request, body: MonitoringRequest | None = None):
        body = body or MonitoringRequest()
        scanner = _hub(request).scanner
        scanner.start_monitoring(body.interval, body.subnet)
        return scanner.status()

    @app.post("/api/network/monitoring/stop")
    async def monitoring_stop(request: Request):
        stopped = await _hub(request).scanner.stop_monitoring()
        return {"stopped": stopped}

    @app.post("/api/network/classify")
    async def network_classify(request: Request):
        devices = _hub(request).inventory.classify_all()
        return {
            "classified": len(devices),
            "devices": [{"ip": d.ip, "classification": d.classification.to_dict()} for d in devices],
        }

    # ── Sessions / audit ──────────────────────────────────────────

    @app.get("/api/sessions")
    async def list_sessions(request: Request):
        return {"sessions": _hub(request).sessions.list_sessions()}

    @app.get("/api/audit")
    async def audit_log(request: Request, limit: int = 50, session: str | None = None):
        limit = max(1, min(limit, 500))
        return {"entries": _hub(request).audit.recent(limit, session_id=session)}

    return app


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    host = os.environ.get("JARVIS_HOST", "0.0.0.0")
    port = int(os.environ.get("JARVIS_PORT", "5200"))
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger.info("Starting Jarvis hub on %s:%d", host, port)
    uvicorn.run("jarvis.server:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
