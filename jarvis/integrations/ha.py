"""Home Assistant REST API client.

Uses httpx for async HTTP.  Raises :class:`HAClientError` at call time if
HA is unreachable or rejects the request.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import httpx

logger = logging.getLogger(__name__)

HA_URL = os.environ.get("HA_URL", "http://homeassistant:8123")
HA_TOKEN = os.environ.get("HA_TOKEN", "")


class HAClientError(Exception):
    """Base error for HA client failures."""


class HAConnectionError(HAClientError):
    """Raised when HA is network-unreachable."""


class HAAuthError(HAClientError):
    """Raised when HA returns 401 or 403."""


class HAClient:
    """Async wrapper around the Home Assistant REST API.

    One :class:`httpx.AsyncClient` is reused across calls.  Call
    :meth:`aclose` (or use as an async context manager) when done.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json",
            },
            transport=transport,
        )

    @classmethod
    def from_env(cls) -> "HAClient | None":
        """Client for ``HA_URL`` / ``HA_TOKEN``, or ``None`` without a token."""
        if not HA_TOKEN:
            logger.info("HA_TOKEN not set; Home Assistant skill disabled")
            return None
        return cls(HA_URL, HA_TOKEN)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "HAClient":
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()

    # ── Public API ─────────────────────────────────────────────────

    async def health(self) -> bool:
        """Return True if HA API is reachable (GET /api/ -> 200)."""
        try:
            await self._request("GET", "/api/")
            return True
        except HAClientError:
            return False

    async def get_states(self) -> list[dict]:
        result = await self._request("GET", "/api/states")
        return result if isinstance(result, list) else []

    async def get_state(self, entity_id: str) -> dict:
        result = await self._request("GET", f"/api/states/{entity_id}")
        return result if isinstance(result, dict) else {}

    async def call_service(self, domain: str, service: str, data: dict) -> list[dict]:
        """Call a HA service; returns the states that changed."""
        result = await self._request("POST", f"/api/services/{domain}/{service}", data)
        return result if isinstance(result, list) else []

    # ── Private helpers ────────────────────────────────────────────

    async def _request(self, method: str, path: str, data: dict | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = await self._client.request(method, url, json=data)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            raise HAConnectionError(f"Cannot reach HA at {url}: {exc}") from exc
        if response.status_code in (401, 403):
            raise HAAuthError(f"HA returned {response.status_code}; check your token")
        if response.status_code >= 400:
            raise HAClientError(f"HA returned {response.status_code} for {method} {path}")
        if not response.content:
            return None
        return response.json()
