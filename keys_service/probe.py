from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import httpx

from common.config import RotationSettings
from common.schemas import ProbeResult

logger = logging.getLogger(__name__)


class Probe(Protocol):
    async def test_connection(self, secret: str) -> ProbeResult: ...


class ConnectionProbe:
    """Sends a minimal generate request to check a single credential.

    Every attempt is bounded by probe_timeout_s; a timeout is reported as a
    failed probe.
    """

    def __init__(
        self,
        settings: RotationSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or RotationSettings()
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self.settings.probe_base_url}/models/{self.settings.probe_model}:generateContent"

    async def test_connection(self, secret: str) -> ProbeResult:
        timeout = self.settings.probe_timeout_s
        try:
            return await asyncio.wait_for(self._request(secret), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("Probe timed out after %.1fs", timeout)
            return ProbeResult(success=False, message=f"Timeout ({timeout:g}s)", timed_out=True)
        except httpx.HTTPError as exc:
            logger.warning("Probe network error: %s", type(exc).__name__)
            return ProbeResult(success=False, message="Network error")

    async def _request(self, secret: str) -> ProbeResult:
        payload = {"contents": [{"parts": [{"text": "Hi"}]}]}
        headers = {"x-goog-api-key": secret}

        async with httpx.AsyncClient(timeout=self.settings.probe_timeout_s, transport=self._transport) as client:
            resp = await client.post(self.url, json=payload, headers=headers)

        if resp.is_success:
            logger.info("Probe connected")
            return ProbeResult(success=True, message="Connected", status_code=resp.status_code)
        if resp.status_code == 429:
            return ProbeResult(success=False, message="Rate limited", status_code=429)
        if resp.status_code == 403:
            return ProbeResult(success=False, message="Quota exhausted", status_code=403)

        try:
            detail = resp.json().get("error", {}).get("message")
        except (ValueError, AttributeError):
            detail = None
        message = detail or f"HTTP {resp.status_code}"
        logger.warning("Probe failed: %s", message)
        return ProbeResult(success=False, message=message, status_code=resp.status_code)
