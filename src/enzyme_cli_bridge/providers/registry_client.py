from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from enzyme_cli_bridge.config import DEFAULT_REGISTRY_URL
from enzyme_cli_bridge.domain.errors import RegistryError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = {408, 425, 429, 500, 502, 503, 504}


class NpmRegistryClient:
    """Looks up published versions of an npm package."""

    def __init__(
        self,
        base_url: str = DEFAULT_REGISTRY_URL,
        timeout_sec: float = 10.0,
        attempts: int = 3,
        base_backoff_sec: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_sec, connect=min(5.0, timeout_sec))
        self._attempts = max(1, int(attempts))
        self._base_backoff_sec = base_backoff_sec
        self._transport = transport

    async def latest_version(self, package_name: str) -> str:
        data = await self._get_json(f"/{quote(package_name, safe='@/')}/latest")
        version = str(data.get("version") or "").strip()
        if not version:
            raise RegistryError(f"Registry response for {package_name} has no version.")
        return version

    async def _get_json(self, path: str) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Accept": "application/json"},
            timeout=self._timeout,
            transport=self._transport,
        ) as client:
            for idx in range(self._attempts):
                last_attempt = idx + 1 >= self._attempts
                try:
                    resp = await client.get(path)
                except httpx.TransportError as exc:
                    if last_attempt:
                        raise RegistryError(f"Registry request failed: {exc}") from exc
                    await _sleep_backoff(idx, self._base_backoff_sec)
                    continue
                if resp.status_code in _TRANSIENT_STATUSES and not last_attempt:
                    await _sleep_backoff(idx, self._base_backoff_sec)
                    continue
                if resp.status_code >= 400:
                    raise RegistryError(
                        f"Registry returned HTTP {resp.status_code} for {path}.",
                        status_code=resp.status_code,
                    )
                try:
                    data = resp.json()
                except ValueError as exc:
                    raise RegistryError(f"Registry returned malformed JSON for {path}.") from exc
                if not isinstance(data, dict):
                    raise RegistryError(f"Unexpected registry payload for {path}.")
                return data
        raise RegistryError(f"Registry request for {path} exhausted retries.")


async def _sleep_backoff(attempt_idx: int, base_backoff_sec: float) -> None:
    # bounded exponential backoff with jitter
    delay = min(8.0, max(0.0, float(base_backoff_sec)) * (2 ** attempt_idx))
    delay = delay * (0.8 + random.random() * 0.4)
    logger.debug("Registry retry %d in %.2fs.", attempt_idx + 1, delay)
    await asyncio.sleep(delay)
