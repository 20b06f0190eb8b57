"""Backend detection: find a browser that already exposes a CDP endpoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from .config import MAX_PROBE_TIMEOUT, BridgeConfig

logger = logging.getLogger("mcp.bridge.detector")


@dataclass
class DetectionResult:
    available: bool
    endpoint: str | None = None
    ws_url: str | None = None
    version: dict[str, Any] = field(default_factory=dict)
    probed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "available": self.available,
            "endpoint": self.endpoint,
            "browser": self.version.get("Browser"),
            "probed": list(self.probed),
        }


async def probe_endpoint(
    session: aiohttp.ClientSession,
    endpoint: str,
    *,
    timeout: float = MAX_PROBE_TIMEOUT,
) -> dict[str, Any] | None:
    """Return the /json/version payload when `endpoint` answers 200, else None.

    Refused connections, timeouts, non-200 responses and non-JSON bodies all
    count as "not available"; none of them propagate.
    """
    url = f"{endpoint.rstrip('/')}/json/version"
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            if resp.status != 200:
                return None
            payload = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
        logger.debug("detector.probe miss endpoint=%s err=%s", endpoint, type(exc).__name__)
        return None
    return payload if isinstance(payload, dict) else {}


async def detect(config: BridgeConfig) -> DetectionResult:
    """Probe candidate endpoints in order; first success wins."""
    if config.cdp_disabled:
        return DetectionResult(available=False)

    probed: list[str] = []
    async with aiohttp.ClientSession(headers={"User-Agent": "mcp-bridge"}) as session:
        for endpoint in config.candidate_endpoints():
            probed.append(endpoint)
            version = await probe_endpoint(session, endpoint, timeout=config.probe_timeout)
            if version is None:
                continue
            ws_url = version.get("webSocketDebuggerUrl")
            logger.info("detector.found endpoint=%s browser=%s", endpoint, version.get("Browser"))
            return DetectionResult(
                available=True,
                endpoint=endpoint,
                ws_url=ws_url if isinstance(ws_url, str) and ws_url else None,
                version=version,
                probed=probed,
            )

    logger.info("detector.none probed=%s", ",".join(probed))
    return DetectionResult(available=False, probed=probed)
