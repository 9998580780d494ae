from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

logger = structlog.get_logger()

UNKNOWN_LOCATION = "Unknown location"
UNKNOWN_IP = "Unknown"


@dataclass(frozen=True)
class ProbeLocation:
    """Public address and place the probe runs from."""

    ip: str = UNKNOWN_IP
    location: str = UNKNOWN_LOCATION


class LocationLookup:
    """Resolve the prober's public IP and location from an IP-info service."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 3.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._transport = transport

    async def lookup(self) -> ProbeLocation:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(self._url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Probe location lookup failed", url=self._url, error=str(e))
            return ProbeLocation()
        if not isinstance(data, dict):
            logger.warning("Probe location lookup returned unexpected payload", url=self._url)
            return ProbeLocation()

        parts = [data.get(key) for key in ("city", "region", "country")]
        parts = [str(part) for part in parts if part]
        return ProbeLocation(
            ip=str(data.get("ip") or UNKNOWN_IP),
            location=", ".join(parts) if parts else UNKNOWN_LOCATION,
        )
