"""httpx client for the streaming check endpoint."""
from __future__ import annotations

from typing import AsyncIterator, Optional

import httpx
import structlog

from sitecheck.schemas.check import StreamEvent
from sitecheck.utils.ndjson import NDJSONDecoder

logger = structlog.get_logger()

CHECK_PATH = "/api/v1/check-website"


class CheckStreamError(Exception):
    """Raised when the server refuses a check or the stream ends without a final event."""


class StreamingCheckClient:
    """Submit URLs to a check server and follow its NDJSON stage updates."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )
        self.check_id: Optional[str] = None

    async def __aenter__(self) -> "StreamingCheckClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def check(self, url: str) -> AsyncIterator[StreamEvent]:
        """Yield every event of one check, ending with its final event."""
        decoder = NDJSONDecoder()
        async with self._client.stream("POST", CHECK_PATH, json={"url": url}) as response:
            if response.status_code != 200:
                await response.aread()
                raise CheckStreamError(f"Check request failed with HTTP {response.status_code}: {response.text[:200]}")
            self.check_id = response.headers.get("X-Check-ID")
            logger.debug("Check stream opened", check_id=self.check_id, url=url)

            async for chunk in response.aiter_bytes():
                for payload in decoder.feed(chunk):
                    event = StreamEvent.model_validate(payload)
                    yield event
                    if event.is_final:
                        return
            for payload in decoder.flush():
                event = StreamEvent.model_validate(payload)
                yield event
                if event.is_final:
                    return
        raise CheckStreamError("Check stream ended without a final result")

    async def cancel(self, check_id: Optional[str] = None) -> bool:
        """Ask the server to stop a running check. False when it had already finished."""
        check_id = check_id or self.check_id
        if not check_id:
            return False
        response = await self._client.delete(f"{CHECK_PATH}/{check_id}")
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True
