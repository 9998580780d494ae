import asyncio

import anyio
import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from sitecheck.core.check_registry_provider import get_check_registry, get_probe_executor
from sitecheck.schemas.check import CancelResponse, CheckRequest, HistoryEntry
from sitecheck.services.check_registry import CheckRegistry
from sitecheck.services.check_session import CheckSession
from sitecheck.services.probe_executor import ProbeExecutor
from sitecheck.utils.ndjson import NDJSON_MEDIA_TYPE, encode_event
from sitecheck.utils.target import extract_domain

logger = structlog.get_logger()

router = APIRouter(prefix="/check-website", tags=["checks"])

CHECK_ID_HEADER = "X-Check-ID"


def _log_history_entry(entry: HistoryEntry) -> None:
    logger.info(
        "Check finished",
        url=entry.url,
        success=entry.success,
        response_time_ms=entry.response_time,
        error=entry.error_message,
    )


@router.post("", response_class=StreamingResponse)
async def check_website(
    request: CheckRequest,
    registry: CheckRegistry = Depends(get_check_registry),
    executor: ProbeExecutor = Depends(get_probe_executor),
) -> StreamingResponse:
    """Probe a URL stage by stage, streaming one NDJSON snapshot per transition."""
    session = CheckSession(executor, on_complete=_log_history_entry)
    check_id = await registry.register(session)
    updates = await session.start(request.url)
    logger.info("Check started", check_id=check_id, domain=extract_domain(request.url))

    async def event_generator():
        try:
            async for event in updates:
                yield encode_event(event).encode()
        except asyncio.CancelledError:
            logger.info("Check stream closed by client", check_id=check_id)
            raise
        finally:
            # Teardown must finish even when the response task is being cancelled
            with anyio.CancelScope(shield=True):
                await session.stop()
                await registry.remove(check_id)

    return StreamingResponse(
        event_generator(),
        media_type=NDJSON_MEDIA_TYPE,
        headers={CHECK_ID_HEADER: check_id, "Cache-Control": "no-cache"},
    )


@router.delete("/{check_id}", response_model=CancelResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_check(
    check_id: str,
    registry: CheckRegistry = Depends(get_check_registry),
) -> CancelResponse:
    stopped = await registry.stop(check_id)
    if not stopped:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Check not found or already finished")
    return CancelResponse(check_id=check_id, status="cancellation_requested")
