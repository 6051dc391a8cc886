"""
System Poll Routes
Manual trigger for a poll run; scheduled runs call the same service
"""
import asyncio
import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from nphies_poll.models.poll_dto import PollRunResult, PollTriggerRequest
from nphies_poll.services.system_poll_service import SystemPollService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/system-poll", tags=["System Poll"])


@lru_cache()
def get_system_poll_service() -> SystemPollService:
    """Shared service instance; the per-schema lease serializes runs."""
    return SystemPollService()


@router.post("/trigger", response_model=PollRunResult)
async def trigger_poll(
    request: Optional[PollTriggerRequest] = None,
    service: SystemPollService = Depends(get_system_poll_service),
):
    """
    Run one poll now.

    Returns 200 when the run completed, 409 when a poll for the schema is
    already running, 502 when NPHIES or the database failed the run.
    """
    request = request or PollTriggerRequest()

    # execute_poll blocks on HTTP and database I/O
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(
        None, service.execute_poll, request.schema_name, request.trigger_type
    )

    if result.skipped:
        status_code = 409
    elif result.success:
        status_code = 200
    else:
        logger.warning(f"Poll {result.poll_id} failed: {result.errors}")
        status_code = 502

    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json", by_alias=True))
