"""
On-demand trigger for a matching run.
"""

from fastapi import APIRouter, BackgroundTasks, Depends

from app.auth.verify import verify_process_now_key
from app.infrastructure.observability.logging import get_logger
from app.jobs.matching_job import MatchingJobError, matching_job

logger = get_logger(__name__)

router = APIRouter(prefix="/api", tags=["matching"])


async def _run_matching_in_background() -> None:
    try:
        await matching_job.run_once()
    except MatchingJobError as e:
        logger.error("On-demand matching run failed", error=str(e), operation=e.operation)


@router.get("/processnow", dependencies=[Depends(verify_process_now_key)])
async def process_now(background_tasks: BackgroundTasks):
    """Queue a matching run and return immediately."""
    background_tasks.add_task(_run_matching_in_background)
    logger.info("On-demand matching run queued")
    return {"accepted": True}
