"""
Matching job: one pair-up run across all installed teams.

Run on a fixed interval by the worker, or on demand through
/api/processnow. A Redis run lock keeps two processes from matching at the
same time.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, log_matching_run
from app.models.domain.matching_domain import MatchingRunSummary
from app.repositories.pair_history_repository import pair_history_repository
from app.repositories.team_repository import team_repository
from app.repositories.user_opt_in_repository import user_opt_in_repository
from app.services.matching.matching_service import MatchingService
from app.services.matching.run_lock import MatchingRunLock, matching_run_lock
from app.services.redis_client import fast_redis
from app.services.teams.connector_client import teams_connector_client
from app.services.teams.notification_service import TeamsNotificationService

logger = get_logger(__name__)

RETRY_AFTER_ERROR_SECONDS = 300


class MatchingJobError(Exception):
    """Custom exception for matching job operations."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


def build_matching_service() -> MatchingService:
    """MatchingService wired to Postgres and the Teams connector."""
    config = settings.matching_config()
    return MatchingService(
        config,
        team_store=team_repository,
        opt_in_store=user_opt_in_repository,
        roster_provider=teams_connector_client,
        history_store=pair_history_repository,
        notifier=TeamsNotificationService(bot_display_name=config.bot_display_name),
    )


def _skipped_summary() -> dict:
    summary = MatchingRunSummary(skipped=True)
    summary.finalize()
    return summary.to_dict()


class MatchingJob:
    """
    Runs the matching service under the run lock and keeps the last result.
    """

    def __init__(
        self,
        service: MatchingService | None = None,
        run_lock: MatchingRunLock | None = None,
    ):
        self._service = service
        self.run_lock = run_lock or matching_run_lock
        self.is_running = False
        self.last_summary: dict | None = None

    @property
    def service(self) -> MatchingService:
        if self._service is None:
            self._service = build_matching_service()
        return self._service

    async def run_once(self, cancel_event: asyncio.Event | None = None) -> dict:
        """
        Run a single matching pass.

        Returns:
            Dict: the run summary (``skipped`` when another run holds the lock)

        Raises:
            MatchingJobError: If the run fails outside the matching service
        """
        if self.is_running:
            logger.warning("Matching job already running, skipping this iteration")
            return _skipped_summary()

        self.is_running = True
        token: str | None = None
        try:
            try:
                token = await self.run_lock.acquire()
            except Exception as e:
                # Still guarded by the unique iteration marker in pair_history
                logger.warning(
                    "Run lock unavailable, continuing without it",
                    error=str(e),
                    error_type=type(e).__name__,
                )
            else:
                if token is None:
                    return _skipped_summary()

            summary = await self.service.make_pairs_and_notify(cancel_event)

            metrics = summary.to_dict()
            log_matching_run(metrics)
            self.last_summary = metrics
            return metrics

        except Exception as e:
            logger.error("Matching job failed", error=str(e), error_type=type(e).__name__)
            raise MatchingJobError(f"Matching job failed: {e}", operation="run_once") from e

        finally:
            if token is not None:
                try:
                    await self.run_lock.release(token)
                except Exception as e:
                    logger.error("Failed to release matching lock", error=str(e))
            self.is_running = False


# Singleton instance for application use
matching_job = MatchingJob()


async def run_matching_job() -> dict:
    """Run a single iteration of the matching job."""
    return await matching_job.run_once()


@asynccontextmanager
async def job_resources() -> AsyncIterator[None]:
    """Open the DB pool and Redis for a worker process that has no web app."""
    opened_pool = not db_pool.initialized
    if opened_pool:
        await db_pool.initialize()
    await fast_redis.initialize()
    try:
        yield
    finally:
        await fast_redis.close()
        if opened_pool:
            await db_pool.close()


async def run_matching_once() -> None:
    """Worker entrypoint: one run, then exit."""
    async with job_resources():
        await run_matching_job()


async def start_matching_scheduler() -> None:
    """
    Run the matching job forever, MATCHING_INTERVAL_HOURS apart.
    """
    interval_seconds = settings.MATCHING_INTERVAL_HOURS * 3600
    logger.info("Starting matching job scheduler", interval_hours=settings.MATCHING_INTERVAL_HOURS)

    async with job_resources():
        while True:
            try:
                await run_matching_job()
                await asyncio.sleep(interval_seconds)

            except MatchingJobError as e:
                logger.error(
                    "Error in matching job scheduler",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                # Back off before retrying to avoid tight error loops
                await asyncio.sleep(RETRY_AFTER_ERROR_SECONDS)
