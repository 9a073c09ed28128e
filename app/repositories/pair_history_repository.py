"""
Persistence for pairing history.

Rows are append-only. Each matching run first writes a marker row (both
user ids NULL) carrying its iteration number, then one row per pair.
"""

import psycopg
from psycopg import errors as pg_errors

from app.db.helpers import DatabaseError, execute_query, fetch_all, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.matching_domain import PairingRecord

logger = get_logger(__name__)


class PairHistoryRepositoryError(DatabaseError):
    """More specific exception for pair history failures."""


class IterationConflictError(PairHistoryRepositoryError):
    """Another run already claimed this iteration number."""

    def __init__(self, iteration: int):
        super().__init__(
            f"Iteration {iteration} was already started by another run",
            operation="append_iteration_marker",
            recoverable=False,
        )
        self.iteration = iteration


class PairHistoryRepository:
    """Read/append helpers backing the matching service."""

    @staticmethod
    def _row_to_record(row: dict) -> PairingRecord:
        return PairingRecord(
            user_a_id=row.get("user_a_id"),
            user_b_id=row.get("user_b_id"),
            iteration=int(row["iteration"]),
            team_id=row.get("team_id"),
            created_at=row.get("created_at"),
        )

    @classmethod
    @with_db_retry()
    async def get_pair_history(cls) -> list[PairingRecord]:
        """
        Return the rows of the most recent iteration.

        Older iterations never affect matching, so they are filtered out in
        SQL rather than shipped over the wire.
        """
        query = """
            SELECT user_a_id, user_b_id, iteration, team_id, created_at
            FROM pair_history
            WHERE iteration = (SELECT MAX(iteration) FROM pair_history)
        """
        rows = await fetch_all(query)
        return [cls._row_to_record(row) for row in rows]

    @staticmethod
    async def append_pairing_record(
        user_a_id: str, user_b_id: str, iteration: int, team_id: str | None = None
    ) -> None:
        query = """
            INSERT INTO pair_history (user_a_id, user_b_id, iteration, team_id)
            VALUES (%s, %s, %s, %s)
        """
        try:
            await execute_query(query, (user_a_id, user_b_id, iteration, team_id))
        except psycopg.IntegrityError as e:
            raise PairHistoryRepositoryError(
                f"Invalid pairing record: {e}", operation="append_pairing_record", recoverable=False
            ) from e

        logger.debug(
            "Pairing recorded",
            user_a_id=user_a_id,
            user_b_id=user_b_id,
            iteration=iteration,
            team_id=team_id,
        )

    @staticmethod
    async def append_iteration_marker(iteration: int) -> None:
        """
        Write the marker row that opens ``iteration``.

        Raises:
            IterationConflictError: if a marker for this iteration exists
        """
        query = """
            INSERT INTO pair_history (user_a_id, user_b_id, iteration)
            VALUES (NULL, NULL, %s)
        """
        try:
            await execute_query(query, (iteration,))
        except pg_errors.UniqueViolation as e:
            logger.warning("Iteration already claimed", iteration=iteration)
            raise IterationConflictError(iteration) from e

        logger.info("Iteration started", iteration=iteration)


pair_history_repository = PairHistoryRepository()
