"""
Postgres repository for per-team opt-in state.

Absence of a row means the user is opted in; only explicit choices are
stored.
"""

from collections import defaultdict

from app.db.helpers import execute_query, fetch_all, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.matching_domain import ALL_TEAMS

logger = get_logger(__name__)


class UserOptInRepository:
    """Persistence helpers for the user_opt_in table."""

    @staticmethod
    @with_db_retry()
    async def get_all_opt_in_status() -> dict[str, dict[str, bool]]:
        """
        Load every stored opt-in choice in one query.

        Returns:
            {team_id: {user_id: opted_in}}, with ``ALL_TEAMS`` as the key
            for choices made outside a team
        """
        rows = await fetch_all("SELECT user_id, team_id, opted_in FROM user_opt_in")

        lookup: dict[str, dict[str, bool]] = defaultdict(dict)
        for row in rows:
            lookup[row["team_id"]][row["user_id"]] = bool(row["opted_in"])

        logger.debug("Opt-in lookup loaded", records=len(rows), teams=len(lookup))
        return dict(lookup)

    @staticmethod
    async def set_opt_in(
        user_id: str,
        opted_in: bool,
        *,
        team_id: str | None = None,
        tenant_id: str | None = None,
        service_url: str | None = None,
    ) -> None:
        """
        Store a user's opt-in choice.

        Without ``team_id`` the choice applies to every team: it is saved
        under ``ALL_TEAMS`` and any team-scoped rows for the user are
        cleared, since those would otherwise override it.
        """
        query = """
            INSERT INTO user_opt_in (user_id, team_id, tenant_id, service_url, opted_in)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (user_id, team_id)
            DO UPDATE SET
                opted_in = EXCLUDED.opted_in,
                tenant_id = COALESCE(EXCLUDED.tenant_id, user_opt_in.tenant_id),
                service_url = COALESCE(EXCLUDED.service_url, user_opt_in.service_url),
                updated_at = NOW()
        """
        scope = team_id or ALL_TEAMS
        await execute_query(query, (user_id, scope, tenant_id, service_url, opted_in))

        cleared = 0
        if scope == ALL_TEAMS:
            cleared = await execute_query(
                "DELETE FROM user_opt_in WHERE user_id = %s AND team_id <> %s",
                (user_id, ALL_TEAMS),
            )

        logger.info(
            "User opt-in updated",
            user_id=user_id,
            team_id=scope,
            opted_in=opted_in,
            team_overrides_cleared=cleared,
        )


user_opt_in_repository = UserOptInRepository()
