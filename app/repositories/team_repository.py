"""
Postgres repository for team install records.
"""

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.infrastructure.observability.logging import get_logger
from app.models.domain.matching_domain import TeamInstallInfo

logger = get_logger(__name__)


class TeamRepository:
    """Persistence helpers for the teams table."""

    SELECT_COLUMNS = "team_id, tenant_id, service_url, team_name, installer_name"

    @staticmethod
    def _row_to_team(row: dict) -> TeamInstallInfo:
        return TeamInstallInfo(
            team_id=row["team_id"],
            tenant_id=row["tenant_id"],
            service_url=row["service_url"],
            team_name=row.get("team_name"),
            installer_name=row.get("installer_name"),
        )

    @classmethod
    @with_db_retry()
    async def get_installed_teams(cls) -> list[TeamInstallInfo]:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM teams ORDER BY installed_at"
        rows = await fetch_all(query)
        return [cls._row_to_team(row) for row in rows]

    @classmethod
    async def get_installed_team(cls, team_id: str) -> TeamInstallInfo | None:
        query = f"SELECT {cls.SELECT_COLUMNS} FROM teams WHERE team_id = %s"
        row = await fetch_one(query, (team_id,))
        return cls._row_to_team(row) if row else None

    @staticmethod
    async def save_installed(team: TeamInstallInfo) -> None:
        """Insert or refresh the install record for a team."""
        query = """
            INSERT INTO teams (team_id, tenant_id, service_url, team_name, installer_name)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (team_id)
            DO UPDATE SET
                tenant_id = EXCLUDED.tenant_id,
                service_url = EXCLUDED.service_url,
                team_name = COALESCE(EXCLUDED.team_name, teams.team_name),
                installer_name = COALESCE(EXCLUDED.installer_name, teams.installer_name),
                updated_at = NOW()
        """
        await execute_query(
            query,
            (team.team_id, team.tenant_id, team.service_url, team.team_name, team.installer_name),
        )
        logger.info("Team install recorded", team_id=team.team_id, tenant_id=team.tenant_id)

    @staticmethod
    async def delete_installed(team_id: str) -> bool:
        deleted = await execute_query("DELETE FROM teams WHERE team_id = %s", (team_id,))
        logger.info("Team install removed", team_id=team_id, existed=deleted > 0)
        return deleted > 0


team_repository = TeamRepository()
