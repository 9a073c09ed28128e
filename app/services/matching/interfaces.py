"""
Collaborators the matching service depends on.

The production implementations are the Postgres repositories and the Teams
connector/notification services; tests pass in fakes with the same shape.
"""

from typing import Protocol

from app.models.domain.matching_domain import PairingRecord, TeamInstallInfo, TeamMember


class TeamStore(Protocol):
    async def get_installed_teams(self) -> list[TeamInstallInfo]: ...


class OptInStore(Protocol):
    async def get_all_opt_in_status(self) -> dict[str, dict[str, bool]]: ...


class RosterProvider(Protocol):
    async def get_team_members(self, team: TeamInstallInfo) -> list[TeamMember]: ...

    async def get_team_name(self, team: TeamInstallInfo) -> str: ...


class PairHistoryStore(Protocol):
    async def get_pair_history(self) -> list[PairingRecord]: ...

    async def append_iteration_marker(self, iteration: int) -> None: ...

    async def append_pairing_record(
        self, user_a_id: str, user_b_id: str, iteration: int, team_id: str | None = None
    ) -> None: ...


class NotificationDispatcher(Protocol):
    async def notify_user(
        self,
        team: TeamInstallInfo,
        team_name: str,
        recipient: TeamMember,
        partner: TeamMember,
    ) -> bool: ...
