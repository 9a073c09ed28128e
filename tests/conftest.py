import pytest

from app.models.domain.matching_domain import (
    MatchingConfig,
    PairingRecord,
    TeamInstallInfo,
    TeamMember,
)


def make_member(user_id: str, name: str | None = None) -> TeamMember:
    return TeamMember(
        id=user_id,
        account_id=f"29:{user_id}",
        name=name or user_id.title(),
        user_principal_name=f"{user_id}@contoso.com",
    )


def make_team(team_id: str = "team-1") -> TeamInstallInfo:
    return TeamInstallInfo(
        team_id=team_id,
        tenant_id="tenant-1",
        service_url="https://smba.example.net/amer/",
        team_name=f"Team {team_id}",
    )


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def set_if_absent(self, key: str, value: str, ttl_s: int) -> bool:
        if key in self.store:
            return False
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self.store.get(key) != value:
            return False
        del self.store[key]
        return True


class FakeTeamStore:
    def __init__(self, teams=None, error: Exception | None = None):
        self.teams = list(teams or [])
        self.error = error

    async def get_installed_teams(self):
        if self.error:
            raise self.error
        return list(self.teams)


class FakeOptInStore:
    def __init__(self, lookup=None, error: Exception | None = None):
        self.lookup = lookup or {}
        self.error = error
        self.calls = 0

    async def get_all_opt_in_status(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.lookup


class FakeRosterProvider:
    def __init__(self, rosters=None, failing_teams=()):
        self.rosters = rosters or {}
        self.failing_teams = set(failing_teams)

    async def get_team_members(self, team):
        if team.team_id in self.failing_teams:
            raise RuntimeError(f"roster unavailable for {team.team_id}")
        return list(self.rosters.get(team.team_id, []))

    async def get_team_name(self, team):
        return team.team_name or team.team_id


class FakeHistoryStore:
    def __init__(self, records=None, read_error: Exception | None = None):
        self.records: list[PairingRecord] = list(records or [])
        self.read_error = read_error
        self.markers: list[int] = []
        self.appended: list[PairingRecord] = []

    async def get_pair_history(self):
        if self.read_error:
            raise self.read_error
        return list(self.records)

    async def append_iteration_marker(self, iteration: int) -> None:
        self.markers.append(iteration)
        self.records.append(PairingRecord(None, None, iteration))

    async def append_pairing_record(self, user_a_id, user_b_id, iteration, team_id=None) -> None:
        record = PairingRecord(user_a_id, user_b_id, iteration, team_id)
        self.appended.append(record)
        self.records.append(record)


class FakeNotifier:
    """Records notifications; ``outcomes`` maps a user id to False or an exception."""

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.sent: list[tuple[str, str, str]] = []

    async def notify_user(self, team, team_name, recipient, partner) -> bool:
        outcome = self.outcomes.get(recipient.id, True)
        if isinstance(outcome, Exception):
            raise outcome
        self.sent.append((team.team_id, recipient.id, partner.id))
        return outcome


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def matching_config():
    return MatchingConfig(
        max_pairs_per_team=100, bot_display_name="Icebreaker", notification_timeout_seconds=1.0
    )
