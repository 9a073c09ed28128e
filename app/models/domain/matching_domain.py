"""
Domain models for team pair-ups.

Plain dataclasses shared by the repositories, the Teams connector and the
matching service. The run/team/notification result types are what the
matching service returns instead of raising, so callers and tests can
inspect exactly what happened during a run.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# Opt-in entries recorded outside a team context apply to every team.
ALL_TEAMS = "*"


@dataclass(slots=True)
class MatchingConfig:
    """Values the matching service reads, passed in explicitly."""

    max_pairs_per_team: int
    bot_display_name: str
    notification_timeout_seconds: float = 15.0


@dataclass(slots=True)
class TeamInstallInfo:
    """A team the bot is installed in (row of the teams table)."""

    team_id: str
    tenant_id: str
    service_url: str
    team_name: str | None = None
    installer_name: str | None = None


@dataclass(slots=True, frozen=True)
class TeamMember:
    """
    A team member as reported by the Teams roster.

    ``id`` is the AAD object id and keys opt-in state and pair history;
    ``account_id`` is the Teams channel account id used to open a 1:1 chat.
    """

    id: str
    account_id: str
    name: str | None = None
    given_name: str | None = None
    email: str | None = None
    user_principal_name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.given_name or self.user_principal_name or self.id


@dataclass(slots=True, frozen=True)
class PairingRecord:
    """
    One historical pairing. Both user ids None marks an iteration boundary.
    """

    user_a_id: str | None
    user_b_id: str | None
    iteration: int
    team_id: str | None = None
    created_at: datetime | None = None

    @property
    def is_sentinel(self) -> bool:
        return self.user_a_id is None or self.user_b_id is None


@dataclass(slots=True)
class PairHistory:
    """Partners from the most recent iteration, plus that iteration number."""

    past_pairs: dict[str, set[str]]
    latest_iteration: int


@dataclass(slots=True)
class NotificationResult:
    user_id: str
    succeeded: bool
    reason: str | None = None


@dataclass(slots=True)
class TeamMatchResult:
    team_id: str
    succeeded: bool
    pairs_made: int = 0
    users_notified: int = 0
    reason: str | None = None
    notifications: list[NotificationResult] = field(default_factory=list)


@dataclass(slots=True)
class MatchingRunSummary:
    """Outcome of one matching run across all installed teams."""

    iteration: int | None = None
    installed_teams: int = 0
    opt_in_records: int = 0
    pairs_notified: int = 0
    users_notified: int = 0
    cancelled: bool = False
    skipped: bool = False
    error: str | None = None
    team_results: list[TeamMatchResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    def add_team_result(self, result: TeamMatchResult) -> None:
        self.team_results.append(result)
        if result.succeeded:
            self.pairs_notified += result.pairs_made
            self.users_notified += result.users_notified

    @property
    def failed_teams(self) -> list[TeamMatchResult]:
        return [r for r in self.team_results if not r.succeeded]

    def finalize(self) -> None:
        self.finished_at = datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        """Flatten for structured logging and the job's return value."""
        duration = (
            (self.finished_at - self.started_at).total_seconds() if self.finished_at else None
        )
        return {
            "job_run": "matching",
            "iteration": self.iteration,
            "installed_teams": self.installed_teams,
            "opt_in_records": self.opt_in_records,
            "pairs_notified": self.pairs_notified,
            "users_notified": self.users_notified,
            "teams_processed": len(self.team_results),
            "teams_failed": len(self.failed_teams),
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "error": self.error,
            "start_time": self.started_at.isoformat(),
            "total_duration_seconds": round(duration, 2) if duration is not None else None,
            "failed_team_ids": [r.team_id for r in self.failed_teams],
        }
