"""
Matching service: one pair-up run across every installed team.

For each team the bot is installed in, pull the roster, drop members who
opted out, pair the rest while avoiding last iteration's partners, record
each pair and tell both people who they were paired with.

Failures are contained at two boundaries and reported in the returned
summary instead of raised:
- a team that fails (roster, name lookup, persistence) contributes nothing
  and the run moves on to the next team;
- a notification that fails or times out is recorded but the pair stands,
  since the history row is already written.
Failing to read teams, opt-in state or history, or to open the iteration,
aborts the whole run.
"""

import asyncio

from app.infrastructure.observability.logging import get_logger
from app.models.domain.matching_domain import (
    ALL_TEAMS,
    MatchingConfig,
    MatchingRunSummary,
    NotificationResult,
    TeamInstallInfo,
    TeamMatchResult,
    TeamMember,
)
from app.services.matching.history import parse_pair_history
from app.services.matching.interfaces import (
    NotificationDispatcher,
    OptInStore,
    PairHistoryStore,
    RosterProvider,
    TeamStore,
)
from app.services.matching.pairing import make_pairs

logger = get_logger(__name__)


def is_opted_in(opt_in_lookup: dict[str, dict[str, bool]], team_id: str, user_id: str) -> bool:
    """
    Resolve a member's opt-in state for one team.

    A choice recorded for the team wins over one recorded for all teams;
    no recorded choice means opted in.
    """
    team_choices = opt_in_lookup.get(team_id, {})
    if user_id in team_choices:
        return team_choices[user_id]
    return opt_in_lookup.get(ALL_TEAMS, {}).get(user_id, True)


class MatchingService:
    """Runs pair-ups across all installed teams."""

    def __init__(
        self,
        config: MatchingConfig,
        *,
        team_store: TeamStore,
        opt_in_store: OptInStore,
        roster_provider: RosterProvider,
        history_store: PairHistoryStore,
        notifier: NotificationDispatcher,
    ):
        self.config = config
        self.team_store = team_store
        self.opt_in_store = opt_in_store
        self.roster_provider = roster_provider
        self.history_store = history_store
        self.notifier = notifier

    async def make_pairs_and_notify(
        self, cancel_event: asyncio.Event | None = None
    ) -> MatchingRunSummary:
        """
        Generate pair-ups for every installed team and notify each pair.

        Args:
            cancel_event: When set, the run stops before starting the next
                team; a team already in progress is finished first.

        Returns:
            MatchingRunSummary; ``pairs_notified`` is the number of pairs made
        """
        summary = MatchingRunSummary()
        logger.info("Making pair-ups", max_pairs_per_team=self.config.max_pairs_per_team)

        try:
            teams = await self.team_store.get_installed_teams()
            summary.installed_teams = len(teams)
            if not teams:
                logger.info("No installed teams, nothing to pair")
                summary.finalize()
                return summary

            opt_in_lookup = await self.opt_in_store.get_all_opt_in_status()
            summary.opt_in_records = sum(len(users) for users in opt_in_lookup.values())

            history = parse_pair_history(await self.history_store.get_pair_history())
            iteration = history.latest_iteration + 1

            # Opens the iteration even if no pairs get made, so the next run
            # does not treat this run's history as still current
            await self.history_store.append_iteration_marker(iteration)
            summary.iteration = iteration

        except Exception as e:
            logger.error(
                "Matching run aborted before pairing",
                error=str(e),
                error_type=type(e).__name__,
            )
            summary.error = f"{type(e).__name__}: {e}"
            summary.finalize()
            return summary

        logger.info(
            "Generating pairs",
            team_count=len(teams),
            iteration=iteration,
            previous_pair_users=len(history.past_pairs),
        )

        for team in teams:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(
                    "Matching run cancelled",
                    iteration=iteration,
                    teams_processed=len(summary.team_results),
                )
                summary.cancelled = True
                break

            result = await self._process_team(team, opt_in_lookup, history.past_pairs, iteration)
            summary.add_team_result(result)

        summary.finalize()
        logger.info(
            "Pair-ups made",
            iteration=iteration,
            pairs_notified=summary.pairs_notified,
            users_notified=summary.users_notified,
            teams_failed=len(summary.failed_teams),
        )
        return summary

    async def _process_team(
        self,
        team: TeamInstallInfo,
        opt_in_lookup: dict[str, dict[str, bool]],
        past_pairs: dict[str, set[str]],
        iteration: int,
    ) -> TeamMatchResult:
        result = TeamMatchResult(team_id=team.team_id, succeeded=False)

        try:
            team_name = await self.roster_provider.get_team_name(team)
            roster = await self.get_opted_in_users(team, opt_in_lookup)

            pairs = make_pairs(roster, past_pairs)[: self.config.max_pairs_per_team]
            logger.info(
                "Pairing members of team",
                team_id=team.team_id,
                roster_size=len(roster),
                pair_count=len(pairs),
            )

            for user_a, user_b in pairs:
                await self.history_store.append_pairing_record(
                    user_a.id, user_b.id, iteration, team.team_id
                )
                notifications = await self.notify_pair(team, team_name, user_a, user_b)
                result.notifications.extend(notifications)
                result.users_notified += sum(1 for n in notifications if n.succeeded)
                result.pairs_made += 1

            result.succeeded = True

        except Exception as e:
            logger.warning(
                "Error pairing up team members",
                team_id=team.team_id,
                error=str(e),
                error_type=type(e).__name__,
                pairs_recorded=result.pairs_made,
            )
            result.reason = f"{type(e).__name__}: {e}"

        return result

    async def get_opted_in_users(
        self, team: TeamInstallInfo, opt_in_lookup: dict[str, dict[str, bool]]
    ) -> list[TeamMember]:
        """Team roster minus members who explicitly opted out."""
        members = await self.roster_provider.get_team_members(team)
        logger.debug("Team roster fetched", team_id=team.team_id, member_count=len(members))

        return [
            member
            for member in members
            if member is not None and is_opted_in(opt_in_lookup, team.team_id, member.id)
        ]

    async def notify_pair(
        self, team: TeamInstallInfo, team_name: str, user_a: TeamMember, user_b: TeamMember
    ) -> list[NotificationResult]:
        """Tell each member of the pair about the other, concurrently."""
        return list(
            await asyncio.gather(
                self._notify_user(team, team_name, user_a, user_b),
                self._notify_user(team, team_name, user_b, user_a),
            )
        )

    async def _notify_user(
        self,
        team: TeamInstallInfo,
        team_name: str,
        recipient: TeamMember,
        partner: TeamMember,
    ) -> NotificationResult:
        timeout = self.config.notification_timeout_seconds
        try:
            delivered = await asyncio.wait_for(
                self.notifier.notify_user(team, team_name, recipient, partner),
                timeout=timeout,
            )
        except TimeoutError:
            logger.warning(
                "Pair-up notification timed out",
                team_id=team.team_id,
                user_id=recipient.id,
                timeout_seconds=timeout,
            )
            return NotificationResult(recipient.id, False, f"timed out after {timeout}s")
        except Exception as e:
            logger.warning(
                "Pair-up notification failed",
                team_id=team.team_id,
                user_id=recipient.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return NotificationResult(recipient.id, False, f"{type(e).__name__}: {e}")

        if not delivered:
            logger.warning(
                "Pair-up notification not delivered", team_id=team.team_id, user_id=recipient.id
            )
            return NotificationResult(recipient.id, False, "not delivered")

        return NotificationResult(recipient.id, True)
