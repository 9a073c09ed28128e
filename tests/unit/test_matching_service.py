"""
Tests for the matching run across installed teams.
"""

import asyncio

import pytest

from app.models.domain.matching_domain import ALL_TEAMS, MatchingConfig, PairingRecord
from app.repositories.pair_history_repository import IterationConflictError
from app.services.matching.matching_service import MatchingService, is_opted_in
from tests.conftest import (
    FakeHistoryStore,
    FakeNotifier,
    FakeOptInStore,
    FakeRosterProvider,
    FakeTeamStore,
    make_member,
    make_team,
)


def _service(
    config,
    teams=(),
    rosters=None,
    lookup=None,
    history=None,
    notifier=None,
    failing_teams=(),
):
    history = history or FakeHistoryStore()
    notifier = notifier or FakeNotifier()
    service = MatchingService(
        config,
        team_store=FakeTeamStore(teams),
        opt_in_store=FakeOptInStore(lookup),
        roster_provider=FakeRosterProvider(rosters, failing_teams),
        history_store=history,
        notifier=notifier,
    )
    return service, history, notifier


def _roster(*ids):
    return [make_member(uid) for uid in ids]


@pytest.mark.asyncio
async def test_two_teams_end_to_end(matching_config):
    team_a, team_b = make_team("team-a"), make_team("team-b")
    service, history, notifier = _service(
        matching_config,
        teams=[team_a, team_b],
        rosters={"team-a": _roster("alice", "bob"), "team-b": _roster("carol")},
    )

    summary = await service.make_pairs_and_notify()

    assert summary.pairs_notified == 1
    assert summary.users_notified == 2
    assert summary.iteration == 1
    assert history.markers == [1]
    assert len(history.appended) == 1
    record = history.appended[0]
    assert {record.user_a_id, record.user_b_id} == {"alice", "bob"}
    assert record.iteration == 1
    assert record.team_id == "team-a"
    assert sorted(recipient for _, recipient, _ in notifier.sent) == ["alice", "bob"]

    by_team = {r.team_id: r for r in summary.team_results}
    assert by_team["team-b"].succeeded is True
    assert by_team["team-b"].pairs_made == 0


@pytest.mark.asyncio
async def test_no_installed_teams_writes_nothing(matching_config):
    service, history, notifier = _service(matching_config, teams=[])

    summary = await service.make_pairs_and_notify()

    assert summary.pairs_notified == 0
    assert summary.iteration is None
    assert history.markers == []
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_cap_limits_pairs_per_team():
    config = MatchingConfig(max_pairs_per_team=2, bot_display_name="Icebreaker")
    team = make_team()
    service, history, notifier = _service(
        config, teams=[team], rosters={team.team_id: _roster(*[f"u{i}" for i in range(10)])}
    )

    summary = await service.make_pairs_and_notify()

    assert summary.pairs_notified == 2
    assert len(history.appended) == 2
    assert len(notifier.sent) == 4


@pytest.mark.asyncio
async def test_zero_cap_makes_no_pairs_but_opens_iteration(monkeypatch):
    config = MatchingConfig(max_pairs_per_team=0, bot_display_name="Icebreaker")
    team = make_team()
    calls = []

    from app.services.matching import matching_service

    real_make_pairs = matching_service.make_pairs

    def spy_make_pairs(users, past_pairs, **kwargs):
        calls.append(len(users))
        return real_make_pairs(users, past_pairs, **kwargs)

    monkeypatch.setattr(matching_service, "make_pairs", spy_make_pairs)
    service, history, notifier = _service(
        config, teams=[team], rosters={team.team_id: _roster("a", "b", "c", "d")}
    )

    summary = await service.make_pairs_and_notify()

    assert calls == [4]
    assert summary.pairs_notified == 0
    assert history.appended == []
    assert history.markers == [1]
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_opted_out_member_is_excluded_and_absent_member_included(matching_config):
    team = make_team()
    lookup = {team.team_id: {"bob": False, "carol": True}}
    service, history, _ = _service(
        matching_config,
        teams=[team],
        rosters={team.team_id: _roster("alice", "bob", "carol")},
        lookup=lookup,
    )

    roster = await service.get_opted_in_users(team, lookup)

    assert [m.id for m in roster] == ["alice", "carol"]

    summary = await service.make_pairs_and_notify()
    assert summary.pairs_notified == 1
    assert {history.appended[0].user_a_id, history.appended[0].user_b_id} == {"alice", "carol"}


def test_team_choice_wins_over_all_teams_choice():
    lookup = {ALL_TEAMS: {"alice": False, "bob": False}, "team-1": {"alice": True}}

    assert is_opted_in(lookup, "team-1", "alice") is True
    assert is_opted_in(lookup, "team-1", "bob") is False
    assert is_opted_in(lookup, "team-2", "alice") is False
    assert is_opted_in(lookup, "team-1", "carol") is True


@pytest.mark.asyncio
async def test_avoids_last_iterations_partners(matching_config):
    team = make_team()
    history = FakeHistoryStore(
        [
            PairingRecord(None, None, 3),
            PairingRecord("alice", "bob", 3),
            PairingRecord("carol", "dave", 3),
        ]
    )
    service, history, _ = _service(
        matching_config,
        teams=[team],
        rosters={team.team_id: _roster("alice", "bob", "carol", "dave")},
        history=history,
    )

    summary = await service.make_pairs_and_notify()

    assert summary.iteration == 4
    assert history.markers == [4]
    new_pairs = [{r.user_a_id, r.user_b_id} for r in history.appended]
    assert {"alice", "bob"} not in new_pairs
    assert {"carol", "dave"} not in new_pairs
    assert all(r.iteration == 4 for r in history.appended)


@pytest.mark.asyncio
async def test_failing_team_does_not_stop_the_run(matching_config):
    broken, healthy = make_team("broken"), make_team("healthy")
    service, history, _ = _service(
        matching_config,
        teams=[broken, healthy],
        rosters={"healthy": _roster("alice", "bob")},
        failing_teams={"broken"},
    )

    summary = await service.make_pairs_and_notify()

    assert summary.pairs_notified == 1
    assert [r.team_id for r in summary.failed_teams] == ["broken"]
    assert "roster unavailable" in summary.failed_teams[0].reason
    assert summary.error is None


@pytest.mark.asyncio
async def test_notification_failures_keep_the_pair(matching_config):
    team = make_team()
    notifier = FakeNotifier({"alice": RuntimeError("connector down"), "bob": False})
    service, history, _ = _service(
        matching_config,
        teams=[team],
        rosters={team.team_id: _roster("alice", "bob")},
        notifier=notifier,
    )

    summary = await service.make_pairs_and_notify()

    assert summary.pairs_notified == 1
    assert summary.users_notified == 0
    assert len(history.appended) == 1
    results = {n.user_id: n for n in summary.team_results[0].notifications}
    assert results["alice"].succeeded is False
    assert "connector down" in results["alice"].reason
    assert results["bob"].reason == "not delivered"


@pytest.mark.asyncio
async def test_slow_notification_times_out():
    config = MatchingConfig(
        max_pairs_per_team=10, bot_display_name="Icebreaker", notification_timeout_seconds=0.05
    )
    team = make_team()

    class SlowNotifier(FakeNotifier):
        async def notify_user(self, team, team_name, recipient, partner):
            if recipient.id == "alice":
                await asyncio.sleep(5)
            return True

    service, history, _ = _service(
        config,
        teams=[team],
        rosters={team.team_id: _roster("alice", "bob")},
        notifier=SlowNotifier(),
    )

    summary = await service.make_pairs_and_notify()

    assert summary.pairs_notified == 1
    assert summary.users_notified == 1
    results = {n.user_id: n for n in summary.team_results[0].notifications}
    assert results["alice"].reason.startswith("timed out")


@pytest.mark.asyncio
async def test_history_read_failure_aborts_without_marker(matching_config):
    team = make_team()
    history = FakeHistoryStore(read_error=RuntimeError("db down"))
    service, history, notifier = _service(
        matching_config,
        teams=[team],
        rosters={team.team_id: _roster("alice", "bob")},
        history=history,
    )

    summary = await service.make_pairs_and_notify()

    assert summary.pairs_notified == 0
    assert "db down" in summary.error
    assert history.markers == []
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_iteration_conflict_aborts_run(matching_config):
    team = make_team()

    class ConflictingHistory(FakeHistoryStore):
        async def append_iteration_marker(self, iteration):
            raise IterationConflictError(iteration)

    service, history, notifier = _service(
        matching_config,
        teams=[team],
        rosters={team.team_id: _roster("alice", "bob")},
        history=ConflictingHistory(),
    )

    summary = await service.make_pairs_and_notify()

    assert summary.pairs_notified == 0
    assert summary.error.startswith("IterationConflictError")
    assert history.appended == []
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_cancellation_stops_between_teams(matching_config):
    teams = [make_team("first"), make_team("second")]
    cancel_event = asyncio.Event()

    class CancellingNotifier(FakeNotifier):
        async def notify_user(self, team, team_name, recipient, partner):
            cancel_event.set()
            return await super().notify_user(team, team_name, recipient, partner)

    service, history, _ = _service(
        matching_config,
        teams=teams,
        rosters={"first": _roster("alice", "bob"), "second": _roster("carol", "dave")},
        notifier=CancellingNotifier(),
    )

    summary = await service.make_pairs_and_notify(cancel_event)

    # The team in progress finishes; the next one is never started
    assert summary.cancelled is True
    assert summary.pairs_notified == 1
    assert [r.team_id for r in summary.team_results] == ["first"]
    assert all(r.team_id == "first" for r in history.appended)


@pytest.mark.asyncio
async def test_opt_in_status_is_fetched_once_per_run(matching_config):
    opt_in_store = FakeOptInStore()
    teams = [make_team("a"), make_team("b"), make_team("c")]
    service = MatchingService(
        matching_config,
        team_store=FakeTeamStore(teams),
        opt_in_store=opt_in_store,
        roster_provider=FakeRosterProvider(),
        history_store=FakeHistoryStore(),
        notifier=FakeNotifier(),
    )

    await service.make_pairs_and_notify()

    assert opt_in_store.calls == 1
