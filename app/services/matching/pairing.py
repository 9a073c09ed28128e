"""
Greedy pairing of a team roster that avoids last iteration's partners.
"""

import random

from app.infrastructure.observability.logging import get_logger
from app.models.domain.matching_domain import TeamMember
from app.services.matching.history import has_paired, record_pair

logger = get_logger(__name__)

_system_random = random.SystemRandom()


def make_pairs(
    users: list[TeamMember],
    past_pairs: dict[str, set[str]],
    *,
    rng: random.Random | None = None,
) -> list[tuple[TeamMember, TeamMember]]:
    """
    Pair up users, preferring partners they were not paired with last time.

    The roster is shuffled, then each unpaired user takes the first later
    unpaired user it has no history with. Users with no such partner sit
    this round out; repeats are never suggested. Committed pairs are added
    to ``past_pairs`` straight away, so the same map can be shared across
    calls.

    This is greedy, not a maximum matching: it can leave two users unpaired
    even when a perfect matching exists.

    Args:
        users: Opted-in team members; the list itself is not reordered
        past_pairs: Symmetric index of previous partners, updated in place
        rng: Random source for the shuffle (tests pass a seeded one)

    Returns:
        Disjoint (user, user) pairs in the order they were made
    """
    if len(users) < 2:
        logger.debug("Not enough users to make pairs", user_count=len(users))
        return []

    shuffled = list(users)
    (rng or _system_random).shuffle(shuffled)

    paired = [False] * len(shuffled)
    pairs: list[tuple[TeamMember, TeamMember]] = []

    for a in range(len(shuffled) - 1):
        if paired[a]:
            continue
        user_a = shuffled[a]

        for b in range(a + 1, len(shuffled)):
            if paired[b]:
                continue
            user_b = shuffled[b]

            # A duplicated roster entry is still the same person
            if user_b.id == user_a.id or has_paired(past_pairs, user_a.id, user_b.id):
                continue

            pairs.append((user_a, user_b))
            paired[a] = paired[b] = True
            record_pair(past_pairs, user_a.id, user_b.id)
            break

    logger.debug(
        "Pairs made",
        user_count=len(users),
        pair_count=len(pairs),
        unpaired_count=paired.count(False),
    )
    return pairs
