"""
Builds the "who was paired with whom last time" index from stored history.
"""

from collections.abc import Iterable

from app.models.domain.matching_domain import PairHistory, PairingRecord


def record_pair(past_pairs: dict[str, set[str]], user_a_id: str, user_b_id: str) -> None:
    """Add a pairing to the index in both directions."""
    past_pairs.setdefault(user_a_id, set()).add(user_b_id)
    past_pairs.setdefault(user_b_id, set()).add(user_a_id)


def has_paired(past_pairs: dict[str, set[str]], user_a_id: str, user_b_id: str) -> bool:
    return user_b_id in past_pairs.get(user_a_id, ())


def parse_pair_history(records: Iterable[PairingRecord]) -> PairHistory:
    """
    Reduce stored pairing records to the latest iteration's partners.

    Only records from the highest iteration present are indexed; marker
    rows set the iteration but contribute no partners. The result does not
    depend on record order.

    Args:
        records: Pairing records in any order, markers included

    Returns:
        PairHistory with a symmetric ``past_pairs`` index and
        ``latest_iteration`` (0 when there is no history)
    """
    records = list(records)
    if not records:
        return PairHistory(past_pairs={}, latest_iteration=0)

    latest_iteration = max(record.iteration for record in records)

    past_pairs: dict[str, set[str]] = {}
    for record in records:
        if record.iteration < latest_iteration or record.is_sentinel:
            continue
        record_pair(past_pairs, record.user_a_id, record.user_b_id)

    return PairHistory(past_pairs=past_pairs, latest_iteration=latest_iteration)
