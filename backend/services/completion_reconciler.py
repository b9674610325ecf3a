"""Compute the minimal set of new completions for a quest.

The reconciler is pure: it never reads or writes the store. Given per-day
aggregates and the dates already recorded it returns one ``NewCompletion``
per qualifying unrecorded day, sorted by date. Running it twice on the same
inputs after persisting the first result yields nothing.
"""

from __future__ import annotations

from datetime import date
from typing import Callable, Iterable, Mapping

from models.ledger import DayAggregate, NewCompletion, to_raw_units
from models.quest import QuestRule, TokenSelector, VerificationKind

Threshold = Callable[[DayAggregate], bool]


def savings_threshold(selector: TokenSelector, min_amount: float) -> Threshold:
    """Day total for a selected token must be positive and reach ``min_amount``.

    With ``EITHER`` the tokens are judged separately; SOL and USDC are never
    added together. Totals and minimum are compared in base units.
    """
    minimum = max(0.0, float(min_amount or 0.0))
    minimums = {token: to_raw_units(minimum, token) for token in selector.tokens}

    def threshold(aggregate: DayAggregate) -> bool:
        for token, minimum_raw in minimums.items():
            total = aggregate.total_for(token)
            if total > 0 and total >= minimum_raw:
                return True
        return False

    return threshold


def protocol_threshold(aggregate: DayAggregate) -> bool:
    return aggregate.match_count > 0


def threshold_for_quest(quest: QuestRule) -> Threshold:
    if quest.kind is VerificationKind.SAVINGS_TRANSFER:
        return savings_threshold(quest.token_selector, quest.min_amount)
    if quest.kind is VerificationKind.PROTOCOL_INTERACTION:
        return protocol_threshold
    raise ValueError(f"Quest {quest.id} is {quest.kind.value} and has no ledger threshold")


def reconcile(
    quest_id: str,
    day_aggregates: Mapping[date, DayAggregate],
    existing_dates: Iterable[date],
    threshold: Threshold,
) -> list[NewCompletion]:
    recorded = set(existing_dates)
    completions = []
    for day in sorted(day_aggregates):
        if day in recorded:
            continue
        aggregate = day_aggregates[day]
        if not threshold(aggregate):
            continue
        completions.append(
            NewCompletion(
                quest_id=quest_id,
                completed_date=day,
                tx_signature=aggregate.first_matching_signature,
                auto_verified=True,
            )
        )
        recorded.add(day)
    return completions
