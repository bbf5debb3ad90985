"""
pulse.engine.tiers — Pure tier and rank resolution
===================================================

No I/O.  Given contest rules and entry point totals, decide finishing order,
tier qualification and rank prizes.  The contest and reward services feed
ORM rows in and persist what comes out.

Finishing order: points descending, then earlier ``qualified_at`` (entries
that never qualified sort last), then entry id.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from pulse.engine.clock import as_utc
from pulse.engine.rules import ContestRules, PrizeRule, TierRule

__all__ = [
    "RankedEntry",
    "TierStatus",
    "highest_tier",
    "is_qualifying",
    "rank_entries",
    "prize_for_rank",
    "tier_status",
]

_FAR_FUTURE = datetime.max


class RankedEntry(Protocol):
    id: int
    points: int
    qualified_at: datetime | None


def _sort_key(entry: RankedEntry) -> tuple:
    qualified = as_utc(entry.qualified_at)
    return (
        -entry.points,
        qualified is None,
        qualified.replace(tzinfo=None) if qualified else _FAR_FUTURE,
        entry.id,
    )


def rank_entries(entries: Iterable[RankedEntry]) -> list[RankedEntry]:
    """Return *entries* in finishing order (rank 1 first)."""
    return sorted(entries, key=_sort_key)


def is_qualifying(points: int, rules: ContestRules) -> bool:
    return points > 0 and points >= rules.min_points_to_qualify


def highest_tier(points: int, tiers: Sequence[TierRule]) -> TierRule | None:
    """Highest tier whose threshold *points* meets.  Tiers ascend by threshold."""
    for tier in reversed(tiers):
        if points >= tier.threshold:
            return tier
    return None


def prize_for_rank(rank: int | None, prizes: Sequence[PrizeRule]) -> PrizeRule | None:
    if rank is None:
        return None
    for prize in prizes:
        if prize.rank == rank:
            return prize
    return None


@dataclass(frozen=True, slots=True)
class TierStatus:
    points: int
    qualified: bool
    current_tier: str | None
    next_tier: str | None
    points_to_next_tier: int | None
    rank: int | None = None
    rank_prize: float | None = None

    def to_dict(self) -> dict:
        return {
            "points": self.points,
            "qualified": self.qualified,
            "current_tier": self.current_tier,
            "next_tier": self.next_tier,
            "points_to_next_tier": self.points_to_next_tier,
            "rank": self.rank,
            "rank_prize": self.rank_prize,
        }


def tier_status(points: int, rules: ContestRules, rank: int | None = None) -> TierStatus:
    """Where *points* sits on the tier ladder and what the next rung needs."""
    current = highest_tier(points, rules.tiers)
    upcoming = next((t for t in rules.tiers if t.threshold > points), None)
    prize = prize_for_rank(rank, rules.prizes)
    return TierStatus(
        points=points,
        qualified=is_qualifying(points, rules),
        current_tier=current.name if current else None,
        next_tier=upcoming.name if upcoming else None,
        points_to_next_tier=(upcoming.threshold - points) if upcoming else None,
        rank=rank,
        rank_prize=prize.amount if prize else None,
    )
