"""
tests/test_tiers.py — Pure Tier & Rank Resolution Tests
========================================================
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from pulse.engine.rules import ContestRules
from pulse.engine.tiers import (
    highest_tier,
    is_qualifying,
    prize_for_rank,
    rank_entries,
    tier_status,
)

T0 = datetime(2026, 3, 10, 8, 0, 0, tzinfo=UTC)


@dataclass
class Entry:
    id: int
    points: int
    qualified_at: datetime | None = None


@pytest.fixture
def rules() -> ContestRules:
    return ContestRules.model_validate({
        "min_points_to_qualify": 10,
        "tiers": [
            {"name": "BRONZE", "threshold": 50, "reward_type": "WHITELIST"},
            {"name": "SILVER", "threshold": 100, "reward_type": "FREE_MINT"},
            {"name": "GOLD", "threshold": 200, "reward_type": "FREE_GAS"},
        ],
        "prizes": [
            {"rank": 1, "amount": 100},
            {"rank": 2, "amount": 50},
        ],
    })


class TestRankEntries:
    def test_points_descending(self):
        ranked = rank_entries([Entry(1, 10, T0), Entry(2, 30, T0), Entry(3, 20, T0)])
        assert [e.id for e in ranked] == [2, 3, 1]

    def test_tie_goes_to_earlier_qualification(self):
        ranked = rank_entries([
            Entry(1, 50, T0 + timedelta(minutes=5)),
            Entry(2, 50, T0),
        ])
        assert [e.id for e in ranked] == [2, 1]

    def test_unqualified_sort_after_qualified_at_same_points(self):
        ranked = rank_entries([Entry(1, 50, None), Entry(2, 50, T0)])
        assert [e.id for e in ranked] == [2, 1]

    def test_full_tie_falls_back_to_id(self):
        ranked = rank_entries([Entry(9, 50, T0), Entry(4, 50, T0)])
        assert [e.id for e in ranked] == [4, 9]

    def test_naive_and_aware_timestamps_compare(self):
        naive = (T0 + timedelta(seconds=1)).replace(tzinfo=None)
        ranked = rank_entries([Entry(1, 50, naive), Entry(2, 50, T0)])
        assert [e.id for e in ranked] == [2, 1]


class TestTiers:
    @pytest.mark.parametrize(
        ("points", "expected"),
        [(0, None), (49, None), (50, "BRONZE"), (120, "SILVER"), (200, "GOLD"), (9_999, "GOLD")],
    )
    def test_highest_tier(self, rules, points, expected):
        tier = highest_tier(points, rules.tiers)
        assert (tier.name if tier else None) == expected

    def test_qualification_floor(self, rules):
        assert not is_qualifying(0, rules)
        assert not is_qualifying(9, rules)
        assert is_qualifying(10, rules)

    def test_zero_points_never_qualify(self):
        assert not is_qualifying(0, ContestRules())


class TestPrizes:
    def test_prize_lookup(self, rules):
        assert prize_for_rank(1, rules.prizes).amount == 100
        assert prize_for_rank(2, rules.prizes).amount == 50
        assert prize_for_rank(3, rules.prizes) is None
        assert prize_for_rank(None, rules.prizes) is None


class TestTierStatus:
    def test_between_tiers(self, rules):
        status = tier_status(120, rules, rank=2)
        assert status.current_tier == "SILVER"
        assert status.next_tier == "GOLD"
        assert status.points_to_next_tier == 80
        assert status.rank_prize == 50
        assert status.qualified

    def test_top_tier(self, rules):
        status = tier_status(250, rules)
        assert status.current_tier == "GOLD"
        assert status.next_tier is None
        assert status.points_to_next_tier is None
        assert status.to_dict()["rank"] is None
