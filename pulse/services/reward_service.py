"""
pulse.services.reward_service — Reward Distribution & Claims
=============================================================

Distribution turns a COMPLETED contest's ranked entries into reward rows,
exactly once per contest:

  * a non-empty reward set for the contest means it was already paid out
    (:class:`RewardsAlreadyDistributedError`);
  * the ``(contest_id, user_id, reward_system)`` unique constraint backs
    that check at the store layer.

Every qualifying entry gets at most one ``tier`` reward (its highest tier)
and, independently, at most one ``rank`` reward (the prize table).  A user
can receive both.

Claims are a single conditional UPDATE PENDING → CLAIMED; when it matches
nothing, the row is re-read to report the specific reason.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from pulse.constants import REWARD_SYSTEM_RANK, REWARD_SYSTEM_TIER
from pulse.database.models import (
    Contest,
    ContestEntry,
    ContestQualification,
    ContestReward,
    ContestStatus,
    RewardStatus,
)
from pulse.engine.clock import as_utc, utcnow
from pulse.engine.rules import ContestRules
from pulse.engine.tiers import highest_tier, is_qualifying, prize_for_rank
from pulse.errors import (
    ContestNotCompletedError,
    RewardAlreadyClaimedError,
    RewardExpiredError,
    RewardNotFoundError,
    RewardNotOwnedError,
    RewardsAlreadyDistributedError,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DistributionSummary:
    contest_id: int
    total_rewards: int
    by_tier: dict[str, int] = field(default_factory=dict)
    rank_rewards: int = 0

    def to_dict(self) -> dict:
        return {
            "contest_id": self.contest_id,
            "total_rewards": self.total_rewards,
            "by_tier": dict(self.by_tier),
            "rank_rewards": self.rank_rewards,
        }


def contest_rules(contest: Contest) -> ContestRules:
    """Parse the rules snapshot stored on the contest row."""
    return ContestRules.model_validate(contest.rules)


# ---------------------------------------------------------------------------
# Distribution
# ---------------------------------------------------------------------------
def distribute_in_session(
    session: Session,
    contest: Contest,
    now: datetime,
) -> DistributionSummary:
    """Write qualifications and rewards for *contest* inside *session*.

    Callers hold the contest lifecycle lock and own the transaction.
    Entries must already carry their final ``rank``.
    """
    if contest.status != ContestStatus.COMPLETED:
        logger.warning("Distribution refused: contest %d is %s", contest.id, contest.status)
        raise ContestNotCompletedError(
            f"Contest {contest.id} is {contest.status}, not COMPLETED",
            context={"contest_id": contest.id, "status": str(contest.status)},
        )

    existing = session.scalar(
        select(func.count()).select_from(ContestReward).where(
            ContestReward.contest_id == contest.id
        )
    )
    if existing:
        logger.warning(
            "Distribution refused: contest %d already has %d rewards", contest.id, existing
        )
        raise RewardsAlreadyDistributedError(
            f"Rewards for contest {contest.id} were already distributed",
            context={"contest_id": contest.id, "existing_rewards": existing},
        )

    rules = contest_rules(contest)
    expires_at = now + timedelta(days=rules.claim_window_days)
    entries = session.scalars(
        select(ContestEntry)
        .where(ContestEntry.contest_id == contest.id)
        .order_by(ContestEntry.rank.asc(), ContestEntry.id.asc())
    ).all()

    by_tier: Counter[str] = Counter()
    rank_rewards = 0
    for entry in entries:
        if not is_qualifying(entry.points, rules):
            continue

        tier = highest_tier(entry.points, rules.tiers)
        if tier is not None:
            session.add(ContestQualification(
                contest_id=contest.id,
                user_id=entry.user_id,
                tier=tier.name,
                metadata_={"points": entry.points, "threshold": tier.threshold},
                created_at=now,
            ))
            session.add(ContestReward(
                contest_id=contest.id,
                user_id=entry.user_id,
                type=tier.reward_type,
                status=RewardStatus.PENDING,
                reward_system=REWARD_SYSTEM_TIER,
                metadata_={"tier": tier.name, "points": entry.points},
                expires_at=expires_at,
                created_at=now,
            ))
            by_tier[tier.name] += 1

        prize = prize_for_rank(entry.rank, rules.prizes)
        if prize is not None:
            session.add(ContestReward(
                contest_id=contest.id,
                user_id=entry.user_id,
                type=prize.reward_type,
                status=RewardStatus.PENDING,
                reward_system=REWARD_SYSTEM_RANK,
                metadata_={"rank": entry.rank, "amount": prize.amount, "points": entry.points},
                expires_at=expires_at,
                created_at=now,
            ))
            rank_rewards += 1

    session.flush()
    summary = DistributionSummary(
        contest_id=contest.id,
        total_rewards=sum(by_tier.values()) + rank_rewards,
        by_tier=dict(by_tier),
        rank_rewards=rank_rewards,
    )
    logger.info(
        "Distributed %d rewards for contest %d (tiers=%s, rank=%d)",
        summary.total_rewards, contest.id, summary.by_tier, rank_rewards,
    )
    return summary


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------
def claim_reward(
    engine: Engine,
    reward_id: int,
    user_id: str,
    now: datetime | None = None,
) -> ContestReward:
    """PENDING → CLAIMED for the owner before expiry, or raise the specific reason."""
    now = now or utcnow()
    with Session(engine, expire_on_commit=False) as session:
        result = session.execute(
            update(ContestReward)
            .where(
                ContestReward.id == reward_id,
                ContestReward.user_id == user_id,
                ContestReward.status == RewardStatus.PENDING,
                ContestReward.expires_at > now,
            )
            .values(status=RewardStatus.CLAIMED, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            session.commit()
            reward = session.get(ContestReward, reward_id)
            session.refresh(reward)
            session.expunge(reward)
            logger.info("Reward %d claimed by %s", reward_id, user_id)
            return reward

        session.rollback()
        reward = session.get(ContestReward, reward_id)
        context = {"reward_id": reward_id, "user_id": user_id}
        if reward is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found", context=context)
        if reward.user_id != user_id:
            logger.warning("User %s tried to claim reward %d owned by another user", user_id, reward_id)
            raise RewardNotOwnedError(f"Reward {reward_id} does not belong to this user", context=context)
        if reward.status == RewardStatus.CLAIMED:
            logger.warning("Reward %d already claimed", reward_id)
            raise RewardAlreadyClaimedError(f"Reward {reward_id} was already claimed", context=context)
        logger.warning("Reward %d expired (status=%s)", reward_id, reward.status)
        raise RewardExpiredError(
            f"Reward {reward_id} expired at {as_utc(reward.expires_at).isoformat()}",
            context=context,
        )


def expire_stale_rewards(engine: Engine, now: datetime | None = None) -> int:
    """Mark PENDING rewards past their claim window as EXPIRED."""
    now = now or utcnow()
    with Session(engine) as session:
        result = session.execute(
            update(ContestReward)
            .where(
                ContestReward.status == RewardStatus.PENDING,
                ContestReward.expires_at <= now,
            )
            .values(status=RewardStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        session.commit()
    if result.rowcount:
        logger.info("Expired %d unclaimed rewards", result.rowcount)
    return result.rowcount


def get_contest_rewards(engine: Engine, user_id: str) -> list[ContestReward]:
    """All of a user's rewards, newest first."""
    with Session(engine) as session:
        rewards = session.scalars(
            select(ContestReward)
            .where(ContestReward.user_id == user_id)
            .order_by(ContestReward.created_at.desc(), ContestReward.id.desc())
        ).all()
        for reward in rewards:
            session.expunge(reward)
        return list(rewards)


def reward_to_dict(reward: ContestReward) -> dict:
    return {
        "id": reward.id,
        "contest_id": reward.contest_id,
        "user_id": reward.user_id,
        "type": str(reward.type),
        "status": str(reward.status),
        "reward_system": reward.reward_system,
        "metadata": reward.metadata_ or {},
        "expires_at": as_utc(reward.expires_at).isoformat(),
        "claimed_at": as_utc(reward.claimed_at).isoformat() if reward.claimed_at else None,
    }
