"""
pulse.services.stats_service — Read-only Ledger Projections
============================================================

Per-platform numbers are derived from ``point_transactions`` (engagement
rows carry a platform, admin and reward rows do not), so they always agree
with the ledger.  Ranks are competition ranks: ties share a rank and the
next rank skips.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import distinct, func, select
from sqlalchemy.orm import Session

from pulse.constants import DEFAULT_LEADERBOARD_LIMIT
from pulse.database.models import (
    Contest,
    ContestEntry,
    ContestReward,
    ContestStatus,
    Platform,
    PlatformLink,
    PointTransaction,
    RewardStatus,
    User,
    UserStreak,
)
from pulse.engine.clock import as_utc, utcnow
from pulse.errors import UserNotFoundError
from pulse.services.contest_service import contest_progress
from pulse.services.engagement_service import live_streak

if TYPE_CHECKING:
    from sqlalchemy import Engine


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def _global_rank(session: Session, points: int) -> int:
    """1 + number of users strictly ahead on points.  Ties share a rank."""
    ahead = session.scalar(select(func.count()).select_from(User).where(User.points > points))
    return (ahead or 0) + 1


def _platform_totals(platform: str):
    """Subquery of (user_id, total) for engagement points earned on *platform*."""
    return (
        select(
            PointTransaction.user_id.label("user_id"),
            func.sum(PointTransaction.amount).label("total"),
        )
        .where(PointTransaction.platform == platform)
        .group_by(PointTransaction.user_id)
        .subquery()
    )


def _platform_rank(session: Session, platform: str, points: int) -> int | None:
    """Rank among users who earned on *platform*; None for users who never did."""
    if points <= 0:
        return None
    totals = _platform_totals(platform)
    ahead = session.scalar(select(func.count()).select_from(totals).where(totals.c.total > points))
    return (ahead or 0) + 1


def _require_user(session: Session, user_id: str) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise UserNotFoundError(f"User {user_id!r} not found", context={"user_id": user_id})
    return user


def get_global_rank(engine: Engine, user_id: str) -> int:
    with Session(engine) as session:
        user = _require_user(session, user_id)
        return _global_rank(session, user.points)


def get_user_stats(engine: Engine, user_id: str, now: datetime | None = None) -> dict:
    """Points, ranks, per-platform breakdown, contest history and reward counts."""
    now = now or utcnow()
    today = now.date()
    with Session(engine) as session:
        user = _require_user(session, user_id)

        linked = session.scalars(
            select(PlatformLink.platform).where(PlatformLink.user_id == user_id)
        ).all()
        earned = dict(
            session.execute(
                select(PointTransaction.platform, func.sum(PointTransaction.amount))
                .where(
                    PointTransaction.user_id == user_id,
                    PointTransaction.platform.is_not(None),
                )
                .group_by(PointTransaction.platform)
            ).all()
        )
        streaks = {
            row.platform: row
            for row in session.scalars(select(UserStreak).where(UserStreak.user_id == user_id))
        }

        platforms = {}
        for platform in Platform:
            points = int(earned.get(str(platform)) or 0)
            streak = streaks.get(str(platform))
            platforms[str(platform)] = {
                "points": points,
                "rank": _platform_rank(session, str(platform), points),
                "streak": live_streak(streak.current_streak, streak.last_active_day, today) if streak else 0,
                "longest_streak": streak.longest_streak if streak else 0,
            }

        contests_entered = session.scalar(
            select(func.count()).select_from(ContestEntry).where(ContestEntry.user_id == user_id)
        )
        reward_counts = dict(
            session.execute(
                select(ContestReward.status, func.count())
                .where(ContestReward.user_id == user_id)
                .group_by(ContestReward.status)
            ).all()
        )

        return {
            "user_id": user.id,
            "points": user.points,
            "lifetime_points": user.lifetime_points,
            "global_rank": _global_rank(session, user.points),
            "usernames": {
                "telegram": user.telegram_username,
                "discord": user.discord_username,
                "twitter": user.twitter_username,
            },
            "linked_platforms": sorted(str(p) for p in linked),
            "platforms": platforms,
            "contests_entered": contests_entered or 0,
            "rewards": {str(s): reward_counts.get(s, 0) for s in RewardStatus},
            "last_active_at": as_utc(user.last_active_at).isoformat() if user.last_active_at else None,
        }


def get_global_stats(engine: Engine, now: datetime | None = None) -> dict:
    """Community-wide totals plus the live contest's progress."""
    now = now or utcnow()
    midnight = _start_of_day(now)
    engagement = PointTransaction.platform.is_not(None)
    with Session(engine) as session:
        total_users = session.scalar(select(func.count()).select_from(User)) or 0
        active_today = session.scalar(
            select(func.count()).select_from(User).where(User.last_active_at >= midnight)
        ) or 0

        totals = dict(
            session.execute(
                select(PointTransaction.platform, func.sum(PointTransaction.amount))
                .where(engagement)
                .group_by(PointTransaction.platform)
            ).all()
        )
        active = dict(
            session.execute(
                select(PointTransaction.platform, func.count(distinct(PointTransaction.user_id)))
                .where(engagement, PointTransaction.timestamp >= midnight)
                .group_by(PointTransaction.platform)
            ).all()
        )
        top_actions = session.execute(
            select(PointTransaction.reason, func.count().label("n"))
            .where(engagement)
            .group_by(PointTransaction.reason)
            .order_by(func.count().desc(), PointTransaction.reason)
        ).all()

        contest = session.scalar(
            select(Contest)
            .where(Contest.status == ContestStatus.ACTIVE)
            .order_by(Contest.start_time.desc())
        )

        return {
            "total_users": total_users,
            "active_today": active_today,
            "total_points": int(sum(totals.values(), 0)),
            "platform_stats": {
                str(p): {
                    "active_users": active.get(str(p), 0),
                    "total_points": int(totals.get(str(p)) or 0),
                }
                for p in Platform
            },
            "top_actions": {reason: n for reason, n in top_actions},
            "contest": contest_progress(session, contest, now) if contest else None,
        }


def get_leaderboard(engine: Engine, limit: int = DEFAULT_LEADERBOARD_LIMIT) -> list[dict]:
    """Global all-time points leaderboard, ranked in one query."""
    rank = func.rank().over(order_by=User.points.desc()).label("rank")
    with Session(engine) as session:
        rows = session.execute(
            select(rank, User.id, User.points)
            .order_by(User.points.desc(), User.created_at.asc(), User.id.asc())
            .limit(limit)
        ).all()
        return [{"rank": r.rank, "user_id": r.id, "points": r.points} for r in rows]
