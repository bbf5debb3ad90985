"""
pulse.services.engagement_service — Cooldown / Daily-Limit Point Awards
========================================================================

One call per engagement event:

    1. Validate platform, engagement type and user (caller defects raise).
    2. Check the global daily point cap.
    3. Claim the ``(user, platform, type)`` slot with a conditional write on
       ``engagement_state``.  The UPDATE only matches when the cooldown has
       elapsed and the daily counter has room, so two processes racing on
       the same key cannot both win.  No application lock is taken.
    4. In the same transaction: append a PointTransaction, bump the user's
       totals with SQL-side increments and credit the ACTIVE contest entry.

A rejected event writes nothing.  Rejections are expected traffic and come
back as an :class:`EngagementOutcome`, not an exception.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pulse.database.models import (
    Contest,
    ContestEntry,
    ContestStatus,
    EngagementState,
    PointTransaction,
    User,
    UserStreak,
)
from pulse.engine.clock import Clock, as_utc, utcnow
from pulse.engine.events import EngagementEvent, EngagementOutcome, RejectionReason
from pulse.errors import (
    UnknownPlatformError,
    UnsupportedEngagementError,
    UserNotFoundError,
    new_correlation_id,
)

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from pulse.engine.rules import ActionRule, RuleBook

logger = logging.getLogger(__name__)


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def credit_contest_entry(
    session: Session,
    contest: Contest,
    user_id: str,
    points: int,
    now: datetime,
) -> None:
    """Upsert the user's entry for *contest* and stamp ``qualified_at`` on the
    first write that carries the entry's total over the qualification floor.
    """
    floor = contest.min_points_to_qualify
    existing = session.scalar(
        select(ContestEntry.id).where(
            ContestEntry.contest_id == contest.id,
            ContestEntry.user_id == user_id,
        )
    )
    if existing is None:
        try:
            with session.begin_nested():
                session.add(ContestEntry(
                    contest_id=contest.id,
                    user_id=user_id,
                    points=points,
                    qualified_at=now if points > 0 and points >= floor else None,
                    created_at=now,
                ))
            return
        except IntegrityError:
            logger.debug("Contest entry for %s created concurrently; updating", user_id)

    new_total = ContestEntry.points + points
    session.execute(
        update(ContestEntry)
        .where(
            ContestEntry.contest_id == contest.id,
            ContestEntry.user_id == user_id,
        )
        .values(
            points=new_total,
            qualified_at=case(
                (
                    and_(
                        ContestEntry.qualified_at.is_(None),
                        new_total > 0,
                        new_total >= floor,
                    ),
                    now,
                ),
                else_=ContestEntry.qualified_at,
            ),
        )
        .execution_options(synchronize_session=False)
    )


def advance_streak(session: Session, user_id: str, platform: str, today: date) -> int:
    """Count *today* toward the user's streak on *platform* and return it.

    Same day: unchanged.  Day after the last active day: +1.  Any gap: back
    to 1.  Done as one UPDATE so concurrent awards on different engagement
    types cannot double-count a day.
    """
    key = (UserStreak.user_id == user_id, UserStreak.platform == platform)
    if session.scalar(select(UserStreak.current_streak).where(*key)) is None:
        try:
            with session.begin_nested():
                session.add(UserStreak(
                    user_id=user_id,
                    platform=platform,
                    current_streak=1,
                    longest_streak=1,
                    last_active_day=today,
                ))
            return 1
        except IntegrityError:
            logger.debug("Streak row for %s/%s created concurrently; updating", user_id, platform)

    current = case(
        (UserStreak.last_active_day == today, UserStreak.current_streak),
        (UserStreak.last_active_day == today - timedelta(days=1), UserStreak.current_streak + 1),
        else_=1,
    )
    session.execute(
        update(UserStreak)
        .where(*key)
        .values(
            current_streak=current,
            longest_streak=case(
                (current > UserStreak.longest_streak, current),
                else_=UserStreak.longest_streak,
            ),
            last_active_day=today,
        )
        .execution_options(synchronize_session=False)
    )
    return session.scalar(select(UserStreak.current_streak).where(*key))


def live_streak(current: int, last_active_day: date, today: date) -> int:
    """A stored streak only counts while the user was active today or yesterday."""
    return current if last_active_day >= today - timedelta(days=1) else 0


def get_active_contest(session: Session, now: datetime) -> Contest | None:
    """The ACTIVE contest still inside its window, share-locked against a
    concurrent end until this transaction commits.
    """
    return session.scalar(
        select(Contest)
        .where(Contest.status == ContestStatus.ACTIVE, Contest.end_time > now)
        .with_for_update(read=True)
    )


class EngagementTracker:
    """Turns engagement events into point awards."""

    def __init__(self, engine: Engine, rules: RuleBook, *, clock: Clock = utcnow) -> None:
        self._engine = engine
        self._rules = rules
        self._clock = clock

    # -- Public -------------------------------------------------------------
    def track_engagement(self, event: EngagementEvent) -> EngagementOutcome:
        correlation_id = new_correlation_id()
        platform = event.platform.upper()
        engagement_type = event.engagement_type.upper()
        rule = self._resolve_rule(event, platform, engagement_type, correlation_id)

        now = self._clock()
        today = now.date()

        with Session(self._engine) as session:
            if session.get(User, event.user_id) is None:
                logger.error(
                    "Engagement for unknown user %r on %s [%s]",
                    event.user_id, platform, correlation_id,
                )
                raise UserNotFoundError(
                    f"User {event.user_id!r} not found",
                    context={"user_id": event.user_id},
                    correlation_id=correlation_id,
                )

            cap = self._rules.rate_limits.max_points_per_day
            if cap is not None and rule.points > 0:
                earned = self._points_earned_today(session, event.user_id, now)
                if earned + rule.points > cap:
                    logger.info(
                        "Daily point cap reached for %s (%d/%d) [%s]",
                        event.user_id, earned, cap, correlation_id,
                    )
                    return EngagementOutcome(
                        accepted=False,
                        reason=RejectionReason.DAILY_POINT_CAP,
                        correlation_id=correlation_id,
                    )

            if not self._claim_slot(session, event.user_id, platform, engagement_type, rule, now, today):
                session.rollback()
                outcome = self._rejection(
                    session, event.user_id, platform, engagement_type, rule, now, correlation_id
                )
                logger.info(
                    "Engagement rejected %s/%s/%s: %s [%s]",
                    event.user_id, platform, engagement_type, outcome.reason, correlation_id,
                )
                return outcome

            streak = advance_streak(session, event.user_id, platform, today)
            contest = get_active_contest(session, now)
            contest_id = contest.id if contest else None
            session.add(PointTransaction(
                user_id=event.user_id,
                amount=rule.points,
                reason=engagement_type,
                platform=platform,
                contest_id=contest_id,
                metadata_=dict(event.metadata) or None,
                timestamp=now,
            ))
            session.execute(
                update(User)
                .where(User.id == event.user_id)
                .values(
                    points=User.points + rule.points,
                    lifetime_points=User.lifetime_points + rule.points,
                    last_active_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if contest is not None:
                credit_contest_entry(session, contest, event.user_id, rule.points, now)
            session.commit()

        logger.debug(
            "Awarded %d to %s for %s/%s [%s]",
            rule.points, event.user_id, platform, engagement_type, correlation_id,
        )
        return EngagementOutcome(
            accepted=True,
            points=rule.points,
            contest_id=contest_id,
            streak=streak,
            correlation_id=correlation_id,
        )

    # -- Helpers ------------------------------------------------------------
    def _resolve_rule(
        self,
        event: EngagementEvent,
        platform: str,
        engagement_type: str,
        correlation_id: str,
    ) -> ActionRule:
        if not self._rules.is_platform_enabled(platform):
            logger.error(
                "Engagement from unknown or disabled platform %r (user %r) [%s]",
                event.platform, event.user_id, correlation_id,
            )
            raise UnknownPlatformError(
                f"Platform {event.platform!r} is unknown or disabled",
                context={"platform": event.platform},
                correlation_id=correlation_id,
            )
        rule = self._rules.rule_for(platform, engagement_type)
        if rule is None:
            logger.error(
                "Unsupported engagement type %s on %s [%s]",
                engagement_type, platform, correlation_id,
            )
            raise UnsupportedEngagementError(
                f"Engagement type {event.engagement_type!r} is not supported on {platform}",
                context={"platform": platform, "type": engagement_type},
                correlation_id=correlation_id,
            )
        return rule

    @staticmethod
    def _points_earned_today(session: Session, user_id: str, now: datetime) -> int:
        return session.scalar(
            select(func.coalesce(func.sum(PointTransaction.amount), 0)).where(
                PointTransaction.user_id == user_id,
                PointTransaction.platform.is_not(None),
                PointTransaction.timestamp >= _start_of_day(now),
            )
        ) or 0

    @staticmethod
    def _claim_slot(
        session: Session,
        user_id: str,
        platform: str,
        engagement_type: str,
        rule: ActionRule,
        now: datetime,
        today: date,
    ) -> bool:
        """Atomically take the cooldown/daily-limit slot.  False means rejected."""
        key = (
            EngagementState.user_id == user_id,
            EngagementState.platform == platform,
            EngagementState.engagement_type == engagement_type,
        )
        exists = session.scalar(select(EngagementState.day).where(*key))
        if exists is None:
            try:
                with session.begin_nested():
                    session.add(EngagementState(
                        user_id=user_id,
                        platform=platform,
                        engagement_type=engagement_type,
                        last_accepted_at=now,
                        day=today,
                        daily_count=1,
                    ))
                return True
            except IntegrityError:
                logger.debug("Engagement state for %s/%s/%s raced; re-checking", user_id, platform, engagement_type)

        stmt = (
            update(EngagementState)
            .where(*key)
            .values(
                last_accepted_at=now,
                day=today,
                daily_count=case(
                    (EngagementState.day == today, EngagementState.daily_count + 1),
                    else_=1,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        if rule.cooldown_seconds:
            stmt = stmt.where(
                EngagementState.last_accepted_at <= now - timedelta(seconds=rule.cooldown_seconds)
            )
        if rule.daily_limit is not None:
            stmt = stmt.where(
                or_(
                    EngagementState.day != today,
                    EngagementState.daily_count < rule.daily_limit,
                )
            )
        return session.execute(stmt).rowcount == 1

    @staticmethod
    def _rejection(
        session: Session,
        user_id: str,
        platform: str,
        engagement_type: str,
        rule: ActionRule,
        now: datetime,
        correlation_id: str,
    ) -> EngagementOutcome:
        """Read (never write) the state row to explain why the claim failed."""
        state = session.get(EngagementState, (user_id, platform, engagement_type))
        if state is not None and rule.cooldown_seconds:
            elapsed = (now - as_utc(state.last_accepted_at)).total_seconds()
            if elapsed < rule.cooldown_seconds:
                return EngagementOutcome(
                    accepted=False,
                    reason=RejectionReason.COOLDOWN_ACTIVE,
                    retry_after=max(1, math.ceil(rule.cooldown_seconds - elapsed)),
                    correlation_id=correlation_id,
                )
        return EngagementOutcome(
            accepted=False,
            reason=RejectionReason.DAILY_LIMIT_EXCEEDED,
            correlation_id=correlation_id,
        )
