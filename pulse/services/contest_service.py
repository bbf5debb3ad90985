"""
pulse.services.contest_service — Contest State Machine
=======================================================

::

    UPCOMING → ACTIVE → {PAUSED ⇄ ACTIVE} → COMPLETED      (terminal)

Every transition runs while holding the ``contest:lifecycle`` distributed
lock, and the DB transaction is opened *inside* the lock so the next holder
always sees the previous holder's committed rows.  The partial unique index
on ``contests.status = 'ACTIVE'`` is the store-level backstop.

Ending a contest ranks its entries and distributes rewards in the same
transaction under the same lock, so two concurrent ``end`` calls cannot
both pay out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from pulse.constants import DEFAULT_LEADERBOARD_LIMIT, LIFECYCLE_LOCK_KEY
from pulse.database.models import (
    AdminActionType,
    Contest,
    ContestEntry,
    ContestStatus,
)
from pulse.engine.clock import Clock, as_utc, utcnow
from pulse.engine.rules import ContestRules, deep_merge, parse_contest_rules
from pulse.engine.tiers import TierStatus, rank_entries, tier_status
from pulse.errors import ContestNotFoundError, InvalidContestTransitionError
from pulse.services import reward_service
from pulse.services.admin_service import log_admin_action, row_to_dict
from pulse.services.reward_service import DistributionSummary, contest_rules

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from pulse.engine.rules import RuleBook
    from pulse.services.lock_service import DistributedLock

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_LIVE_STATUSES = (ContestStatus.ACTIVE, ContestStatus.PAUSED)


@dataclass(frozen=True, slots=True)
class LeaderboardEntry:
    user_id: str
    points: int
    rank: int
    qualified: bool

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "points": self.points,
            "rank": self.rank,
            "qualified": self.qualified,
        }


def contest_to_dict(contest: Contest) -> dict:
    return {
        "id": contest.id,
        "name": contest.name,
        "status": str(contest.status),
        "start_time": as_utc(contest.start_time).isoformat(),
        "end_time": as_utc(contest.end_time).isoformat(),
        "min_points_to_qualify": contest.min_points_to_qualify,
        "rules": contest.rules,
        "completed_at": as_utc(contest.completed_at).isoformat() if contest.completed_at else None,
    }


def format_time_left(seconds: int) -> str:
    hours, rest = divmod(max(seconds, 0), 3600)
    return f"{hours}h {rest // 60}m"


def contest_progress(session: Session, contest: Contest, now: datetime) -> dict:
    """Time left and entry counts for *contest* as of *now*.

    A user counts as qualified once their entry holds at least one point and
    reaches the contest's floor, the same test the leaderboard applies.
    """
    floor = max(contest.min_points_to_qualify, 1)
    participants, qualified = session.execute(
        select(
            func.count(ContestEntry.id),
            func.count(ContestEntry.id).filter(ContestEntry.points >= floor),
        ).where(ContestEntry.contest_id == contest.id)
    ).one()
    left = 0
    if contest.status != ContestStatus.COMPLETED:
        left = max(int((as_utc(contest.end_time) - now).total_seconds()), 0)
    return {
        "contest_id": contest.id,
        "name": contest.name,
        "status": str(contest.status),
        "time_left_seconds": left,
        "time_left": format_time_left(left),
        "participants": participants or 0,
        "qualified_users": qualified or 0,
    }


class ContestManager:
    """Owns the contest lifecycle.  The only component that takes the lifecycle lock."""

    def __init__(
        self,
        engine: Engine,
        lock: DistributedLock,
        rules: RuleBook,
        *,
        clock: Clock = utcnow,
    ) -> None:
        self._engine = engine
        self._lock = lock
        self._rules = rules
        self._clock = clock

    # -- Internal helpers ---------------------------------------------------
    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    @staticmethod
    def _resolve(session: Session, contest_id: int | None, statuses: tuple) -> Contest:
        """Load *contest_id*, or the newest contest in *statuses* when omitted."""
        if contest_id is not None:
            contest = session.get(Contest, contest_id)
            if contest is None:
                raise ContestNotFoundError(
                    f"Contest {contest_id} not found", context={"contest_id": contest_id}
                )
            return contest
        contest = session.scalar(
            select(Contest)
            .where(Contest.status.in_(statuses))
            .order_by(Contest.start_time.desc(), Contest.id.desc())
        )
        if contest is None:
            raise ContestNotFoundError(
                "No current contest",
                context={"statuses": [str(s) for s in statuses]},
            )
        return contest

    @staticmethod
    def _assign_ranks(session: Session, contest: Contest) -> None:
        entries = session.scalars(
            select(ContestEntry).where(ContestEntry.contest_id == contest.id)
        ).all()
        for position, entry in enumerate(rank_entries(entries), start=1):
            entry.rank = position

    def _complete(self, session: Session, contest: Contest, now: datetime) -> None:
        contest.status = ContestStatus.COMPLETED
        contest.completed_at = now
        self._assign_ranks(session, contest)
        session.flush()

    # -- Lifecycle ----------------------------------------------------------
    def start_new_contest(
        self,
        name: str | None = None,
        duration_hours: int | None = None,
        rules: ContestRules | dict[str, Any] | None = None,
        *,
        actor_id: str = SYSTEM_ACTOR,
        replace_active: bool = True,
    ) -> Contest:
        """Start a new ACTIVE contest.

        Live (ACTIVE or PAUSED) contests are completed and ranked first,
        without reward distribution, so a stuck row never blocks a new round.
        With ``replace_active=False`` a live contest seen under the lock is
        returned unchanged instead (the scheduler path).
        """
        if isinstance(rules, ContestRules):
            raw = rules.model_dump(mode="json")
        else:
            # Keys the caller leaves out keep the environment's values.
            raw = deep_merge(self._rules.contest.model_dump(mode="json"), rules or {})
        if duration_hours is not None:
            raw["round_duration_hours"] = duration_hours
        snapshot = parse_contest_rules(raw)

        with self._lock.hold(LIFECYCLE_LOCK_KEY), self._session() as session:
            now = self._clock()
            live = session.scalars(
                select(Contest).where(Contest.status.in_(_LIVE_STATUSES))
            ).all()

            if not replace_active and live:
                current = min(live, key=lambda c: c.status != ContestStatus.ACTIVE)
                logger.info("Contest %d is %s; start is a no-op", current.id, current.status)
                return current

            for previous in live:
                before = row_to_dict(previous)
                self._complete(session, previous, now)
                log_admin_action(
                    session,
                    actor_id=actor_id,
                    action_type=AdminActionType.CONTEST_END,
                    target_table="contests",
                    target_id=str(previous.id),
                    before=before,
                    after=row_to_dict(previous),
                    reason="superseded by new contest",
                )
                logger.warning("Contest %d completed without distribution (superseded)", previous.id)

            contest = Contest(
                name=name or f"Contest {now:%Y-%m-%d %H:%M}",
                start_time=now,
                end_time=now + timedelta(hours=snapshot.round_duration_hours),
                status=ContestStatus.ACTIVE,
                rules=snapshot.model_dump(mode="json"),
                min_points_to_qualify=snapshot.min_points_to_qualify,
                created_at=now,
            )
            session.add(contest)
            session.flush()
            log_admin_action(
                session,
                actor_id=actor_id,
                action_type=AdminActionType.CONTEST_START,
                target_table="contests",
                target_id=str(contest.id),
                before=None,
                after=row_to_dict(contest),
            )
            session.commit()
            logger.info("Contest %d %r started (ends %s)", contest.id, contest.name, contest.end_time)
            return contest

    def _flip(
        self,
        contest_id: int | None,
        *,
        source: ContestStatus,
        target: ContestStatus,
        action: AdminActionType,
        actor_id: str,
    ) -> Contest:
        with self._lock.hold(LIFECYCLE_LOCK_KEY), self._session() as session:
            contest = self._resolve(session, contest_id, (source,))
            if contest.status != source:
                raise InvalidContestTransitionError(
                    f"Cannot move contest {contest.id} from {contest.status} to {target}",
                    context={"contest_id": contest.id, "status": str(contest.status)},
                )
            if target == ContestStatus.ACTIVE:
                other = session.scalar(
                    select(Contest.id).where(
                        Contest.status == ContestStatus.ACTIVE, Contest.id != contest.id
                    )
                )
                if other is not None:
                    raise InvalidContestTransitionError(
                        f"Contest {other} is already ACTIVE",
                        context={"contest_id": contest.id, "active_contest_id": other},
                    )
            before = row_to_dict(contest)
            contest.status = target
            session.flush()
            log_admin_action(
                session,
                actor_id=actor_id,
                action_type=action,
                target_table="contests",
                target_id=str(contest.id),
                before=before,
                after=row_to_dict(contest),
            )
            session.commit()
            logger.info("Contest %d → %s", contest.id, target)
            return contest

    def pause_contest(self, contest_id: int | None = None, *, actor_id: str = SYSTEM_ACTOR) -> Contest:
        return self._flip(
            contest_id,
            source=ContestStatus.ACTIVE,
            target=ContestStatus.PAUSED,
            action=AdminActionType.CONTEST_PAUSE,
            actor_id=actor_id,
        )

    def resume_contest(self, contest_id: int | None = None, *, actor_id: str = SYSTEM_ACTOR) -> Contest:
        return self._flip(
            contest_id,
            source=ContestStatus.PAUSED,
            target=ContestStatus.ACTIVE,
            action=AdminActionType.CONTEST_RESUME,
            actor_id=actor_id,
        )

    def end_current_contest(
        self,
        contest_id: int | None = None,
        *,
        actor_id: str = SYSTEM_ACTOR,
    ) -> DistributionSummary:
        """Complete, rank and pay out the current (ACTIVE or PAUSED) contest."""
        with self._lock.hold(LIFECYCLE_LOCK_KEY), self._session() as session:
            contest = self._resolve(session, contest_id, _LIVE_STATUSES)
            if contest.status not in _LIVE_STATUSES:
                raise InvalidContestTransitionError(
                    f"Contest {contest.id} is {contest.status} and cannot be ended",
                    context={"contest_id": contest.id, "status": str(contest.status)},
                )
            return self._end(session, contest, actor_id)

    def end_expired_contest(self) -> DistributionSummary | None:
        """Scheduler entry: end the ACTIVE contest once its end time has passed."""
        with self._lock.hold(LIFECYCLE_LOCK_KEY), self._session() as session:
            now = self._clock()
            contest = session.scalar(
                select(Contest).where(
                    Contest.status == ContestStatus.ACTIVE,
                    Contest.end_time <= now,
                )
            )
            if contest is None:
                return None
            return self._end(session, contest, SYSTEM_ACTOR)

    def _end(self, session: Session, contest: Contest, actor_id: str) -> DistributionSummary:
        now = self._clock()
        before = row_to_dict(contest)
        self._complete(session, contest, now)
        summary = reward_service.distribute_in_session(session, contest, now)
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.CONTEST_END,
            target_table="contests",
            target_id=str(contest.id),
            before=before,
            after={**row_to_dict(contest), "distribution": summary.to_dict()},
        )
        session.commit()
        logger.info("Contest %d ended", contest.id)
        return summary

    def distribute_rewards(self, contest_id: int, *, actor_id: str = SYSTEM_ACTOR) -> DistributionSummary:
        """Pay out a COMPLETED contest that has not been paid out yet."""
        with self._lock.hold(LIFECYCLE_LOCK_KEY), self._session() as session:
            contest = self._resolve(session, contest_id, ())
            summary = reward_service.distribute_in_session(session, contest, self._clock())
            log_admin_action(
                session,
                actor_id=actor_id,
                action_type=AdminActionType.REWARD_DISTRIBUTE,
                target_table="contest_rewards",
                target_id=str(contest.id),
                before=None,
                after=summary.to_dict(),
            )
            session.commit()
            return summary

    # -- Reads --------------------------------------------------------------
    def get_current_contest(self) -> Contest | None:
        """The ACTIVE contest, else the newest PAUSED one."""
        with self._session() as session:
            contest = session.scalar(
                select(Contest)
                .where(Contest.status.in_(_LIVE_STATUSES))
                .order_by(
                    (Contest.status == ContestStatus.ACTIVE).desc(),
                    Contest.start_time.desc(),
                )
            )
            if contest is not None:
                session.expunge(contest)
            return contest

    def get_contest_progress(self, contest_id: int | None = None) -> dict:
        """Countdown and qualified-user count for the current (or given) contest."""
        with self._session() as session:
            contest = self._resolve(session, contest_id, _LIVE_STATUSES)
            return contest_progress(session, contest, self._clock())

    def get_contest(self, contest_id: int) -> Contest:
        with self._session() as session:
            contest = self._resolve(session, contest_id, ())
            session.expunge(contest)
            return contest

    def list_contests(self, limit: int = 20) -> list[Contest]:
        with self._session() as session:
            contests = session.scalars(
                select(Contest).order_by(Contest.start_time.desc(), Contest.id.desc()).limit(limit)
            ).all()
            for contest in contests:
                session.expunge(contest)
            return list(contests)

    def get_contest_leaderboard(
        self, contest_id: int, limit: int = DEFAULT_LEADERBOARD_LIMIT
    ) -> list[LeaderboardEntry]:
        """Final ranks for completed contests, live finishing order otherwise."""
        with self._session() as session:
            contest = self._resolve(session, contest_id, ())
            rules = contest_rules(contest)
            entries = session.scalars(
                select(ContestEntry).where(ContestEntry.contest_id == contest.id)
            ).all()
            ordered = rank_entries(entries)
            return [
                LeaderboardEntry(
                    user_id=entry.user_id,
                    points=entry.points,
                    rank=entry.rank or position,
                    qualified=entry.points > 0 and entry.points >= rules.min_points_to_qualify,
                )
                for position, entry in enumerate(ordered[:limit], start=1)
            ]

    def check_tier_eligibility(self, user_id: str, contest_id: int | None = None) -> TierStatus:
        """Where *user_id* stands on the current (or given) contest's tier ladder."""
        with self._session() as session:
            contest = self._resolve(session, contest_id, _LIVE_STATUSES)
            rules = contest_rules(contest)
            entry = session.scalar(
                select(ContestEntry).where(
                    ContestEntry.contest_id == contest.id,
                    ContestEntry.user_id == user_id,
                )
            )
            points = entry.points if entry else 0
            rank = entry.rank if entry else None
            return tier_status(points, rules, rank)
