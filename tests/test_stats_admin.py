"""
tests/test_stats_admin.py — Ledger Projections & Audited Admin Actions
=======================================================================
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conftest import ALL_PLATFORM_SECRETS, make_user
from pulse.database.models import AdminLog, ContestEntry, PointTransaction
from pulse.engine.events import EngagementEvent
from pulse.engine.rules import RuleBook
from pulse.errors import (
    ConfigReloadForbiddenError,
    ContestNotFoundError,
    InvalidAwardError,
    UserNotFoundError,
)
from pulse.services import admin_service, stats_service
from pulse.services.contest_service import ContestManager, format_time_left
from pulse.services.engagement_service import EngagementTracker


class TestGlobalRank:
    def test_rank_by_points(self, db_engine):
        make_user(db_engine, "a", 100)
        make_user(db_engine, "b", 50)
        make_user(db_engine, "c", 10)
        assert stats_service.get_global_rank(db_engine, "a") == 1
        assert stats_service.get_global_rank(db_engine, "b") == 2
        assert stats_service.get_global_rank(db_engine, "c") == 3

    def test_ties_share_rank(self, db_engine):
        make_user(db_engine, "a", 50)
        make_user(db_engine, "b", 50)
        make_user(db_engine, "c", 10)
        assert stats_service.get_global_rank(db_engine, "a") == 1
        assert stats_service.get_global_rank(db_engine, "b") == 1
        assert stats_service.get_global_rank(db_engine, "c") == 3

    def test_unknown_user(self, db_engine):
        with pytest.raises(UserNotFoundError):
            stats_service.get_global_rank(db_engine, "ghost")


class TestUserStats:
    def test_stats_shape(self, db_engine):
        make_user(db_engine, "a", 40)
        stats = stats_service.get_user_stats(db_engine, "a")
        assert stats["points"] == 40
        assert stats["lifetime_points"] == 40
        assert stats["global_rank"] == 1
        assert stats["linked_platforms"] == []
        assert stats["contests_entered"] == 0
        assert stats["rewards"] == {"PENDING": 0, "CLAIMED": 0, "EXPIRED": 0}
        assert stats["last_active_at"] is None

    def test_unknown_user(self, db_engine):
        with pytest.raises(UserNotFoundError):
            stats_service.get_user_stats(db_engine, "ghost")


class TestLeaderboard:
    def test_order_and_limit(self, db_engine):
        for uid, pts in (("a", 5), ("b", 30), ("c", 20)):
            make_user(db_engine, uid, pts)
        board = stats_service.get_leaderboard(db_engine, limit=2)
        assert [(row["user_id"], row["rank"]) for row in board] == [("b", 1), ("c", 2)]


    def test_ties_share_rank_and_next_rank_skips(self, db_engine):
        for uid, pts in (("a", 30), ("b", 30), ("c", 10), ("d", 0)):
            make_user(db_engine, uid, pts)
        board = stats_service.get_leaderboard(db_engine)
        assert [row["rank"] for row in board] == [1, 1, 3, 4]
        assert [row["user_id"] for row in board[:2]] == ["a", "b"]

    def test_rank_ignores_limit(self, db_engine):
        for uid, pts in (("a", 30), ("b", 30), ("c", 10)):
            make_user(db_engine, uid, pts)
        assert [row["rank"] for row in stats_service.get_leaderboard(db_engine, limit=1)] == [1]


class TestPlatformStats:
    @pytest.fixture
    def tracker(self, db_engine, rulebook, clock):
        return EngagementTracker(db_engine, rulebook, clock=clock)

    def _track(self, tracker, user_id: str, platform: str = "TELEGRAM", kind: str = "MUSIC_SHARE"):
        outcome = tracker.track_engagement(
            EngagementEvent(user_id=user_id, platform=platform, engagement_type=kind)
        )
        assert outcome.accepted
        return outcome

    def test_points_and_rank_per_platform(self, db_engine, tracker, clock):
        for uid in ("a", "b"):
            make_user(db_engine, uid)
        self._track(tracker, "a")
        self._track(tracker, "b", kind="INVITE")
        self._track(tracker, "a", platform="DISCORD", kind="REACTION")

        stats = stats_service.get_user_stats(db_engine, "a", now=clock())
        telegram = stats["platforms"]["TELEGRAM"]
        assert telegram["points"] == 5
        assert telegram["rank"] == 2
        assert stats["platforms"]["DISCORD"]["rank"] == 1
        assert stats["platforms"]["TWITTER"] == {
            "points": 0, "rank": None, "streak": 0, "longest_streak": 0,
        }
        assert stats_service.get_user_stats(db_engine, "b", now=clock())["platforms"]["TELEGRAM"]["rank"] == 1

    def test_manual_awards_do_not_count_toward_platforms(self, db_engine, rulebook, clock, user):
        admin_service.award_manual(
            db_engine, rulebook, user_id=user, amount=40, reason="host", actor_id="admin"
        )
        stats = stats_service.get_user_stats(db_engine, user, now=clock())
        assert stats["points"] == 40
        assert all(p["points"] == 0 for p in stats["platforms"].values())

    def test_streak_reported_until_a_day_is_missed(self, db_engine, tracker, clock, user):
        self._track(tracker, user)
        clock.advance(days=1)
        self._track(tracker, user)

        def telegram(now):
            return stats_service.get_user_stats(db_engine, user, now=now)["platforms"]["TELEGRAM"]

        assert telegram(clock())["streak"] == 2
        assert telegram(clock() + timedelta(days=1))["streak"] == 2
        lapsed = telegram(clock() + timedelta(days=2))
        assert lapsed["streak"] == 0
        assert lapsed["longest_streak"] == 2


class TestGlobalStats:
    def test_empty_community(self, db_engine, clock):
        stats = stats_service.get_global_stats(db_engine, now=clock())
        assert stats["total_users"] == 0
        assert stats["active_today"] == 0
        assert stats["total_points"] == 0
        assert stats["platform_stats"]["DISCORD"] == {"active_users": 0, "total_points": 0}
        assert stats["top_actions"] == {}
        assert stats["contest"] is None

    def test_totals(self, db_engine, rulebook, clock):
        tracker = EngagementTracker(db_engine, rulebook, clock=clock)
        for uid in ("a", "b", "c"):
            make_user(db_engine, uid)
        for uid in ("a", "b"):
            tracker.track_engagement(EngagementEvent(uid, "TELEGRAM", "MUSIC_SHARE"))
        tracker.track_engagement(EngagementEvent("a", "TELEGRAM", "INVITE"))
        tracker.track_engagement(EngagementEvent("b", "DISCORD", "REACTION"))
        admin_service.award_manual(db_engine, rulebook, user_id="c", amount=50, reason="", actor_id="admin")

        stats = stats_service.get_global_stats(db_engine, now=clock())
        assert stats["total_users"] == 3
        assert stats["active_today"] == 2
        assert stats["platform_stats"]["TELEGRAM"] == {"active_users": 2, "total_points": 20}
        assert stats["platform_stats"]["DISCORD"]["active_users"] == 1
        assert stats["total_points"] == 20 + stats["platform_stats"]["DISCORD"]["total_points"]
        assert list(stats["top_actions"].items())[0] == ("MUSIC_SHARE", 2)

    def test_active_users_count_today_only(self, db_engine, rulebook, clock, user):
        tracker = EngagementTracker(db_engine, rulebook, clock=clock)
        tracker.track_engagement(EngagementEvent(user, "TELEGRAM", "MUSIC_SHARE"))
        stats = stats_service.get_global_stats(db_engine, now=clock() + timedelta(days=1))
        assert stats["active_today"] == 0
        assert stats["platform_stats"]["TELEGRAM"] == {"active_users": 0, "total_points": 5}

    def test_includes_contest_progress(self, db_engine, contests, clock, user):
        contest = contests.start_new_contest(name="Round")
        stats = stats_service.get_global_stats(db_engine, now=clock())
        assert stats["contest"]["contest_id"] == contest.id
        assert stats["contest"]["time_left"] == "1h 0m"


class TestContestProgress:
    def test_counts_and_countdown(self, db_engine, rulebook, lock, clock):
        rules = RuleBook(
            "development",
            env=ALL_PLATFORM_SECRETS,
            overrides={"contest": {"min_points_to_qualify": 10}},
        )
        manager = ContestManager(db_engine, lock, rules, clock=clock)
        contest = manager.start_new_contest(name="Round")
        tracker = EngagementTracker(db_engine, rulebook, clock=clock)
        for uid in ("a", "b"):
            make_user(db_engine, uid)
        tracker.track_engagement(EngagementEvent("a", "TELEGRAM", "INVITE"))
        tracker.track_engagement(EngagementEvent("b", "TELEGRAM", "MUSIC_SHARE"))
        clock.advance(minutes=15, seconds=30)

        progress = manager.get_contest_progress()
        assert progress == {
            "contest_id": contest.id,
            "name": "Round",
            "status": "ACTIVE",
            "time_left_seconds": 44 * 60 + 30,
            "time_left": "0h 44m",
            "participants": 2,
            "qualified_users": 1,
        }

    def test_zero_floor_needs_a_point(self, db_engine, contests, clock, user):
        contest = contests.start_new_contest(name="Round")
        with Session(db_engine) as session:
            session.add(ContestEntry(contest_id=contest.id, user_id=user, points=0))
            session.commit()
        progress = contests.get_contest_progress(contest.id)
        assert progress["participants"] == 1
        assert progress["qualified_users"] == 0

    def test_overdue_contest_shows_no_time_left(self, contests, clock):
        contests.start_new_contest(name="Round")
        clock.advance(hours=2)
        progress = contests.get_contest_progress()
        assert progress["time_left_seconds"] == 0
        assert progress["time_left"] == "0h 0m"

    def test_no_live_contest(self, contests):
        with pytest.raises(ContestNotFoundError):
            contests.get_contest_progress()

    @pytest.mark.parametrize(
        ("seconds", "text"),
        [(0, "0h 0m"), (59, "0h 0m"), (3600 * 26 + 61, "26h 1m"), (-5, "0h 0m")],
    )
    def test_format_time_left(self, seconds, text):
        assert format_time_left(seconds) == text


class TestManualAward:
    def test_award_updates_totals_and_ledger(self, db_engine, rulebook, user):
        updated = admin_service.award_manual(
            db_engine, rulebook, user_id=user, amount=25, reason="event host", actor_id="admin-1"
        )
        assert updated.points == 25
        assert updated.lifetime_points == 25

        with Session(db_engine) as session:
            tx = session.scalars(select(PointTransaction)).one()
            assert tx.amount == 25
            assert tx.platform is None
            assert tx.reason == "MANUAL_AWARD: event host"
            log = session.scalars(select(AdminLog)).one()
            assert log.action_type == "MANUAL_AWARD"
            assert log.before_snapshot["points"] == 0
            assert log.after_snapshot["points"] == 25

    @pytest.mark.parametrize("amount", [0, -5, 1001])
    def test_out_of_range(self, db_engine, rulebook, user, amount):
        with pytest.raises(InvalidAwardError):
            admin_service.award_manual(
                db_engine, rulebook, user_id=user, amount=amount, reason="", actor_id="admin"
            )

    def test_unknown_user(self, db_engine, rulebook):
        with pytest.raises(UserNotFoundError):
            admin_service.award_manual(
                db_engine, rulebook, user_id="ghost", amount=5, reason="", actor_id="admin"
            )
        with Session(db_engine) as session:
            assert session.scalar(select(func.count()).select_from(AdminLog)) == 0


class TestOperatorActions:
    def test_force_release_is_audited(self, db_engine, lock):
        token = lock.acquire("contest:lifecycle")
        assert admin_service.force_release_lock(
            db_engine, lock, key="contest:lifecycle", actor_id="ops"
        )
        with Session(db_engine) as session:
            log = session.scalars(select(AdminLog)).one()
            assert log.action_type == "LOCK_FORCE_RELEASE"
            assert log.before_snapshot == {"holder": token}
            assert log.after_snapshot == {"released": True}

    def test_reload_rules_is_audited(self, db_engine, rulebook):
        old = rulebook.correlation_id
        admin_service.reload_rules(db_engine, rulebook, actor_id="ops")
        with Session(db_engine) as session:
            log = session.scalars(select(AdminLog)).one()
            assert log.action_type == "RULES_RELOAD"
            assert log.target_id == rulebook.correlation_id
        assert rulebook.correlation_id != old

    def test_reload_forbidden_in_production(self, db_engine):
        rules = RuleBook(
            "production", env={"DATABASE_URL": "postgresql://x", "REDIS_URL": "redis://x"}
        )
        with pytest.raises(ConfigReloadForbiddenError):
            admin_service.reload_rules(db_engine, rules, actor_id="ops")
