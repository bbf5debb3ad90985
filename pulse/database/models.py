"""
pulse.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- users                   — Account profiles keyed by wallet/account id
- engagement_state        — Last accepted time + same-day count per (user, platform, type)
- user_streaks            — Consecutive active days per (user, platform)
- point_transactions      — Append-only point ledger
- contests                — Time-boxed competitions (at most one ACTIVE)
- contest_entries         — Per-contest point totals and final ranks
- contest_qualifications  — Highest tier reached per contest entry
- contest_rewards         — Claimable reward records
- verification_codes      — One-time platform linking codes
- platform_links          — Verified platform account → user mapping
- admin_log               — Append-only audit trail
"""

from __future__ import annotations

import enum
from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Pulse ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class Platform(enum.StrEnum):
    """Social platforms that report engagement."""
    TELEGRAM = "TELEGRAM"
    DISCORD = "DISCORD"
    TWITTER = "TWITTER"


class ContestStatus(enum.StrEnum):
    UPCOMING = "UPCOMING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


class RewardStatus(enum.StrEnum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    EXPIRED = "EXPIRED"


class RewardType(enum.StrEnum):
    """Closed set of reward kinds a contest can pay out."""
    USDC = "USDC"
    SOLANA = "SOLANA"
    SOUL = "SOUL"
    WHITELIST = "WHITELIST"
    FREE_MINT = "FREE_MINT"
    FREE_GAS = "FREE_GAS"
    NO_FEES = "NO_FEES"
    NONE = "NONE"


class AdminActionType(enum.StrEnum):
    CONTEST_START = "CONTEST_START"
    CONTEST_PAUSE = "CONTEST_PAUSE"
    CONTEST_RESUME = "CONTEST_RESUME"
    CONTEST_END = "CONTEST_END"
    REWARD_DISTRIBUTE = "REWARD_DISTRIBUTE"
    MANUAL_AWARD = "MANUAL_AWARD"
    LOCK_FORCE_RELEASE = "LOCK_FORCE_RELEASE"
    RULES_RELOAD = "RULES_RELOAD"


# ---------------------------------------------------------------------------
# Users — one row per wallet / account
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    lifetime_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    telegram_username: Mapped[str | None] = mapped_column(String(100), default=None)
    discord_username: Mapped[str | None] = mapped_column(String(100), default=None)
    twitter_username: Mapped[str | None] = mapped_column(String(100), default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_active_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    transactions: Mapped[list[PointTransaction]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_users_points_desc", "points"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id!r} points={self.points}>"


# ---------------------------------------------------------------------------
# EngagementState — cooldown / daily-limit bookkeeping
# ---------------------------------------------------------------------------
class EngagementState(Base):
    """Only ever written on accepted events.

    The award path claims a row with a conditional UPDATE keyed on
    ``last_accepted_at`` and ``daily_count``, so two processes racing on the
    same key cannot both pass the check.
    """

    __tablename__ = "engagement_state"

    user_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    platform: Mapped[str] = mapped_column(String(20), primary_key=True)
    engagement_type: Mapped[str] = mapped_column(String(50), primary_key=True)
    last_accepted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    day: Mapped[date] = mapped_column(Date, nullable=False)
    daily_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<EngagementState {self.user_id}/{self.platform}/{self.engagement_type} "
            f"count={self.daily_count}>"
        )


# ---------------------------------------------------------------------------
# UserStreak — consecutive active days per platform
# ---------------------------------------------------------------------------
class UserStreak(Base):
    """Advanced on accepted engagements only, one step per UTC day.

    A day with no accepted engagement on the platform breaks the streak; the
    stored ``current_streak`` is only live while ``last_active_day`` is today
    or yesterday.
    """

    __tablename__ = "user_streaks"

    user_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    platform: Mapped[str] = mapped_column(String(20), primary_key=True)
    current_streak: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    longest_streak: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_active_day: Mapped[date] = mapped_column(Date, nullable=False)

    def __repr__(self) -> str:
        return f"<UserStreak {self.user_id}/{self.platform} current={self.current_streak}>"


# ---------------------------------------------------------------------------
# PointTransaction — append-only ledger
# ---------------------------------------------------------------------------
class PointTransaction(Base):
    __tablename__ = "point_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    platform: Mapped[str | None] = mapped_column(String(20), nullable=True)
    contest_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("contests.id", ondelete="SET NULL"), nullable=True
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    user: Mapped[User] = relationship(back_populates="transactions")

    __table_args__ = (
        Index("ix_point_tx_user_time", "user_id", "timestamp"),
        Index("ix_point_tx_contest", "contest_id"),
    )

    def __repr__(self) -> str:
        return f"<PointTransaction id={self.id} user={self.user_id!r} amount={self.amount}>"


# ---------------------------------------------------------------------------
# Contest — competitive windows
# ---------------------------------------------------------------------------
class Contest(Base):
    __tablename__ = "contests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        Enum(ContestStatus, name="contest_status", native_enum=False, length=20),
        nullable=False,
        default=ContestStatus.UPCOMING,
    )
    rules: Mapped[dict] = mapped_column(JSONB, nullable=False)
    min_points_to_qualify: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    entries: Mapped[list[ContestEntry]] = relationship(
        back_populates="contest", cascade="all, delete-orphan"
    )

    __table_args__ = (
        # Backstop for the lifecycle lock: never two ACTIVE rows.
        Index(
            "uq_contests_single_active",
            "status",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_contests_status_end", "status", "end_time"),
    )

    def __repr__(self) -> str:
        return f"<Contest id={self.id} name={self.name!r} status={self.status}>"


# ---------------------------------------------------------------------------
# ContestEntry — per-contest points, ranked on completion
# ---------------------------------------------------------------------------
class ContestEntry(Base):
    __tablename__ = "contest_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contest_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    qualified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    contest: Mapped[Contest] = relationship(back_populates="entries")

    __table_args__ = (
        UniqueConstraint("contest_id", "user_id", name="uq_contest_entries_contest_user"),
        Index("ix_contest_entries_contest_points", "contest_id", "points"),
    )

    def __repr__(self) -> str:
        return (
            f"<ContestEntry contest={self.contest_id} user={self.user_id!r} "
            f"points={self.points} rank={self.rank}>"
        )


# ---------------------------------------------------------------------------
# ContestQualification — highest tier reached
# ---------------------------------------------------------------------------
class ContestQualification(Base):
    __tablename__ = "contest_qualifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contest_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    tier: Mapped[str] = mapped_column(String(50), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "contest_id", "user_id", name="uq_contest_qualifications_contest_user"
        ),
    )


# ---------------------------------------------------------------------------
# ContestReward — claimable payouts
# ---------------------------------------------------------------------------
class ContestReward(Base):
    __tablename__ = "contest_rewards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contest_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("contests.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(
        Enum(RewardType, name="reward_type", native_enum=False, length=20),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        Enum(RewardStatus, name="reward_status", native_enum=False, length=20),
        nullable=False,
        default=RewardStatus.PENDING,
    )
    reward_system: Mapped[str] = mapped_column(String(20), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "contest_id", "user_id", "reward_system",
            name="uq_contest_rewards_contest_user_system",
        ),
        Index("ix_contest_rewards_user", "user_id", "created_at"),
        Index("ix_contest_rewards_status_expiry", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ContestReward id={self.id} user={self.user_id!r} "
            f"type={self.type} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# VerificationCode — one-time linking codes
# ---------------------------------------------------------------------------
class VerificationCode(Base):
    __tablename__ = "verification_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)
    user_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_used: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_verification_codes_user_platform", "user_id", "platform"),
        # At most one unused code per (user, platform); expired ones are
        # deleted before a new code is minted.
        Index(
            "uq_verification_codes_live",
            "user_id",
            "platform",
            unique=True,
            postgresql_where=text("is_used = false"),
            sqlite_where=text("is_used = 0"),
        ),
    )

    def __repr__(self) -> str:
        return f"<VerificationCode {self.code} user={self.user_id!r} used={self.is_used}>"


# ---------------------------------------------------------------------------
# PlatformLink — verified platform accounts
# ---------------------------------------------------------------------------
class PlatformLink(Base):
    __tablename__ = "platform_links"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(
        String(100), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    platform_id: Mapped[str] = mapped_column(String(100), nullable=False)
    platform_username: Mapped[str | None] = mapped_column(String(100), nullable=True)
    verified_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("platform", "platform_id", name="uq_platform_links_account"),
        UniqueConstraint("user_id", "platform", name="uq_platform_links_user_platform"),
    )

    def __repr__(self) -> str:
        return f"<PlatformLink {self.platform}:{self.platform_id} → {self.user_id!r}>"


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[str] = mapped_column(String(100), nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_table: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target", "target_table", "target_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id!r} action={self.action_type}>"
