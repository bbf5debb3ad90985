"""Initial engagement, contest, reward and verification schema

Revision ID: 5c1e7a90b3d2
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "5c1e7a90b3d2"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, nullable: bool = True, default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if default else None,
    )


def upgrade() -> None:
    """Create the ledger, contest, reward, verification and audit tables."""

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lifetime_points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("telegram_username", sa.String(100), nullable=True),
        sa.Column("discord_username", sa.String(100), nullable=True),
        sa.Column("twitter_username", sa.String(100), nullable=True),
        _ts("created_at", default=True),
        _ts("last_active_at"),
    )
    op.create_index("ix_users_points_desc", "users", ["points"])

    # --- contests ---
    op.create_table(
        "contests",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(200), nullable=False),
        _ts("start_time", nullable=False),
        _ts("end_time", nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("rules", postgresql.JSONB, nullable=False),
        sa.Column("min_points_to_qualify", sa.Integer, nullable=False, server_default="0"),
        _ts("created_at", default=True),
        _ts("completed_at"),
    )
    op.create_index(
        "uq_contests_single_active",
        "contests",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )
    op.create_index("ix_contests_status_end", "contests", ["status", "end_time"])

    # --- engagement_state ---
    op.create_table(
        "engagement_state",
        sa.Column(
            "user_id", sa.String(100),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("platform", sa.String(20), primary_key=True),
        sa.Column("engagement_type", sa.String(50), primary_key=True),
        _ts("last_accepted_at", nullable=False),
        sa.Column("day", sa.Date, nullable=False),
        sa.Column("daily_count", sa.Integer, nullable=False, server_default="0"),
    )

    # --- point_transactions ---
    op.create_table(
        "point_transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(100),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("reason", sa.String(100), nullable=False),
        sa.Column("platform", sa.String(20), nullable=True),
        sa.Column(
            "contest_id", sa.Integer,
            sa.ForeignKey("contests.id", ondelete="SET NULL"), nullable=True,
        ),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _ts("timestamp", nullable=False),
    )
    op.create_index("ix_point_tx_user_time", "point_transactions", ["user_id", "timestamp"])
    op.create_index("ix_point_tx_contest", "point_transactions", ["contest_id"])

    # --- contest_entries ---
    op.create_table(
        "contest_entries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "contest_id", sa.Integer,
            sa.ForeignKey("contests.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "user_id", sa.String(100),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("points", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rank", sa.Integer, nullable=True),
        _ts("qualified_at"),
        _ts("created_at", default=True),
        sa.UniqueConstraint("contest_id", "user_id", name="uq_contest_entries_contest_user"),
    )
    op.create_index(
        "ix_contest_entries_contest_points", "contest_entries", ["contest_id", "points"]
    )

    # --- contest_qualifications ---
    op.create_table(
        "contest_qualifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "contest_id", sa.Integer,
            sa.ForeignKey("contests.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "user_id", sa.String(100),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("tier", sa.String(50), nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _ts("created_at", default=True),
        sa.UniqueConstraint(
            "contest_id", "user_id", name="uq_contest_qualifications_contest_user"
        ),
    )

    # --- contest_rewards ---
    op.create_table(
        "contest_rewards",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "contest_id", sa.Integer,
            sa.ForeignKey("contests.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column(
            "user_id", sa.String(100),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("reward_system", sa.String(20), nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=True),
        _ts("expires_at", nullable=False),
        _ts("claimed_at"),
        _ts("created_at", default=True),
        sa.UniqueConstraint(
            "contest_id", "user_id", "reward_system",
            name="uq_contest_rewards_contest_user_system",
        ),
    )
    op.create_index("ix_contest_rewards_user", "contest_rewards", ["user_id", "created_at"])
    op.create_index(
        "ix_contest_rewards_status_expiry", "contest_rewards", ["status", "expires_at"]
    )

    # --- verification_codes ---
    op.create_table(
        "verification_codes",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(16), nullable=False, unique=True),
        sa.Column(
            "user_id", sa.String(100),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("platform", sa.String(20), nullable=False),
        _ts("expires_at", nullable=False),
        sa.Column("is_used", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("created_at", default=True),
    )
    op.create_index(
        "ix_verification_codes_user_platform", "verification_codes", ["user_id", "platform"]
    )

    # --- platform_links ---
    op.create_table(
        "platform_links",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id", sa.String(100),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("platform_id", sa.String(100), nullable=False),
        sa.Column("platform_username", sa.String(100), nullable=True),
        _ts("verified_at", nullable=False),
        sa.UniqueConstraint("platform", "platform_id", name="uq_platform_links_account"),
        sa.UniqueConstraint("user_id", "platform", name="uq_platform_links_user_platform"),
    )

    # --- admin_log ---
    op.create_table(
        "admin_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(100), nullable=False),
        sa.Column("action_type", sa.String(50), nullable=False),
        sa.Column("target_table", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(100), nullable=True),
        sa.Column("before_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("after_snapshot", postgresql.JSONB, nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        _ts("timestamp", default=True),
    )
    op.create_index("ix_admin_log_actor_time", "admin_log", ["actor_id", "timestamp"])
    op.create_index(
        "ix_admin_log_target", "admin_log", ["target_table", "target_id", "timestamp"]
    )


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    op.drop_table("admin_log")
    op.drop_table("platform_links")
    op.drop_table("verification_codes")
    op.drop_table("contest_rewards")
    op.drop_table("contest_qualifications")
    op.drop_table("contest_entries")
    op.drop_table("point_transactions")
    op.drop_table("engagement_state")
    op.drop_index("uq_contests_single_active", table_name="contests")
    op.drop_table("contests")
    op.drop_table("users")
