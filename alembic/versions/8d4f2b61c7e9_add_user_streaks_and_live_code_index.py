"""Add user_streaks and the one-live-code-per-platform index

Revision ID: 8d4f2b61c7e9
Revises: 5c1e7a90b3d2
Create Date: 2026-10-18 10:30:00.000000

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8d4f2b61c7e9"
down_revision: str | Sequence[str] | None = "5c1e7a90b3d2"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # --- user_streaks ---
    op.create_table(
        "user_streaks",
        sa.Column(
            "user_id", sa.String(100),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("platform", sa.String(20), primary_key=True),
        sa.Column("current_streak", sa.Integer, nullable=False, server_default="1"),
        sa.Column("longest_streak", sa.Integer, nullable=False, server_default="1"),
        sa.Column("last_active_day", sa.Date, nullable=False),
    )

    # Unused codes that have already expired would collide with the new
    # index; they can never be redeemed, so drop them.
    op.execute("DELETE FROM verification_codes WHERE is_used = false AND expires_at <= now()")
    op.create_index(
        "uq_verification_codes_live",
        "verification_codes",
        ["user_id", "platform"],
        unique=True,
        postgresql_where=sa.text("is_used = false"),
    )


def downgrade() -> None:
    op.drop_index("uq_verification_codes_live", table_name="verification_codes")
    op.drop_table("user_streaks")
