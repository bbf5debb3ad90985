"""
pulse.services.admin_service — Audit-logged Admin Mutations
============================================================

Every admin write follows the pattern:
  1. Begin transaction
  2. Read "before" snapshot
  3. Apply change
  4. Write admin_log with before/after JSON
  5. Commit

The audit helpers are also used by the contest manager so lifecycle
transitions land in the same trail.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import update
from sqlalchemy.orm import Session

from pulse.database.models import AdminActionType, AdminLog, PointTransaction, User
from pulse.engine.clock import utcnow
from pulse.errors import InvalidAwardError, UserNotFoundError

if TYPE_CHECKING:
    from sqlalchemy import Engine

    from pulse.engine.rules import RuleBook
    from pulse.services.lock_service import DistributedLock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic audit helpers
# ---------------------------------------------------------------------------
def row_to_dict(obj: Any) -> dict | None:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    if obj is None:
        return None
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key if col.key != "metadata" else "metadata_", None)
        if isinstance(val, (datetime, date)):
            val = val.isoformat()
        result[col.name] = val
    return result


def log_admin_action(
    session: Session,
    *,
    actor_id: str,
    action_type: str,
    target_table: str,
    target_id: str | None,
    before: dict | None,
    after: dict | None,
    reason: str | None = None,
) -> None:
    """Insert a row into admin_log within the current transaction."""
    session.add(AdminLog(
        actor_id=actor_id,
        action_type=str(action_type),
        target_table=target_table,
        target_id=target_id,
        before_snapshot=before,
        after_snapshot=after,
        reason=reason,
    ))


# ---------------------------------------------------------------------------
# Manual point awards
# ---------------------------------------------------------------------------
def award_manual(
    engine: Engine,
    rules: RuleBook,
    *,
    user_id: str,
    amount: int,
    reason: str,
    actor_id: str,
    now: datetime | None = None,
) -> User:
    """Grant *amount* points outside the engagement pipeline.

    Writes a PointTransaction like any other award so the ledger keeps
    reconciling with ``lifetime_points``.  Only positive amounts are
    accepted.  Manual awards never count toward contest entries.
    """
    max_award = rules.admin.max_award
    if amount < 1 or amount > max_award:
        raise InvalidAwardError(
            f"Award amount must be between 1 and {max_award}",
            context={"amount": amount, "max_award": max_award},
        )
    now = now or utcnow()

    with Session(engine, expire_on_commit=False) as session:
        user = session.get(User, user_id)
        if user is None:
            logger.error("Manual award for unknown user %r by %s", user_id, actor_id)
            raise UserNotFoundError(f"User {user_id!r} not found", context={"user_id": user_id})
        before = row_to_dict(user)

        session.add(PointTransaction(
            user_id=user_id,
            amount=amount,
            reason=f"MANUAL_AWARD: {reason}" if reason else "MANUAL_AWARD",
            platform=None,
            metadata_={"actor_id": actor_id},
            timestamp=now,
        ))
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                points=User.points + amount,
                lifetime_points=User.lifetime_points + amount,
            )
            .execution_options(synchronize_session=False)
        )
        session.refresh(user)
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.MANUAL_AWARD,
            target_table="users",
            target_id=user_id,
            before=before,
            after=row_to_dict(user),
            reason=reason or None,
        )
        session.commit()
        session.expunge(user)

    logger.info("Manual award: %d points to %s by %s (%s)", amount, user_id, actor_id, reason)
    return user


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------
def force_release_lock(
    engine: Engine,
    lock: DistributedLock,
    *,
    key: str,
    actor_id: str,
) -> bool:
    """Unconditionally delete a distributed lock and record who did it."""
    holder = lock.get_holder(key)
    released = lock.force_release(key)
    with Session(engine) as session:
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.LOCK_FORCE_RELEASE,
            target_table="locks",
            target_id=key,
            before={"holder": holder},
            after={"released": released},
        )
        session.commit()
    return released


def reload_rules(engine: Engine, rules: RuleBook, *, actor_id: str) -> dict:
    """Hot-reload the rule table (refused in production) and audit it."""
    before = rules.rules.model_dump(mode="json")
    after = rules.reload().model_dump(mode="json")
    with Session(engine) as session:
        log_admin_action(
            session,
            actor_id=actor_id,
            action_type=AdminActionType.RULES_RELOAD,
            target_table="rules",
            target_id=rules.correlation_id,
            before=before,
            after=after,
        )
        session.commit()
    return after
