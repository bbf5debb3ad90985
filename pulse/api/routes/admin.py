"""
pulse.api.routes.admin — Admin endpoints (JWT‑protected)
=========================================================
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.api.deps import get_current_admin, get_services
from pulse.database.models import AdminLog
from pulse.engine.clock import as_utc
from pulse.runtime import Services
from pulse.services import admin_service
from pulse.services.contest_service import contest_to_dict

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class ContestStart(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    duration_hours: int | None = Field(default=None, ge=1, le=168)
    rules: dict[str, Any] | None = None


class ContestTarget(BaseModel):
    contest_id: int | None = None


class ManualAward(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    amount: int
    reason: str = ""


# ---------------------------------------------------------------------------
# Contests
# ---------------------------------------------------------------------------
@router.get("/contests")
def list_contests(
    limit: int = Query(20, ge=1, le=200),
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return {"contests": [contest_to_dict(c) for c in services.contests.list_contests(limit)]}


@router.post("/contests/start", status_code=201)
def start_contest(
    body: ContestStart,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    contest = services.contests.start_new_contest(
        name=body.name,
        duration_hours=body.duration_hours,
        rules=body.rules,
        actor_id=str(admin["sub"]),
    )
    return contest_to_dict(contest)


@router.post("/contests/pause")
def pause_contest(
    body: ContestTarget,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    contest = services.contests.pause_contest(body.contest_id, actor_id=str(admin["sub"]))
    return contest_to_dict(contest)


@router.post("/contests/resume")
def resume_contest(
    body: ContestTarget,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    contest = services.contests.resume_contest(body.contest_id, actor_id=str(admin["sub"]))
    return contest_to_dict(contest)


@router.post("/contests/end")
def end_contest(
    body: ContestTarget,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    summary = services.contests.end_current_contest(body.contest_id, actor_id=str(admin["sub"]))
    return summary.to_dict()


@router.post("/contests/{contest_id}/distribute")
def distribute_rewards(
    contest_id: int,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    summary = services.contests.distribute_rewards(contest_id, actor_id=str(admin["sub"]))
    return summary.to_dict()


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------
@router.post("/award")
def award_points(
    body: ManualAward,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    user = admin_service.award_manual(
        services.engine,
        services.rules,
        user_id=body.user_id,
        amount=body.amount,
        reason=body.reason,
        actor_id=str(admin["sub"]),
    )
    return {"user_id": user.id, "points": user.points, "lifetime_points": user.lifetime_points}


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------
@router.get("/rules")
def get_rules(
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return {
        "environment": services.rules.environment,
        "correlation_id": services.rules.correlation_id,
        "rules": services.rules.rules.model_dump(mode="json"),
    }


@router.post("/rules/reload")
def reload_rules(
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    rules = admin_service.reload_rules(services.engine, services.rules, actor_id=str(admin["sub"]))
    return {"correlation_id": services.rules.correlation_id, "rules": rules}


# ---------------------------------------------------------------------------
# Locks
# ---------------------------------------------------------------------------
@router.get("/locks/{key:path}")
def lock_status(
    key: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    return {"key": key, "held": services.lock.exists(key), "holder": services.lock.get_holder(key)}


@router.delete("/locks/{key:path}")
def force_release_lock(
    key: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    released = admin_service.force_release_lock(
        services.engine, services.lock, key=key, actor_id=str(admin["sub"])
    )
    return {"key": key, "released": released}


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------
@router.get("/audit-log")
def audit_log(
    limit: int = Query(50, ge=1, le=500),
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    with Session(services.engine) as session:
        rows = session.scalars(
            select(AdminLog).order_by(AdminLog.id.desc()).limit(limit)
        ).all()
        return {
            "entries": [
                {
                    "id": r.id,
                    "actor_id": r.actor_id,
                    "action_type": r.action_type,
                    "target_table": r.target_table,
                    "target_id": r.target_id,
                    "before": r.before_snapshot,
                    "after": r.after_snapshot,
                    "reason": r.reason,
                    "timestamp": as_utc(r.timestamp).isoformat() if r.timestamp else None,
                }
                for r in rows
            ]
        }
