"""
pulse.api.routes.public — Read-only public endpoints
=====================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from pulse.api.deps import get_services
from pulse.constants import DEFAULT_LEADERBOARD_LIMIT
from pulse.runtime import Services
from pulse.services import reward_service, stats_service
from pulse.services.contest_service import contest_to_dict

router = APIRouter(tags=["public"])


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
@router.get("/users/{user_id}/stats")
def user_stats(user_id: str, services: Services = Depends(get_services)):
    return stats_service.get_user_stats(services.engine, user_id)


@router.get("/users/{user_id}/rank")
def user_rank(user_id: str, services: Services = Depends(get_services)):
    return {"user_id": user_id, "rank": stats_service.get_global_rank(services.engine, user_id)}


@router.get("/users/{user_id}/rewards")
def user_rewards(user_id: str, services: Services = Depends(get_services)):
    rewards = reward_service.get_contest_rewards(services.engine, user_id)
    return {"rewards": [reward_service.reward_to_dict(r) for r in rewards]}


@router.get("/users/{user_id}/tier")
def user_tier(
    user_id: str,
    contest_id: int | None = None,
    services: Services = Depends(get_services),
):
    return services.contests.check_tier_eligibility(user_id, contest_id).to_dict()


@router.get("/stats")
def global_stats(services: Services = Depends(get_services)):
    return stats_service.get_global_stats(services.engine)


@router.get("/leaderboard")
def leaderboard(
    limit: int = Query(DEFAULT_LEADERBOARD_LIMIT, ge=1, le=500),
    services: Services = Depends(get_services),
):
    return {"leaderboard": stats_service.get_leaderboard(services.engine, limit)}


# ---------------------------------------------------------------------------
# Contests
# ---------------------------------------------------------------------------
@router.get("/contests/current")
def current_contest(services: Services = Depends(get_services)):
    contest = services.contests.get_current_contest()
    return {"contest": contest_to_dict(contest) if contest else None}


@router.get("/contests/current/progress")
def current_contest_progress(services: Services = Depends(get_services)):
    return services.contests.get_contest_progress()


@router.get("/contests/{contest_id}")
def contest_detail(contest_id: int, services: Services = Depends(get_services)):
    return contest_to_dict(services.contests.get_contest(contest_id))


@router.get("/contests/{contest_id}/leaderboard")
def contest_leaderboard(
    contest_id: int,
    limit: int = Query(DEFAULT_LEADERBOARD_LIMIT, ge=1, le=500),
    services: Services = Depends(get_services),
):
    entries = services.contests.get_contest_leaderboard(contest_id, limit)
    return {"contest_id": contest_id, "entries": [e.to_dict() for e in entries]}
