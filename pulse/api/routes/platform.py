"""
pulse.api.routes.platform — Endpoints for platform adapters
============================================================

Telegram/Discord/Twitter bots call these with the shared
``X-Adapter-Key`` header.  Cooldown and daily-limit rejections come back
as 429 with the outcome body and a ``Retry-After`` header when known.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pulse.api.deps import get_services, require_adapter_key
from pulse.engine.clock import as_utc
from pulse.engine.events import EngagementEvent
from pulse.runtime import Services
from pulse.services import reward_service, verification_service

router = APIRouter(tags=["platform"], dependencies=[Depends(require_adapter_key)])

_VERIFY_FAILURE_STATUS: dict[str | None, int] = {
    "INVALID_CODE": 400,
    "CODE_USED": 409,
    "CODE_EXPIRED": 410,
    "ALREADY_LINKED": 409,
    "DUPLICATE_PLATFORM_LINK": 409,
}


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class EngagementIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    platform: str
    type: str
    metadata: dict = Field(default_factory=dict)


class ClaimIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)


class CodeRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=100)
    platform: str


class VerifyRequest(BaseModel):
    code: str = Field(min_length=1, max_length=16)
    platform: str
    platform_id: str = Field(min_length=1, max_length=100)
    platform_username: str | None = Field(default=None, max_length=100)


# ---------------------------------------------------------------------------
# Engagement
# ---------------------------------------------------------------------------
@router.post("/engagements")
def track_engagement(body: EngagementIn, services: Services = Depends(get_services)):
    outcome = services.tracker.track_engagement(
        EngagementEvent(
            user_id=body.user_id,
            platform=body.platform,
            engagement_type=body.type,
            metadata=body.metadata,
        )
    )
    if outcome.accepted:
        return outcome.to_dict()
    headers = {"Retry-After": str(outcome.retry_after)} if outcome.retry_after else None
    return JSONResponse(status_code=429, content=outcome.to_dict(), headers=headers)


# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------
@router.post("/rewards/{reward_id}/claim")
def claim_reward(reward_id: int, body: ClaimIn, services: Services = Depends(get_services)):
    reward = reward_service.claim_reward(services.engine, reward_id, body.user_id)
    return reward_service.reward_to_dict(reward)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------
@router.post("/verifications/code", status_code=201)
def generate_code(body: CodeRequest, services: Services = Depends(get_services)):
    code = verification_service.generate_code(services.engine, body.user_id, body.platform)
    return {
        "code": code.code,
        "platform": str(code.platform),
        "expires_at": as_utc(code.expires_at).isoformat(),
    }


@router.post("/verifications/verify")
def verify_code(body: VerifyRequest, services: Services = Depends(get_services)):
    result = verification_service.verify_code(
        services.engine,
        body.code,
        body.platform,
        body.platform_id,
        body.platform_username,
    )
    if result.success:
        return result.to_dict()
    return JSONResponse(
        status_code=_VERIFY_FAILURE_STATUS.get(result.reason, 400),
        content=result.to_dict(),
    )


@router.get("/verifications/{user_id}")
def verification_status(user_id: str, services: Services = Depends(get_services)):
    return verification_service.get_verification_status(services.engine, user_id)
