"""
pulse.engine.events — EngagementEvent and EngagementOutcome
============================================================

Every platform adapter normalizes a user action into an
:class:`EngagementEvent` before handing it to the engagement tracker, and
gets an :class:`EngagementOutcome` back.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime

from pulse.engine.clock import utcnow

__all__ = ["EngagementEvent", "EngagementOutcome", "RejectionReason"]


class RejectionReason(enum.StrEnum):
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    DAILY_POINT_CAP = "DAILY_POINT_CAP"


# ---------------------------------------------------------------------------
# EngagementEvent — the input envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EngagementEvent:
    """A single user action on a social platform.

    ``platform`` and ``engagement_type`` are upper-cased strings matching
    the rule table keys (``"TELEGRAM"`` / ``"MUSIC_SHARE"``).  ``timestamp``
    is informational; cooldowns are evaluated against the tracker's clock
    at award time.
    """

    user_id: str
    platform: str
    engagement_type: str
    metadata: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


# ---------------------------------------------------------------------------
# EngagementOutcome — typed accept / reject result
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EngagementOutcome:
    accepted: bool
    points: int = 0
    reason: RejectionReason | None = None
    retry_after: int | None = None  # seconds, cooldown rejections only
    contest_id: int | None = None
    streak: int | None = None  # consecutive active days on the platform
    correlation_id: str | None = None

    @property
    def message(self) -> str:
        if self.accepted:
            return f"+{self.points} points"
        if self.reason is RejectionReason.COOLDOWN_ACTIVE:
            return f"Please wait {self.retry_after}s before doing that again."
        if self.reason is RejectionReason.DAILY_LIMIT_EXCEEDED:
            return "Daily limit reached for this action. Try again tomorrow."
        return "Daily point limit reached. Try again tomorrow."

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "points": self.points,
            "reason": self.reason.value if self.reason else None,
            "retry_after": self.retry_after,
            "contest_id": self.contest_id,
            "streak": self.streak,
            "message": self.message,
        }
