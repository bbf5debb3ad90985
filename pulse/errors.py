"""
pulse.errors — Error Taxonomy
==============================

Every failure the core raises on purpose is a :class:`PulseError`.  Each
subclass pins a machine-readable ``code`` and the HTTP status the API maps
it to, and every instance carries a ``correlation_id`` so a user-facing
message can be traced back to the log line that produced it.

Families:

* **Expected** — lock contention and already-linked accounts.  Logged at
  info/warning.  Cooldown and daily-limit rejections are not errors; the
  engagement tracker returns them as typed outcomes.
* **Configuration-fatal** — rule table validation.  Stops startup.
* **State-integrity** — contest/reward/link state does not allow the
  operation.  Logged at warning.
* **Caller defects** — unknown users, platforms or engagement types.
  Logged at error.
"""

from __future__ import annotations

import uuid
from typing import Any


def new_correlation_id() -> str:
    return uuid.uuid4().hex


class PulseError(Exception):
    """Base class for all domain errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.correlation_id = correlation_id or new_correlation_id()

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "correlation_id": self.correlation_id,
            "context": self.context,
        }


# ---------------------------------------------------------------------------
# Expected
# ---------------------------------------------------------------------------
class LockNotAcquiredError(PulseError):
    code = "CONCURRENCY_ERROR"
    status_code = 409


class AlreadyLinkedError(PulseError):
    code = "ALREADY_LINKED"
    status_code = 409


# ---------------------------------------------------------------------------
# Configuration-fatal
# ---------------------------------------------------------------------------
class ConfigValidationError(PulseError):
    """The merged rule table failed validation."""

    code = "CONFIG_VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        *,
        field: str,
        value: Any = None,
        correlation_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            context={"field": field, "value": repr(value)},
            correlation_id=correlation_id,
        )
        self.field = field
        self.value = value


class ConfigReloadForbiddenError(PulseError):
    code = "CONFIG_RELOAD_FORBIDDEN"
    status_code = 403


# ---------------------------------------------------------------------------
# State-integrity
# ---------------------------------------------------------------------------
class ContestNotFoundError(PulseError):
    code = "CONTEST_NOT_FOUND"
    status_code = 404


class ContestNotCompletedError(PulseError):
    code = "CONTEST_NOT_COMPLETED"
    status_code = 409


class RewardsAlreadyDistributedError(PulseError):
    code = "REWARDS_ALREADY_DISTRIBUTED"
    status_code = 409


class InvalidContestTransitionError(PulseError):
    code = "INVALID_CONTEST_TRANSITION"
    status_code = 409


class RewardNotFoundError(PulseError):
    code = "REWARD_NOT_FOUND"
    status_code = 404


class RewardNotOwnedError(PulseError):
    code = "REWARD_NOT_OWNED"
    status_code = 403


class RewardAlreadyClaimedError(PulseError):
    code = "REWARD_ALREADY_CLAIMED"
    status_code = 409


class RewardExpiredError(PulseError):
    code = "REWARD_EXPIRED"
    status_code = 410


# ---------------------------------------------------------------------------
# Caller defects
# ---------------------------------------------------------------------------
class UserNotFoundError(PulseError):
    code = "USER_NOT_FOUND"
    status_code = 404


class UnknownPlatformError(PulseError):
    code = "UNKNOWN_PLATFORM"
    status_code = 400


class UnsupportedEngagementError(PulseError):
    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidAwardError(PulseError):
    code = "VALIDATION_ERROR"
    status_code = 400
