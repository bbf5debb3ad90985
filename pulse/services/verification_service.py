"""
pulse.services.verification_service — Platform Account Linking
===============================================================

A user asks for a code on the web side, then posts it from their platform
account.  Redemption marks the code used, inserts the PlatformLink and
updates the user's ``{platform}_username`` in one transaction.

Two codes racing to link the same platform account are settled by the
``(platform, platform_id)`` unique constraint: the loser's insert fails and
its whole transaction (including marking its code used) rolls back.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pulse.constants import (
    VERIFICATION_CODE_BYTES,
    VERIFICATION_CODE_TTL,
    VERIFICATION_MAX_MINT_ATTEMPTS,
)
from pulse.database.models import Platform, PlatformLink, User, VerificationCode
from pulse.engine.clock import as_utc, utcnow
from pulse.errors import AlreadyLinkedError, UnknownPlatformError, UserNotFoundError

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

_USERNAME_FIELD: dict[Platform, str] = {
    Platform.TELEGRAM: "telegram_username",
    Platform.DISCORD: "discord_username",
    Platform.TWITTER: "twitter_username",
}


@dataclass(frozen=True, slots=True)
class VerificationResult:
    success: bool
    message: str
    user_id: str | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "user_id": self.user_id,
            "reason": self.reason,
        }


def _platform(value: str) -> Platform:
    try:
        return Platform(value.upper())
    except ValueError:
        raise UnknownPlatformError(
            f"Platform {value!r} is unknown", context={"platform": value}
        ) from None


def _new_code() -> str:
    return secrets.token_hex(VERIFICATION_CODE_BYTES).upper()


def _live_code(
    session: Session, user_id: str, platform: Platform, now: datetime
) -> VerificationCode | None:
    return session.scalar(
        select(VerificationCode)
        .where(
            VerificationCode.user_id == user_id,
            VerificationCode.platform == platform,
            VerificationCode.is_used.is_(False),
            VerificationCode.expires_at > now,
        )
        .order_by(VerificationCode.expires_at.desc())
    )


def _linked_owner(session: Session, platform: Platform, platform_id: str) -> str | None:
    """The user already holding *platform_id* on *platform*, if any."""
    return session.scalar(
        select(PlatformLink.user_id).where(
            PlatformLink.platform == platform, PlatformLink.platform_id == platform_id
        )
    )


# ---------------------------------------------------------------------------
# Code issuance
# ---------------------------------------------------------------------------
def generate_code(
    engine: Engine,
    user_id: str,
    platform: str,
    now: datetime | None = None,
) -> VerificationCode:
    """Return the user's live code for *platform*, minting one if needed.

    At most one unused code exists per (user, platform).  A concurrent call
    that mints first wins and both callers get its code.
    """
    platform = _platform(platform)
    now = now or utcnow()

    with Session(engine, expire_on_commit=False) as session:
        if session.get(User, user_id) is None:
            logger.error("Verification code requested for unknown user %r", user_id)
            raise UserNotFoundError(f"User {user_id!r} not found", context={"user_id": user_id})

        linked = session.scalar(
            select(PlatformLink.id).where(
                PlatformLink.user_id == user_id, PlatformLink.platform == platform
            )
        )
        if linked is not None:
            logger.info("User %s already linked on %s", user_id, platform)
            raise AlreadyLinkedError(
                f"Account is already linked on {platform}",
                context={"user_id": user_id, "platform": str(platform)},
            )

        existing = _live_code(session, user_id, platform, now)
        if existing is not None:
            session.expunge(existing)
            return existing

        # Expired codes can never be redeemed and would block the new one.
        session.execute(
            delete(VerificationCode).where(
                VerificationCode.user_id == user_id,
                VerificationCode.platform == platform,
                VerificationCode.is_used.is_(False),
                VerificationCode.expires_at <= now,
            )
        )

        for _attempt in range(VERIFICATION_MAX_MINT_ATTEMPTS):
            code = VerificationCode(
                code=_new_code(),
                user_id=user_id,
                platform=platform,
                expires_at=now + VERIFICATION_CODE_TTL,
                is_used=False,
                created_at=now,
            )
            try:
                with session.begin_nested():
                    session.add(code)
                break
            except IntegrityError:
                raced = _live_code(session, user_id, platform, now)
                if raced is not None:
                    session.commit()
                    session.expunge(raced)
                    logger.info("Verification code for %s on %s minted concurrently", user_id, platform)
                    return raced
                logger.debug("Verification code collision; minting another")
        else:
            raise RuntimeError("Could not mint a unique verification code")

        session.commit()
        session.expunge(code)
        logger.info("Verification code issued for %s on %s", user_id, platform)
        return code


# ---------------------------------------------------------------------------
# Redemption
# ---------------------------------------------------------------------------
def verify_code(
    engine: Engine,
    code: str,
    platform: str,
    platform_id: str,
    platform_username: str | None = None,
    now: datetime | None = None,
) -> VerificationResult:
    """Redeem *code* for the platform account *platform_id*."""
    platform = _platform(platform)
    now = now or utcnow()
    code = code.strip().upper()

    with Session(engine) as session:
        row = session.scalar(select(VerificationCode).where(VerificationCode.code == code))
        if row is None or row.platform != platform:
            return VerificationResult(False, "Invalid verification code", reason="INVALID_CODE")
        if row.is_used:
            return VerificationResult(False, "Verification code already used", reason="CODE_USED")
        if as_utc(row.expires_at) <= now:
            return VerificationResult(False, "Verification code expired", reason="CODE_EXPIRED")
        user_id = row.user_id

        owner = _linked_owner(session, platform, platform_id)
        if owner is not None:
            logger.warning("%s account %s is already linked to %s", platform, platform_id, owner)
            return VerificationResult(
                False, "This account is already linked", reason="ALREADY_LINKED"
            )

        claimed = session.execute(
            update(VerificationCode)
            .where(
                VerificationCode.id == row.id,
                VerificationCode.is_used.is_(False),
                VerificationCode.expires_at > now,
            )
            .values(is_used=True)
            .execution_options(synchronize_session=False)
        ).rowcount
        if claimed != 1:
            session.rollback()
            return VerificationResult(False, "Verification code already used", reason="CODE_USED")

        username = platform_username or platform_id
        try:
            session.add(PlatformLink(
                user_id=user_id,
                platform=platform,
                platform_id=platform_id,
                platform_username=username,
                verified_at=now,
            ))
            session.execute(
                update(User)
                .where(User.id == user_id)
                .values({_USERNAME_FIELD[platform]: username})
                .execution_options(synchronize_session=False)
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning(
                "Duplicate link rejected for %s account %s (user %s)", platform, platform_id, user_id
            )
            return VerificationResult(
                False,
                "This account is already linked",
                user_id=user_id,
                reason="DUPLICATE_PLATFORM_LINK",
            )

    logger.info("Linked %s account %s to %s", platform, platform_id, user_id)
    return VerificationResult(True, f"{platform} account verified", user_id=user_id)


def get_verification_status(engine: Engine, user_id: str, now: datetime | None = None) -> dict:
    """Per-platform link status plus any live code."""
    now = now or utcnow()
    with Session(engine) as session:
        if session.get(User, user_id) is None:
            raise UserNotFoundError(f"User {user_id!r} not found", context={"user_id": user_id})
        links = {
            link.platform: link
            for link in session.scalars(
                select(PlatformLink).where(PlatformLink.user_id == user_id)
            )
        }
        codes = {
            c.platform: c
            for c in session.scalars(
                select(VerificationCode).where(
                    VerificationCode.user_id == user_id,
                    VerificationCode.is_used.is_(False),
                    VerificationCode.expires_at > now,
                )
            )
        }
        return {
            str(p): {
                "verified": p in links,
                "platform_username": links[p].platform_username if p in links else None,
                "pending_code": codes[p].code if p in codes and p not in links else None,
            }
            for p in Platform
        }
