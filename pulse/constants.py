"""
pulse.constants — Shared Constants
===================================

Single source of truth for lock names, expiry windows and the environment
variables that decide which platforms are live.
"""

from __future__ import annotations

from datetime import timedelta

# ---------------------------------------------------------------------------
# Distributed lock
# ---------------------------------------------------------------------------
LOCK_PREFIX = "lock:"
LIFECYCLE_LOCK_KEY = "contest:lifecycle"

DEFAULT_LOCK_TTL_MS = 30_000
DEFAULT_LOCK_RETRY_DELAY = 0.1  # seconds
DEFAULT_LOCK_MAX_RETRIES = 10

# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------
VERIFICATION_CODE_BYTES = 3  # → 6 hex characters
VERIFICATION_CODE_TTL = timedelta(minutes=30)
VERIFICATION_MAX_MINT_ATTEMPTS = 5

# ---------------------------------------------------------------------------
# Rewards
# ---------------------------------------------------------------------------
REWARD_SYSTEM_TIER = "tier"
REWARD_SYSTEM_RANK = "rank"
DEFAULT_LEADERBOARD_LIMIT = 100

# ---------------------------------------------------------------------------
# Platform enablement — a platform is live only when its secret is present
# ---------------------------------------------------------------------------
PLATFORM_SECRET_ENV: dict[str, str] = {
    "TELEGRAM": "TELEGRAM_BOT_TOKEN",
    "DISCORD": "DISCORD_BOT_TOKEN",
    "TWITTER": "TWITTER_API_KEY",
}

PRODUCTION_REQUIRED_ENV: tuple[str, ...] = ("DATABASE_URL", "REDIS_URL")

ENVIRONMENTS: tuple[str, ...] = ("development", "staging", "production")
