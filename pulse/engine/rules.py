"""
pulse.engine.rules — Validated Rule Table
==========================================

Holds every gameplay number: points, cooldowns and daily limits per
``(platform, engagement type)``, contest defaults (round length,
qualification floor, tiers, rank prizes, claim window), the global daily
point cap and admin award bounds.

Load order (later wins):

    1. :data:`BASE_RULES`
    2. :data:`ENVIRONMENT_OVERRIDES` for the deployment tier
    3. Platform enablement from secrets (``TELEGRAM_BOT_TOKEN`` …)
    4. YAML overrides file, then in-code overrides

The merged mapping is validated once into frozen pydantic models.  Any
failure raises :class:`~pulse.errors.ConfigValidationError` naming the
offending field; the process must not start with a half-valid table.

Usage::

    rules = RuleBook("production", overrides_path="rules.yaml")
    rule = rules.rule_for("TELEGRAM", "MUSIC_SHARE")
    rule.points, rule.cooldown_seconds, rule.daily_limit
"""

from __future__ import annotations

import copy
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from pulse.constants import PLATFORM_SECRET_ENV, PRODUCTION_REQUIRED_ENV
from pulse.database.models import Platform, RewardType
from pulse.errors import (
    ConfigReloadForbiddenError,
    ConfigValidationError,
    new_correlation_id,
)

logger = logging.getLogger(__name__)

MAX_POINTS_PER_ACTION = 100


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------
class ActionRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    points: int = Field(ge=0, le=MAX_POINTS_PER_ACTION)
    cooldown_seconds: int | None = Field(default=None, ge=0)
    daily_limit: int | None = Field(default=None, ge=1)


class PlatformRules(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = False
    actions: dict[str, ActionRule] = Field(default_factory=dict)

    @field_validator("actions")
    @classmethod
    def _upper_case_keys(cls, actions: dict[str, ActionRule]) -> dict[str, ActionRule]:
        return {key.upper(): rule for key, rule in actions.items()}


class TierRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)
    threshold: int = Field(ge=0)
    reward_type: RewardType


class PrizeRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    rank: int = Field(ge=1)
    amount: float = Field(gt=0)
    reward_type: RewardType = RewardType.USDC


class ContestRules(BaseModel):
    """The part of the rule table snapshotted onto every contest row."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    round_duration_hours: int = Field(default=24, ge=1, le=168)
    min_points_to_qualify: int = Field(default=0, ge=0)
    claim_window_days: int = Field(default=7, ge=1)
    tiers: tuple[TierRule, ...] = ()
    prizes: tuple[PrizeRule, ...] = ()

    @field_validator("tiers")
    @classmethod
    def _tiers_strictly_ascending(cls, tiers: tuple[TierRule, ...]) -> tuple[TierRule, ...]:
        names = [t.name for t in tiers]
        if len(set(names)) != len(names):
            raise ValueError("tier names must be unique")
        for prev, cur in zip(tiers, tiers[1:]):
            if cur.threshold <= prev.threshold:
                raise ValueError(
                    f"tier thresholds must strictly ascend ({prev.name}@{prev.threshold} "
                    f"then {cur.name}@{cur.threshold})"
                )
        return tiers

    @field_validator("prizes")
    @classmethod
    def _prizes_strictly_decreasing(
        cls, prizes: tuple[PrizeRule, ...]
    ) -> tuple[PrizeRule, ...]:
        ordered = tuple(sorted(prizes, key=lambda p: p.rank))
        for expected, prize in enumerate(ordered, start=1):
            if prize.rank != expected:
                raise ValueError(f"prize ranks must be contiguous from 1 (missing rank {expected})")
        for prev, cur in zip(ordered, ordered[1:]):
            if cur.amount >= prev.amount:
                raise ValueError(
                    f"prize amounts must strictly decrease by rank "
                    f"(rank {prev.rank}={prev.amount}, rank {cur.rank}={cur.amount})"
                )
        return ordered


class RateLimits(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_points_per_day: int | None = Field(default=None, ge=1)


class AdminLimits(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_award: int = Field(default=1000, ge=1)


class RuleSet(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    platforms: dict[Platform, PlatformRules] = Field(default_factory=dict)
    contest: ContestRules = Field(default_factory=ContestRules)
    rate_limits: RateLimits = Field(default_factory=RateLimits)
    admin: AdminLimits = Field(default_factory=AdminLimits)

    @field_validator("platforms")
    @classmethod
    def _every_platform_present(
        cls, platforms: dict[Platform, PlatformRules]
    ) -> dict[Platform, PlatformRules]:
        return {p: platforms.get(p, PlatformRules()) for p in Platform}


# ---------------------------------------------------------------------------
# Base table and per-tier overrides
# ---------------------------------------------------------------------------
BASE_RULES: dict[str, Any] = {
    "platforms": {
        "TELEGRAM": {
            "actions": {
                "MESSAGE": {"points": 1, "cooldown_seconds": 60},
                "QUALITY_POST": {"points": 1, "cooldown_seconds": 300},
                "MENTION": {"points": 1, "cooldown_seconds": 180},
                "TEACHING_POST": {"points": 4, "cooldown_seconds": 900},
                "DAILY_ACTIVE": {"points": 2, "daily_limit": 1},
                "STREAK_BONUS": {"points": 5, "daily_limit": 1},
                "MUSIC_SHARE": {"points": 5, "cooldown_seconds": 60, "daily_limit": 10},
                "FACT_SHARE": {"points": 2, "daily_limit": 3},
                "INVITE": {"points": 10},
            },
        },
        "DISCORD": {
            "actions": {
                "QUALITY_POST": {"points": 1, "cooldown_seconds": 300},
                "DAILY_ACTIVE": {"points": 2, "daily_limit": 1},
                "STREAK_BONUS": {"points": 5, "daily_limit": 1},
                "VOICE_CHAT": {"points": 2, "cooldown_seconds": 300},
                "REACTION": {"points": 1, "cooldown_seconds": 60},
                "INVITE": {"points": 10},
            },
        },
        "TWITTER": {
            "actions": {
                "TWEET": {"points": 2, "cooldown_seconds": 300},
                "RETWEET": {"points": 1, "cooldown_seconds": 300},
                "MENTION": {"points": 3, "cooldown_seconds": 600},
                "DAILY_ACTIVE": {"points": 2, "daily_limit": 1},
                "STREAK_BONUS": {"points": 5, "daily_limit": 1},
            },
        },
    },
    "contest": {
        "round_duration_hours": 24,
        "min_points_to_qualify": 0,
        "claim_window_days": 7,
        "tiers": [
            {"name": "BRONZE", "threshold": 50, "reward_type": "WHITELIST"},
            {"name": "SILVER", "threshold": 100, "reward_type": "FREE_MINT"},
            {"name": "GOLD", "threshold": 200, "reward_type": "FREE_GAS"},
            {"name": "PLATINUM", "threshold": 300, "reward_type": "NO_FEES"},
            {"name": "DIAMOND", "threshold": 500, "reward_type": "SOUL"},
        ],
        "prizes": [
            {"rank": 1, "amount": 100},
            {"rank": 2, "amount": 75},
            {"rank": 3, "amount": 50},
            {"rank": 4, "amount": 25},
            {"rank": 5, "amount": 10},
        ],
    },
    "rate_limits": {"max_points_per_day": 1000},
    "admin": {"max_award": 1000},
}

ENVIRONMENT_OVERRIDES: dict[str, dict[str, Any]] = {
    "production": {
        "contest": {
            "min_points_to_qualify": 100,
            "round_duration_hours": 168,
            "prizes": [
                {"rank": 1, "amount": 250},
                {"rank": 2, "amount": 150},
                {"rank": 3, "amount": 100},
                {"rank": 4, "amount": 50},
                {"rank": 5, "amount": 25},
            ],
        },
        "rate_limits": {"max_points_per_day": 500},
    },
    "staging": {
        "contest": {"min_points_to_qualify": 50, "round_duration_hours": 24},
    },
    "development": {
        "contest": {"min_points_to_qualify": 0, "round_duration_hours": 1},
    },
}


# ---------------------------------------------------------------------------
# Merge + validate
# ---------------------------------------------------------------------------
def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursively merge *override* into a copy of *base*.  Lists are replaced."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _config_error(exc: ValidationError, correlation_id: str) -> ConfigValidationError:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return ConfigValidationError(
        f"Invalid rule configuration at {field}: {first.get('msg')}",
        field=field,
        value=first.get("input"),
        correlation_id=correlation_id,
    )


def build_rule_set(
    environment: str,
    *,
    env: Mapping[str, str] | None = None,
    overrides: list[Mapping[str, Any]] | None = None,
    correlation_id: str | None = None,
) -> RuleSet:
    """Merge the layers for *environment* and validate the result."""
    env = os.environ if env is None else env
    correlation_id = correlation_id or new_correlation_id()

    if environment not in ENVIRONMENT_OVERRIDES:
        raise ConfigValidationError(
            f"Unknown environment {environment!r}",
            field="environment",
            value=environment,
            correlation_id=correlation_id,
        )

    if environment == "production":
        for name in PRODUCTION_REQUIRED_ENV:
            if not env.get(name):
                raise ConfigValidationError(
                    f"{name} must be set in production",
                    field=f"env.{name}",
                    value=None,
                    correlation_id=correlation_id,
                )

    raw = deep_merge(BASE_RULES, ENVIRONMENT_OVERRIDES[environment])

    platforms = raw.setdefault("platforms", {})
    for platform, secret_name in PLATFORM_SECRET_ENV.items():
        platforms.setdefault(platform, {})["enabled"] = bool(env.get(secret_name))

    for layer in overrides or []:
        if layer:
            raw = deep_merge(raw, layer)

    try:
        return RuleSet.model_validate(raw)
    except ValidationError as exc:
        raise _config_error(exc, correlation_id) from exc


def parse_contest_rules(
    raw: Mapping[str, Any], correlation_id: str | None = None
) -> ContestRules:
    """Validate an admin-supplied contest rules mapping."""
    try:
        return ContestRules.model_validate(dict(raw))
    except ValidationError as exc:
        raise _config_error(exc, correlation_id or new_correlation_id()) from exc


def _read_overrides_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Rule overrides file not found: {path.resolve()}")
    with open(path, encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    if not isinstance(data, dict):
        raise ConfigValidationError(
            f"Rule overrides in {path} must be a mapping",
            field="<root>",
            value=type(data).__name__,
        )
    return data


# ---------------------------------------------------------------------------
# RuleBook — read-only accessor with non-production hot reload
# ---------------------------------------------------------------------------
class RuleBook:
    """The validated rule table for one process.

    Constructed once at startup and passed to the services that need it.
    ``reload()`` swaps in a freshly validated table; the previous table
    stays in place if validation fails.
    """

    def __init__(
        self,
        environment: str = "development",
        *,
        overrides_path: str | Path | None = None,
        overrides: Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._environment = environment
        self._overrides_path = Path(overrides_path) if overrides_path else None
        self._overrides = dict(overrides or {})
        self._env = env
        self._correlation_id = new_correlation_id()
        self._rules = self._load(self._correlation_id)
        logger.info(
            "Rule table loaded (env=%s, enabled=%s, correlation=%s)",
            environment,
            ",".join(p.value for p in self.enabled_platforms()) or "none",
            self._correlation_id,
        )

    def _load(self, correlation_id: str) -> RuleSet:
        layers: list[Mapping[str, Any]] = []
        if self._overrides_path is not None:
            layers.append(_read_overrides_file(self._overrides_path))
        layers.append(self._overrides)
        return build_rule_set(
            self._environment,
            env=self._env,
            overrides=layers,
            correlation_id=correlation_id,
        )

    # -- Accessors ----------------------------------------------------------
    @property
    def environment(self) -> str:
        return self._environment

    @property
    def correlation_id(self) -> str:
        return self._correlation_id

    @property
    def rules(self) -> RuleSet:
        return self._rules

    @property
    def contest(self) -> ContestRules:
        return self._rules.contest

    @property
    def rate_limits(self) -> RateLimits:
        return self._rules.rate_limits

    @property
    def admin(self) -> AdminLimits:
        return self._rules.admin

    def platform(self, platform: str) -> PlatformRules | None:
        try:
            key = Platform(platform.upper())
        except ValueError:
            return None
        return self._rules.platforms[key]

    def is_platform_enabled(self, platform: str) -> bool:
        rules = self.platform(platform)
        return rules is not None and rules.enabled

    def enabled_platforms(self) -> list[Platform]:
        return [p for p, r in self._rules.platforms.items() if r.enabled]

    def rule_for(self, platform: str, engagement_type: str) -> ActionRule | None:
        rules = self.platform(platform)
        if rules is None:
            return None
        return rules.actions.get(engagement_type.upper())

    # -- Hot reload ---------------------------------------------------------
    def reload(self) -> RuleSet:
        """Re-read and re-validate every layer.  Refused in production."""
        if self._environment == "production":
            raise ConfigReloadForbiddenError(
                "Rule hot-reload is disabled in production",
                context={"environment": self._environment},
            )
        correlation_id = new_correlation_id()
        rules = self._load(correlation_id)
        self._rules = rules
        self._correlation_id = correlation_id
        logger.info("Rule table reloaded (correlation=%s)", correlation_id)
        return rules
