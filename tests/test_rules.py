"""
tests/test_rules.py — Rule Table Loading & Validation
======================================================
Environment overrides, platform enablement from secrets, schema
validation failures and the production hot-reload guard.
"""

from __future__ import annotations

import pytest
import yaml

from pulse.database.models import Platform, RewardType
from pulse.engine.rules import (
    BASE_RULES,
    RuleBook,
    build_rule_set,
    deep_merge,
    parse_contest_rules,
)
from pulse.errors import ConfigReloadForbiddenError, ConfigValidationError
from conftest import ALL_PLATFORM_SECRETS

PRODUCTION_ENV = {**ALL_PLATFORM_SECRETS, "DATABASE_URL": "postgresql://x", "REDIS_URL": "redis://x"}


class TestDeepMerge:
    def test_nested_keys_merge(self):
        merged = deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}})
        assert merged == {"a": {"b": 1, "c": 3}}

    def test_lists_are_replaced(self):
        merged = deep_merge({"a": [1, 2, 3]}, {"a": [9]})
        assert merged == {"a": [9]}

    def test_base_is_not_mutated(self):
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}


class TestEnvironments:
    def test_development_defaults(self):
        rules = build_rule_set("development", env={})
        assert rules.contest.min_points_to_qualify == 0
        assert rules.contest.round_duration_hours == 1

    def test_staging_overrides(self):
        rules = build_rule_set("staging", env={})
        assert rules.contest.min_points_to_qualify == 50
        assert rules.contest.round_duration_hours == 24

    def test_production_overrides(self):
        rules = build_rule_set("production", env=PRODUCTION_ENV)
        assert rules.contest.min_points_to_qualify == 100
        assert rules.contest.round_duration_hours == 168
        assert [p.amount for p in rules.contest.prizes] == [250, 150, 100, 50, 25]
        assert rules.rate_limits.max_points_per_day == 500

    def test_production_requires_infrastructure_env(self):
        env = {k: v for k, v in PRODUCTION_ENV.items() if k != "REDIS_URL"}
        with pytest.raises(ConfigValidationError) as exc:
            build_rule_set("production", env=env)
        assert exc.value.field == "env.REDIS_URL"

    def test_unknown_environment(self):
        with pytest.raises(ConfigValidationError) as exc:
            build_rule_set("qa", env={})
        assert exc.value.field == "environment"


class TestPlatformEnablement:
    def test_no_secrets_no_platforms(self):
        book = RuleBook("development", env={})
        assert book.enabled_platforms() == []
        assert not book.is_platform_enabled("TELEGRAM")

    def test_platform_enabled_by_its_secret(self):
        book = RuleBook("development", env={"DISCORD_BOT_TOKEN": "x"})
        assert book.enabled_platforms() == [Platform.DISCORD]
        assert book.is_platform_enabled("discord")

    def test_unknown_platform_is_never_enabled(self):
        book = RuleBook("development", env=ALL_PLATFORM_SECRETS)
        assert not book.is_platform_enabled("MYSPACE")
        assert book.platform("MYSPACE") is None


class TestRuleLookup:
    def test_music_share_rule(self, rulebook):
        rule = rulebook.rule_for("TELEGRAM", "MUSIC_SHARE")
        assert (rule.points, rule.cooldown_seconds, rule.daily_limit) == (5, 60, 10)

    def test_lookup_is_case_insensitive(self, rulebook):
        assert rulebook.rule_for("telegram", "music_share") == rulebook.rule_for(
            "TELEGRAM", "MUSIC_SHARE"
        )

    def test_missing_type(self, rulebook):
        assert rulebook.rule_for("TWITTER", "MUSIC_SHARE") is None

    def test_override_keys_are_upper_cased(self):
        book = RuleBook(
            "development",
            env=ALL_PLATFORM_SECRETS,
            overrides={"platforms": {"TWITTER": {"actions": {"space_join": {"points": 3}}}}},
        )
        assert book.rule_for("TWITTER", "SPACE_JOIN").points == 3
        # existing actions survive the merge
        assert book.rule_for("TWITTER", "TWEET").points == 2


class TestValidation:
    def test_points_above_ceiling_rejected(self):
        with pytest.raises(ConfigValidationError) as exc:
            RuleBook(
                "development",
                env={},
                overrides={"platforms": {"TELEGRAM": {"actions": {"MESSAGE": {"points": 500}}}}},
            )
        assert exc.value.field.endswith("points")
        assert exc.value.code == "CONFIG_VALIDATION_ERROR"

    def test_negative_cooldown_rejected(self):
        with pytest.raises(ConfigValidationError):
            RuleBook(
                "development",
                env={},
                overrides={
                    "platforms": {"TELEGRAM": {"actions": {"MESSAGE": {"points": 1, "cooldown_seconds": -1}}}}
                },
            )

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigValidationError):
            RuleBook("development", env={}, overrides={"contest": {"bonus_multiplier": 2}})

    def test_tiers_must_ascend(self):
        with pytest.raises(ConfigValidationError) as exc:
            parse_contest_rules({
                "tiers": [
                    {"name": "SILVER", "threshold": 100, "reward_type": "FREE_MINT"},
                    {"name": "BRONZE", "threshold": 50, "reward_type": "WHITELIST"},
                ]
            })
        assert "tiers" in exc.value.field

    def test_prizes_must_strictly_decrease(self):
        with pytest.raises(ConfigValidationError):
            parse_contest_rules({"prizes": [{"rank": 1, "amount": 10}, {"rank": 2, "amount": 10}]})

    def test_prize_ranks_must_be_contiguous(self):
        with pytest.raises(ConfigValidationError):
            parse_contest_rules({"prizes": [{"rank": 1, "amount": 10}, {"rank": 3, "amount": 5}]})

    def test_round_duration_bounds(self):
        with pytest.raises(ConfigValidationError):
            parse_contest_rules({"round_duration_hours": 0})

    def test_valid_contest_rules(self):
        rules = parse_contest_rules(BASE_RULES["contest"])
        assert [t.name for t in rules.tiers] == ["BRONZE", "SILVER", "GOLD", "PLATINUM", "DIAMOND"]
        assert rules.tiers[1].reward_type is RewardType.FREE_MINT


class TestReload:
    def test_reload_forbidden_in_production(self):
        book = RuleBook("production", env=PRODUCTION_ENV)
        with pytest.raises(ConfigReloadForbiddenError):
            book.reload()

    def test_reload_picks_up_file_changes(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(yaml.safe_dump({"rate_limits": {"max_points_per_day": 40}}))
        book = RuleBook("development", env={}, overrides_path=path)
        first_correlation = book.correlation_id
        assert book.rate_limits.max_points_per_day == 40

        path.write_text(yaml.safe_dump({"rate_limits": {"max_points_per_day": 80}}))
        book.reload()
        assert book.rate_limits.max_points_per_day == 80
        assert book.correlation_id != first_correlation

    def test_failed_reload_keeps_previous_table(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(yaml.safe_dump({"admin": {"max_award": 10}}))
        book = RuleBook("development", env={}, overrides_path=path)

        path.write_text(yaml.safe_dump({"admin": {"max_award": 0}}))
        with pytest.raises(ConfigValidationError):
            book.reload()
        assert book.admin.max_award == 10

    def test_missing_overrides_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            RuleBook("development", env={}, overrides_path=tmp_path / "nope.yaml")
