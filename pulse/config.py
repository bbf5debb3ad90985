"""
pulse.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for **infrastructure-only** settings (identity,
deployment tier, scheduler cadence, dashboard port).  Point values,
cooldowns, tiers and prize tables live in the rule table
(:mod:`pulse.engine.rules`), which may be overridden by the YAML file
named in ``rules_path``.  Secrets (DATABASE_URL, REDIS_URL, JWT_SECRET,
bot tokens) come from ``.env`` via python-dotenv, never from this file.

Usage::

    from pulse.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.environment)       # "development"
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import yaml

from pulse.constants import ENVIRONMENTS


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PulseConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Deployment tier — selects rule-table overrides
    environment: str = "development"

    # Dashboard / API
    dashboard_port: int = 8000

    # Scheduler
    scheduler_interval_seconds: int = 60
    auto_rotate_contests: bool = True

    # Optional rule-table overrides (YAML, merged last)
    rules_path: str | None = None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def resolve_environment(value: str | None = None) -> str:
    """Return the deployment tier, defaulting to ``PULSE_ENV`` then development."""
    env = (value or os.getenv("PULSE_ENV") or "development").strip().lower()
    if env not in ENVIRONMENTS:
        raise ValueError(
            f"Unknown environment {env!r}; expected one of {', '.join(ENVIRONMENTS)}"
        )
    return env


def load_config(path: str | Path = "config.yaml") -> PulseConfig:
    """Read *path* and return a :class:`PulseConfig` instance.

    ``PULSE_ENV`` in the environment wins over the file's ``environment``
    key so one config file can be promoted between tiers.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    return PulseConfig(
        community_name=raw["community_name"],
        environment=resolve_environment(os.getenv("PULSE_ENV") or raw.get("environment")),
        dashboard_port=int(raw.get("dashboard_port", 8000)),
        scheduler_interval_seconds=int(raw.get("scheduler_interval_seconds", 60)),
        auto_rotate_contests=bool(raw.get("auto_rotate_contests", True)),
        rules_path=raw.get("rules_path") or None,
    )
