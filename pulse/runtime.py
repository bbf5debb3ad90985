"""
pulse.runtime — Per-process Service Wiring
===========================================

Each process (API, scheduler) builds exactly one :class:`Services` at
startup and passes it to whatever needs it.  There are no module-level
singletons for the lock, the rule table or the contest manager.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis
from sqlalchemy import Engine

from pulse.config import PulseConfig
from pulse.database.engine import create_db_engine, init_db
from pulse.engine.rules import RuleBook
from pulse.services.contest_service import ContestManager
from pulse.services.engagement_service import EngagementTracker
from pulse.services.lock_service import DistributedLock, create_redis_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Services:
    engine: Engine
    redis: redis.Redis
    rules: RuleBook
    lock: DistributedLock
    tracker: EngagementTracker
    contests: ContestManager


def assemble_services(
    engine: Engine,
    redis_client: redis.Redis,
    rules: RuleBook,
) -> Services:
    lock = DistributedLock(redis_client)
    return Services(
        engine=engine,
        redis=redis_client,
        rules=rules,
        lock=lock,
        tracker=EngagementTracker(engine, rules),
        contests=ContestManager(engine, lock, rules),
    )


def build_services(cfg: PulseConfig) -> Services:
    """Build every service from the environment and *cfg*.

    Raises :class:`~pulse.errors.ConfigValidationError` when the rule table
    is invalid; callers treat that as fatal.
    """
    rules = RuleBook(cfg.environment, overrides_path=cfg.rules_path)
    engine = create_db_engine()
    if cfg.environment != "production":
        # Production schema is owned by Alembic.
        init_db(engine)
    services = assemble_services(engine, create_redis_client(), rules)
    logger.info(
        "Services ready for %s (env=%s)", cfg.community_name, cfg.environment
    )
    return services
