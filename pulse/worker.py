"""
pulse.worker — Contest Scheduler
=================================

Entry point for ``python -m pulse.worker``.  Every
``scheduler_interval_seconds`` it:

1. Ends the ACTIVE contest once its end time has passed (ranks + payout).
2. Starts the next round when ``auto_rotate_contests`` is on and nothing is
   live.  Uses ``replace_active=False`` so it never tramples a contest an
   admin started concurrently.
3. Expires PENDING rewards whose claim window has closed.

All three go through the same lock-guarded services the admin API uses, so
running several workers is safe.  A failed tick is logged and the loop
carries on.
"""

from __future__ import annotations

import asyncio
import logging
import os

from dotenv import load_dotenv

from pulse.config import PulseConfig, load_config
from pulse.database.engine import run_db
from pulse.errors import LockNotAcquiredError
from pulse.runtime import Services, build_services
from pulse.services import reward_service

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger("pulse.worker")


async def run_tick(services: Services, cfg: PulseConfig) -> dict:
    """One scheduler pass.  Returns what happened, for logging and tests."""
    report: dict = {"ended": None, "started": None, "expired": 0}

    try:
        summary = await run_db(services.contests.end_expired_contest)
        if summary is not None:
            report["ended"] = summary.to_dict()
            logger.info("Contest %d ended by scheduler", summary.contest_id)

        if cfg.auto_rotate_contests:
            contest = await run_db(services.contests.start_new_contest, replace_active=False)
            report["started"] = contest.id
    except LockNotAcquiredError:
        logger.info("Lifecycle lock busy; skipping contest transitions this tick")

    report["expired"] = await run_db(reward_service.expire_stale_rewards, services.engine)
    return report


async def run_forever(services: Services, cfg: PulseConfig) -> None:
    interval = cfg.scheduler_interval_seconds
    logger.info("Scheduler running every %ds (auto-rotate=%s)", interval, cfg.auto_rotate_contests)
    while True:
        try:
            await run_tick(services, cfg)
        except Exception:
            logger.exception("Scheduler tick failed")
        await asyncio.sleep(interval)


def main() -> None:
    """Bootstrap and run the scheduler."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
        datefmt="%H:%M:%S",
    )
    load_dotenv()
    cfg = load_config(os.getenv("PULSE_CONFIG", "config.yaml"))
    services = build_services(cfg)
    try:
        asyncio.run(run_forever(services, cfg))
    except KeyboardInterrupt:
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
