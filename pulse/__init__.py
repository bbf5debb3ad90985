"""
Pulse — Cross-Platform Engagement Rewards
==========================================
Turns engagement on Telegram, Discord and Twitter into points, runs
time-boxed contests over those points, and pays out tiered and ranked
rewards exactly once per contest.

Package layout::

    pulse/
    ├── config.py          # YAML → typed infrastructure config
    ├── constants.py       # Lock keys, expiry windows, env var names
    ├── errors.py          # PulseError taxonomy (code + HTTP status)
    ├── runtime.py         # Services container built once per process
    ├── worker.py          # Scheduler loop (``python -m pulse.worker``)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models
    ├── engine/
    │   ├── clock.py       # UTC helpers
    │   ├── events.py      # EngagementEvent / EngagementOutcome
    │   ├── rules.py       # Validated rule table (RuleBook)
    │   └── tiers.py       # Pure tier / rank resolution
    ├── services/
    │   ├── lock_service.py        # Redis-backed distributed lock
    │   ├── engagement_service.py  # Cooldown / daily-limit point awards
    │   ├── contest_service.py     # Contest state machine
    │   ├── reward_service.py      # Distribution + claims
    │   ├── verification_service.py # Platform account linking
    │   ├── stats_service.py       # Read-only projections
    │   └── admin_service.py       # Audit-logged admin mutations
    └── api/
        ├── __main__.py    # uvicorn entry point (``python -m pulse.api``)
        ├── main.py        # FastAPI app
        ├── deps.py        # JWT / adapter-key / services dependencies
        └── routes/        # Public, platform-adapter and admin endpoints
"""

__version__ = "0.1.0"
