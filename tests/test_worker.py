"""
tests/test_worker.py — Scheduler Tick & Config Loading
=======================================================
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest
import yaml
from sqlalchemy import create_engine, inspect, select, update
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from pulse import runtime
from pulse.api import __main__ as api_main
from pulse.config import PulseConfig, load_config, resolve_environment
from pulse.constants import LIFECYCLE_LOCK_KEY
from pulse.database.models import Contest, ContestStatus
from pulse.engine.clock import utcnow
from pulse.runtime import build_services
from pulse.services.contest_service import ContestManager
from pulse.services.lock_service import DistributedLock
from pulse.worker import run_tick


@pytest.fixture
def cfg() -> PulseConfig:
    return PulseConfig(community_name="Test Community")


def _expire_active(engine) -> int:
    with Session(engine) as session:
        contest_id = session.scalar(select(Contest.id).where(Contest.status == ContestStatus.ACTIVE))
        session.execute(
            update(Contest)
            .where(Contest.id == contest_id)
            .values(end_time=utcnow() - timedelta(minutes=1))
        )
        session.commit()
    return contest_id


class TestRunTick:
    def test_starts_first_contest(self, services, cfg):
        report = asyncio.run(run_tick(services, cfg))
        assert report["ended"] is None
        assert report["started"] is not None
        assert services.contests.get_current_contest().id == report["started"]

    def test_idle_tick_keeps_current_contest(self, services, cfg):
        first = asyncio.run(run_tick(services, cfg))
        second = asyncio.run(run_tick(services, cfg))
        assert second["started"] == first["started"]
        assert second["ended"] is None

    def test_rotates_expired_contest(self, services, cfg, db_engine):
        services.contests.start_new_contest(name="Old")
        old_id = _expire_active(db_engine)

        report = asyncio.run(run_tick(services, cfg))
        assert report["ended"]["contest_id"] == old_id
        assert report["started"] != old_id
        with Session(db_engine) as session:
            assert session.get(Contest, old_id).status == ContestStatus.COMPLETED

    def test_no_rotation_when_disabled(self, services, db_engine):
        cfg = PulseConfig(community_name="Test", auto_rotate_contests=False)
        services.contests.start_new_contest(name="Old")
        _expire_active(db_engine)

        report = asyncio.run(run_tick(services, cfg))
        assert report["ended"] is not None
        assert report["started"] is None
        assert services.contests.get_current_contest() is None

    def test_paused_contest_left_alone(self, services, cfg):
        contest = services.contests.start_new_contest()
        services.contests.pause_contest()
        report = asyncio.run(run_tick(services, cfg))
        assert report["started"] == contest.id
        assert services.contests.get_contest(contest.id).status == ContestStatus.PAUSED

    def test_busy_lock_skips_transitions(self, services, cfg, redis_client):
        impatient = DistributedLock(redis_client, max_retries=0)
        busy = replace(
            services,
            lock=impatient,
            contests=ContestManager(services.engine, impatient, services.rules),
        )
        impatient.acquire(LIFECYCLE_LOCK_KEY, ttl_ms=60_000)
        report = asyncio.run(run_tick(busy, cfg))
        assert report == {"ended": None, "started": None, "expired": 0}


class TestConfig:
    def test_load_config(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PULSE_ENV", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "community_name": "Pulse Test",
            "environment": "staging",
            "scheduler_interval_seconds": 15,
            "auto_rotate_contests": False,
        }))
        cfg = load_config(path)
        assert cfg.community_name == "Pulse Test"
        assert cfg.environment == "staging"
        assert cfg.scheduler_interval_seconds == 15
        assert cfg.auto_rotate_contests is False
        assert cfg.rules_path is None

    def test_env_var_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PULSE_ENV", "production")
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"community_name": "X", "environment": "staging"}))
        assert load_config(path).environment == "production"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="config.yaml.example"):
            load_config(tmp_path / "config.yaml")

    def test_unknown_environment(self, monkeypatch):
        monkeypatch.delenv("PULSE_ENV", raising=False)
        with pytest.raises(ValueError):
            resolve_environment("qa")


class TestStartup:
    @pytest.fixture
    def bare_engine(self, monkeypatch, redis_client):
        engine = create_engine("sqlite://", poolclass=StaticPool)
        monkeypatch.setattr(runtime, "create_db_engine", lambda: engine)
        monkeypatch.setattr(runtime, "create_redis_client", lambda: redis_client)
        return engine

    def test_development_creates_tables(self, bare_engine):
        services = build_services(PulseConfig(community_name="Dev"))
        assert services.engine is bare_engine
        assert "user_streaks" in inspect(bare_engine).get_table_names()

    def test_production_leaves_schema_to_migrations(self, bare_engine, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://x")
        monkeypatch.setenv("REDIS_URL", "redis://x")
        build_services(PulseConfig(community_name="Prod", environment="production"))
        assert inspect(bare_engine).get_table_names() == []

    def test_api_serves_on_dashboard_port(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"community_name": "X", "dashboard_port": 8123}))
        monkeypatch.setenv("PULSE_CONFIG", str(path))
        calls = []
        monkeypatch.setattr(api_main.uvicorn, "run", lambda app, **kw: calls.append((app, kw)))

        api_main.main()

        assert calls[0][0] == "pulse.api.main:app"
        assert calls[0][1]["port"] == 8123
