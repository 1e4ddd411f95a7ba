"""Tests for the periodic jobs."""

from __future__ import annotations

import sqlite3
import time
from datetime import datetime, timedelta
from unittest.mock import patch

from db_stores import ChallengeStoreDB
from scheduler import cleanup_cache, init_scheduler, sweep_expired_challenges


def test_sweep_expires_only_overdue_pending(app, make_challenge):
    overdue = make_challenge(now=datetime.now() - timedelta(minutes=2))
    fresh = make_challenge()
    assert sweep_expired_challenges(app) == [overdue["id"]]
    assert sweep_expired_challenges(app) == []
    with app.app_context():
        assert ChallengeStoreDB.get(overdue["id"])["status"] == "expired"
        assert ChallengeStoreDB.get(fresh["id"])["status"] == "pending"


def test_sweep_survives_database_errors(app):
    with patch.object(ChallengeStoreDB, "expire_stale", side_effect=sqlite3.OperationalError("locked")):
        assert sweep_expired_challenges(app) == []


def test_cleanup_cache(app):
    from cache_backend import get_cache
    get_cache().set("gone", "v", ttl=0)
    get_cache().set("kept", "v", ttl=60)
    time.sleep(0.01)
    assert cleanup_cache() >= 1
    assert get_cache().get("kept") == "v"


def test_init_scheduler_registers_jobs(app):
    app.config["CHALLENGE_SWEEP_INTERVAL"] = 15
    scheduler = init_scheduler(app)
    try:
        jobs = {job.id: job for job in scheduler.get_jobs()}
        assert set(jobs) == {"challenge_sweeper", "cache_cleanup"}
        assert jobs["challenge_sweeper"].trigger.interval == timedelta(seconds=15)
        assert jobs["challenge_sweeper"].max_instances == 1
    finally:
        scheduler.shutdown(wait=False)
