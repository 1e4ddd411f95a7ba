"""
Centralized Scheduler — Registers all periodic background jobs.

Jobs:
  - Stale challenge sweeper (every CHALLENGE_SWEEP_INTERVAL seconds): writes
    ``expired`` on pending challenges whose deadline passed and nobody observed
  - TTL cache cleanup (every 1 hour)
"""

from __future__ import annotations

import logging
import sqlite3

from apscheduler.schedulers.background import BackgroundScheduler

from cache_backend import get_cache
from db_stores import ChallengeStoreDB

logger = logging.getLogger(__name__)


def sweep_expired_challenges(app) -> list[str]:
    """Expire overdue pending challenges. Returns the ids that were expired."""
    with app.app_context():
        try:
            expired = ChallengeStoreDB.expire_stale()
        except sqlite3.Error as e:
            logger.error("Challenge sweep failed: %s", e)
            return []
        if expired:
            logger.info("Expired %d stale pending challenges", len(expired))
        return expired


def cleanup_cache() -> int:
    removed = get_cache().cleanup()
    if removed:
        logger.debug("Cache cleanup removed %d entries", removed)
    return removed


def init_scheduler(app) -> BackgroundScheduler:
    """Start a centralized background scheduler for all periodic jobs."""
    scheduler = BackgroundScheduler(daemon=True)

    scheduler.add_job(
        func=sweep_expired_challenges,
        args=[app],
        trigger="interval",
        seconds=app.config.get("CHALLENGE_SWEEP_INTERVAL", 60),
        id="challenge_sweeper",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    scheduler.add_job(
        func=cleanup_cache,
        trigger="interval",
        hours=1,
        id="cache_cleanup",
        replace_existing=True,
    )

    scheduler.start()
    app.logger.info("Centralized scheduler started (challenge sweeper, cache cleanup)")
    return scheduler
