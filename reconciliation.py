"""
Result reconciliation — decides the winner once both players finished.

The outcome is written by one conditional UPDATE guarded on
``status = 'in_progress'``, in the same transaction as both players'
streak statistics. Whichever invocation wins that write applies the stats;
every other invocation (the second client, a retry, the feed subscriber)
re-reads the row and reports the stored outcome without touching stats.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cache_backend import invalidate_leaderboard
from challenge_notifications import notify_challenge_won
from challenge_state import ChallengeStatus, StaleTransitionError
from database import get_db
from db_stores import ChallengeStatsDB, ChallengeStoreDB
from realtime import EVENT_UPDATE, ChallengeFeed, ChangeEvent, publish
from streaks import apply_result, decide_outcome

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationResult:
    challenge_id: str
    winner_id: int | None
    is_draw: bool
    host_score: int
    opponent_score: int
    already_completed: bool = False

    def to_dict(self) -> dict:
        return {
            "success": True,
            "challengeId": self.challenge_id,
            "winnerId": self.winner_id,
            "isDraw": self.is_draw,
            "hostScore": self.host_score,
            "opponentScore": self.opponent_score,
            "alreadyCompleted": self.already_completed,
        }


def _stored_result(row: dict) -> ReconciliationResult:
    return ReconciliationResult(
        challenge_id=row["id"],
        winner_id=row["winner_id"],
        is_draw=bool(row["is_draw"]),
        host_score=row["host_score"] or 0,
        opponent_score=row["opponent_score"] or 0,
        already_completed=True,
    )


def _resolve_score(stored: int | None, requested) -> int:
    """Owner-written scores win; a request value only fills a missing one."""
    if stored is not None:
        return stored
    try:
        return max(0, int(requested))
    except (TypeError, ValueError):
        return 0


def process_challenge_result(challenge_id: str, host_score=None, opponent_score=None,
                             now: datetime | None = None) -> ReconciliationResult:
    now = now or datetime.now()
    row = ChallengeStoreDB.require(challenge_id)

    if row["status"] == ChallengeStatus.COMPLETED.value:
        return _stored_result(row)

    if row["status"] != ChallengeStatus.IN_PROGRESS.value or not (
        row["host_finished"] and row["opponent_finished"]
    ):
        raise StaleTransitionError(
            "Both players must finish before the result can be decided",
            row["status"], row["version"],
        )

    final_host = _resolve_score(row["host_score"], host_score)
    final_opponent = _resolve_score(row["opponent_score"], opponent_score)
    winner_id, is_draw = decide_outcome(row["host_id"], row["opponent_id"], final_host, final_opponent)

    db = get_db()
    try:
        # outcome and both stats rows commit or roll back together
        completed = ChallengeStoreDB.complete(
            challenge_id, winner_id, is_draw, final_host, final_opponent, now, commit=False,
        )
        today = now.date()
        new_stats = {}
        for uid in (completed["host_id"], completed["opponent_id"]):
            stats = apply_result(ChallengeStatsDB.get(uid), uid == winner_id, today)
            ChallengeStatsDB.save(stats, commit=False)
            new_stats[uid] = stats
        db.commit()
    except StaleTransitionError:
        db.rollback()
        current = ChallengeStoreDB.require(challenge_id)
        if current["status"] == ChallengeStatus.COMPLETED.value:
            logger.info("Challenge %s already reconciled by a concurrent call", challenge_id)
            return _stored_result(current)
        raise
    except Exception:
        db.rollback()
        raise

    publish(EVENT_UPDATE, completed)
    invalidate_leaderboard()
    logger.info(
        "Challenge %s completed: winner=%s draw=%s score=%d-%d",
        challenge_id, winner_id if winner_id is not None else "-", is_draw, final_host, final_opponent,
    )

    if winner_id is not None:
        notify_challenge_won(completed, winner_id, new_stats[winner_id].current_streak)

    return ReconciliationResult(
        challenge_id=challenge_id,
        winner_id=winner_id,
        is_draw=is_draw,
        host_score=final_host,
        opponent_score=final_opponent,
    )


@retry(
    retry=retry_if_exception_type(sqlite3.OperationalError),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    stop=stop_after_attempt(3),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def reconcile_with_retry(challenge_id: str) -> ReconciliationResult:
    """Reconcile with bounded backoff on transient database errors (e.g. locked)."""
    return process_challenge_result(challenge_id)


def _on_challenge_update(event: ChangeEvent) -> None:
    row = event.new
    if row.get("status") != ChallengeStatus.IN_PROGRESS.value:
        return
    if not (row.get("host_finished") and row.get("opponent_finished")):
        return
    try:
        reconcile_with_retry(row["id"])
    except StaleTransitionError:
        # lost the race to another trigger; the row is settled either way
        logger.debug("Auto-reconcile skipped for %s: state moved on", row["id"])


def register_auto_reconcile(feed: ChallengeFeed):
    """Reconcile as soon as a write leaves both finished flags set."""
    return feed.subscribe(_on_challenge_update, events=(EVENT_UPDATE,))
