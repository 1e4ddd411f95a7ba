"""Tests for result reconciliation and the automatic trigger."""

from __future__ import annotations

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from unittest.mock import patch

import pytest
from tenacity import wait_none

import challenge_service
from cache_backend import LEADERBOARD_KEY_PREFIX, get_cache
from challenge_state import ChallengeNotFoundError, StaleTransitionError
from db_stores import ChallengeStatsDB, ChallengeStoreDB, NotificationStoreDB
from reconciliation import (
    ReconciliationResult,
    process_challenge_result,
    reconcile_with_retry,
)
from streaks import ChallengeStats
from tests.conftest import HOST_ID, OPPONENT_ID


def _finish_both(row, host_score, opponent_score):
    ChallengeStoreDB.finish(row["id"], "host", host_score)
    return ChallengeStoreDB.finish(row["id"], "opponent", opponent_score)


@pytest.mark.no_auto_reconcile
class TestProcessResult:
    def test_requires_both_finished(self, db, running_challenge):
        row = running_challenge()
        ChallengeStoreDB.finish(row["id"], "host", 3)
        with pytest.raises(StaleTransitionError):
            process_challenge_result(row["id"])

    def test_missing_challenge(self, db):
        with pytest.raises(ChallengeNotFoundError):
            process_challenge_result("missing")

    def test_host_wins(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 4, 2)
        result = process_challenge_result(row["id"])
        assert result.winner_id == HOST_ID
        assert result.is_draw is False
        assert result.already_completed is False

        stored = ChallengeStoreDB.get(row["id"])
        assert stored["status"] == "completed"
        assert stored["winner_id"] == HOST_ID
        assert stored["completed_at"]

        host, opp = ChallengeStatsDB.get(HOST_ID), ChallengeStatsDB.get(OPPONENT_ID)
        assert (host.current_streak, host.total_wins, host.total_challenges) == (1, 1, 1)
        assert (opp.current_streak, opp.total_wins, opp.total_challenges) == (0, 0, 1)

    def test_opponent_wins(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 0, 1)
        assert process_challenge_result(row["id"]).winner_id == OPPONENT_ID

    def test_zero_zero_is_draw(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 0, 0)
        result = process_challenge_result(row["id"])
        assert result.is_draw is True
        assert result.winner_id is None

    def test_second_call_returns_original_outcome(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 4, 2)
        first = process_challenge_result(row["id"])
        completed_at = ChallengeStoreDB.get(row["id"])["completed_at"]

        second = process_challenge_result(row["id"], host_score=0, opponent_score=5)
        assert second.already_completed is True
        assert (second.winner_id, second.is_draw) == (first.winner_id, first.is_draw)
        assert (second.host_score, second.opponent_score) == (4, 2)
        assert ChallengeStoreDB.get(row["id"])["completed_at"] == completed_at
        assert ChallengeStatsDB.get(HOST_ID).total_challenges == 1

    def test_owner_scores_beat_request_scores(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 1, 3)
        result = process_challenge_result(row["id"], host_score=5, opponent_score=0)
        assert (result.host_score, result.opponent_score) == (1, 3)
        assert result.winner_id == OPPONENT_ID

    def test_losing_the_race_skips_stats(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 2, 1)
        real_complete = ChallengeStoreDB.complete

        def concurrent_winner(*args, **kwargs):
            # another invocation commits first; this one then matches zero rows
            real_complete(*args, **{**kwargs, "commit": True})
            raise StaleTransitionError("Challenge already completed", "completed", 99)

        with patch.object(ChallengeStoreDB, "complete", side_effect=concurrent_winner):
            result = process_challenge_result(row["id"])

        assert result.already_completed is True
        assert result.winner_id == HOST_ID
        assert ChallengeStatsDB.get(HOST_ID).total_challenges == 0

    def test_invalidates_leaderboard(self, db, running_challenge):
        cache = get_cache()
        cache.set(f"{LEADERBOARD_KEY_PREFIX}50", [{"user_id": 9}], 30)
        row = running_challenge()
        _finish_both(row, 2, 1)
        process_challenge_result(row["id"])
        assert cache.get(f"{LEADERBOARD_KEY_PREFIX}50") is None

    def test_winner_notified(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 1, 3)
        process_challenge_result(row["id"])
        notifs = NotificationStoreDB(OPPONENT_ID).recent()
        assert any(n.type == "challenge_won" for n in notifs)
        assert not any(n.type == "challenge_won" for n in NotificationStoreDB(HOST_ID).recent())

    def test_to_dict(self):
        body = ReconciliationResult("c1", 1, False, 3, 2).to_dict()
        assert body == {
            "success": True, "challengeId": "c1", "winnerId": 1, "isDraw": False,
            "hostScore": 3, "opponentScore": 2, "alreadyCompleted": False,
        }


@pytest.mark.no_auto_reconcile
class TestRetry:
    def test_retries_locked_database(self, db):
        ok = ReconciliationResult("c1", None, True, 0, 0)
        with patch("reconciliation.process_challenge_result",
                   side_effect=[sqlite3.OperationalError("database is locked"), ok]) as m:
            assert reconcile_with_retry.retry_with(wait=wait_none())("c1") is ok
        assert m.call_count == 2

    def test_failed_stats_write_rolls_back_outcome(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 5, 2)
        real_save = ChallengeStatsDB.save
        calls = []

        def locked_on_second_player(stats, commit=True):
            calls.append(stats.user_id)
            if len(calls) == 2:
                raise sqlite3.OperationalError("database is locked")
            return real_save(stats, commit=commit)

        with patch.object(ChallengeStatsDB, "save", side_effect=locked_on_second_player):
            with pytest.raises(sqlite3.OperationalError):
                process_challenge_result(row["id"])

        stored = ChallengeStoreDB.get(row["id"])
        assert stored["status"] == "in_progress"
        assert stored["winner_id"] is None
        assert ChallengeStatsDB.get(HOST_ID).total_challenges == 0

    def test_retry_after_failed_stats_write_applies_stats_once(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 5, 2)
        real_save = ChallengeStatsDB.save
        calls = []

        def locked_once(stats, commit=True):
            calls.append(stats.user_id)
            if len(calls) == 2:
                raise sqlite3.OperationalError("database is locked")
            return real_save(stats, commit=commit)

        with patch.object(ChallengeStatsDB, "save", side_effect=locked_once):
            result = reconcile_with_retry.retry_with(wait=wait_none())(row["id"])

        assert result.winner_id == HOST_ID
        assert result.already_completed is False
        assert len(calls) == 4
        assert ChallengeStoreDB.get(row["id"])["status"] == "completed"
        host, opp = ChallengeStatsDB.get(HOST_ID), ChallengeStatsDB.get(OPPONENT_ID)
        assert (host.current_streak, host.total_wins, host.total_challenges) == (1, 1, 1)
        assert (opp.total_wins, opp.total_challenges) == (0, 1)

    def test_gives_up_after_three_attempts(self, db):
        with patch("reconciliation.process_challenge_result",
                   side_effect=sqlite3.OperationalError("database is locked")) as m:
            with pytest.raises(sqlite3.OperationalError):
                reconcile_with_retry.retry_with(wait=wait_none())("c1")
        assert m.call_count == 3

    def test_protocol_errors_are_not_retried(self, db):
        with patch("reconciliation.process_challenge_result",
                   side_effect=StaleTransitionError("not finished")) as m:
            with pytest.raises(StaleTransitionError):
                reconcile_with_retry("c1")
        assert m.call_count == 1


@pytest.mark.no_auto_reconcile
class TestConcurrentReconcile:
    def test_racing_calls_apply_stats_once(self, app, running_challenge):
        row = running_challenge()
        with app.app_context():
            _finish_both(row, 3, 1)

        barrier = threading.Barrier(2)

        def reconcile():
            with app.app_context():
                barrier.wait()
                return process_challenge_result(row["id"])

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(reconcile) for _ in range(2)]
            results = [f.result(timeout=30) for f in futures]

        assert sorted(r.already_completed for r in results) == [False, True]
        assert {(r.winner_id, r.host_score, r.opponent_score) for r in results} == {(HOST_ID, 3, 1)}
        with app.app_context():
            host, opp = ChallengeStatsDB.get(HOST_ID), ChallengeStatsDB.get(OPPONENT_ID)
            assert (host.current_streak, host.total_wins, host.total_challenges) == (1, 1, 1)
            assert (opp.total_wins, opp.total_challenges) == (0, 1)


@pytest.mark.no_auto_reconcile
class TestEndToEnd:
    def test_even_scores_draw(self, app, db):
        row = challenge_service.create_direct_challenge(HOST_ID, OPPONENT_ID, "Mathematics", 60, app.config)
        assert len(row["questions"]) == 5
        challenge_service.accept(row["id"], OPPONENT_ID)
        challenge_service.mark_ready(row["id"], HOST_ID)
        challenge_service.mark_ready(row["id"], OPPONENT_ID)
        challenge_service.finish(row["id"], HOST_ID, 3)
        challenge_service.finish(row["id"], OPPONENT_ID, 3)

        result = process_challenge_result(row["id"], 3, 3)
        assert result.is_draw is True
        assert result.winner_id is None
        for uid in (HOST_ID, OPPONENT_ID):
            stats = ChallengeStatsDB.get(uid)
            assert stats.current_streak == 0
            assert stats.total_challenges == 1

    def test_streak_crosses_into_next_tier(self, app, db):
        today = date.today().isoformat()
        ChallengeStatsDB.save(ChallengeStats(HOST_ID, 9, 9, 9, 12, today))
        row = challenge_service.create_direct_challenge(HOST_ID, OPPONENT_ID, "Mathematics", 120, app.config)
        assert row["difficulty"] == "medium"
        assert len(row["questions"]) == 10

        challenge_service.accept(row["id"], OPPONENT_ID)
        challenge_service.mark_ready(row["id"], HOST_ID)
        challenge_service.mark_ready(row["id"], OPPONENT_ID)
        challenge_service.finish(row["id"], HOST_ID, 5)
        challenge_service.finish(row["id"], OPPONENT_ID, 2)

        result = process_challenge_result(row["id"])
        assert result.winner_id == HOST_ID
        host = ChallengeStatsDB.get(HOST_ID)
        assert host.current_streak == 10
        assert host.highest_streak == 10
        assert host.total_wins == 10


class TestAutoReconcile:
    def test_second_finish_decides_result(self, db, running_challenge):
        row = running_challenge()
        ChallengeStoreDB.finish(row["id"], "host", 1)
        assert ChallengeStoreDB.get(row["id"])["status"] == "in_progress"

        ChallengeStoreDB.finish(row["id"], "opponent", 4)
        stored = ChallengeStoreDB.get(row["id"])
        assert stored["status"] == "completed"
        assert stored["winner_id"] == OPPONENT_ID
        assert ChallengeStatsDB.get(OPPONENT_ID).current_streak == 1
        assert ChallengeStatsDB.get(HOST_ID).total_challenges == 1

    def test_manual_call_after_trigger_is_idempotent(self, db, running_challenge):
        row = running_challenge()
        _finish_both(row, 2, 2)
        result = process_challenge_result(row["id"], 5, 0)
        assert result.already_completed is True
        assert result.is_draw is True
        assert ChallengeStatsDB.get(HOST_ID).total_challenges == 1

    def test_finish_response_shows_result(self, running_challenge, auth_client, opponent_client):
        row = running_challenge()
        auth_client.post(f"/api/challenges/{row['id']}/finish", json={"score": 3})
        resp = opponent_client.post(f"/api/challenges/{row['id']}/finish", json={"score": 1})
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["challenge"]["status"] == "completed"
        assert data["view"]["screen"] == "result"
        assert data["view"]["outcome"] == "lost"


class TestProcessResultEndpoint:
    def test_returns_stored_result(self, app, running_challenge, auth_client):
        row = running_challenge()
        with app.app_context():
            _finish_both(row, 3, 1)
        resp = auth_client.post("/api/functions/process-challenge-result", json={
            "challengeId": row["id"], "hostScore": 0, "opponentScore": 5,
        })
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["success"] is True
        assert data["winnerId"] == HOST_ID
        assert data["alreadyCompleted"] is True

    def test_not_finished_is_409(self, running_challenge, auth_client):
        row = running_challenge()
        resp = auth_client.post("/api/functions/process-challenge-result", json={"challengeId": row["id"]})
        assert resp.status_code == 409
        assert resp.get_json()["currentStatus"] == "in_progress"

    def test_outsider_is_403(self, running_challenge, outsider_client):
        row = running_challenge()
        resp = outsider_client.post("/api/functions/process-challenge-result", json={"challengeId": row["id"]})
        assert resp.status_code == 403

    def test_unknown_is_404(self, auth_client):
        resp = auth_client.post("/api/functions/process-challenge-result", json={"challengeId": "nope"})
        assert resp.status_code == 404

    def test_missing_id_is_400(self, auth_client):
        resp = auth_client.post("/api/functions/process-challenge-result", json={})
        assert resp.status_code == 400
