"""Tests for streak bookkeeping and outcome decisions."""

from __future__ import annotations

from datetime import date, timedelta

import pytest

from streaks import ChallengeStats, apply_result, days_since, decide_outcome

TODAY = date(2026, 3, 10)


def _stats(streak=0, highest=0, wins=0, total=0, last=""):
    return ChallengeStats(user_id=1, current_streak=streak, highest_streak=highest,
                          total_wins=wins, total_challenges=total, last_challenge_date=last)


class TestDecideOutcome:
    @pytest.mark.parametrize("host,opp,winner", [(5, 2, 1), (2, 5, 2), (1, 0, 1), (0, 3, 2)])
    def test_higher_score_wins(self, host, opp, winner):
        assert decide_outcome(1, 2, host, opp) == (winner, False)

    @pytest.mark.parametrize("score", [0, 3, 15])
    def test_equal_scores_draw(self, score):
        assert decide_outcome(1, 2, score, score) == (None, True)


class TestApplyResult:
    def test_first_win(self):
        s = apply_result(_stats(), True, TODAY)
        assert s.current_streak == 1
        assert s.highest_streak == 1
        assert s.total_wins == 1
        assert s.total_challenges == 1
        assert s.last_challenge_date == "2026-03-10"

    def test_win_after_gap_resets_then_increments(self):
        last = (TODAY - timedelta(days=3)).isoformat()
        s = apply_result(_stats(streak=7, highest=7, wins=7, total=9, last=last), True, TODAY)
        assert s.current_streak == 1
        assert s.highest_streak == 7

    @pytest.mark.parametrize("days_ago", [0, 1])
    def test_win_yesterday_or_today_continues(self, days_ago):
        last = (TODAY - timedelta(days=days_ago)).isoformat()
        s = apply_result(_stats(streak=4, highest=6, wins=4, total=5, last=last), True, TODAY)
        assert s.current_streak == 5
        assert s.highest_streak == 6

    def test_highest_streak_raised(self):
        last = TODAY.isoformat()
        s = apply_result(_stats(streak=9, highest=9, last=last), True, TODAY)
        assert s.current_streak == 10
        assert s.highest_streak == 10

    def test_loss_keeps_streak(self):
        last = (TODAY - timedelta(days=1)).isoformat()
        s = apply_result(_stats(streak=5, highest=5, wins=5, total=6, last=last), False, TODAY)
        assert s.current_streak == 5
        assert s.total_wins == 5
        assert s.total_challenges == 7

    def test_loss_after_gap_resets(self):
        last = (TODAY - timedelta(days=2)).isoformat()
        s = apply_result(_stats(streak=5, highest=5, last=last), False, TODAY)
        assert s.current_streak == 0
        assert s.highest_streak == 5

    def test_input_not_mutated(self):
        before = _stats(streak=2, last=TODAY.isoformat())
        apply_result(before, True, TODAY)
        assert before.current_streak == 2


def test_days_since_handles_timestamps():
    assert days_since("2026-03-08T23:59:00", TODAY) == 2
    assert days_since("", TODAY) is None
