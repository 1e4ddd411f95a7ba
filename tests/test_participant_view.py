"""Tests for the per-participant challenge view."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from challenge_state import NotParticipantError, Phase, phase_of
from participant_view import derive_view

T0 = datetime(2026, 3, 1, 12, 0, 0)
HOST, OPP, OTHER = 1, 2, 3


def _row(**overrides) -> dict:
    row = {
        "id": "c1",
        "host_id": HOST,
        "opponent_id": OPP,
        "subject": "Mathematics",
        "duration_seconds": 60,
        "status": "pending",
        "created_at": "2026-03-01T12:00:00",
        "expires_at": "2026-03-01T12:00:30",
        "accepted_at": None,
        "host_ready_at": None,
        "opponent_ready_at": None,
        "started_at": None,
        "host_finished": None,
        "opponent_finished": None,
        "host_score": None,
        "opponent_score": None,
        "winner_id": None,
        "is_draw": False,
        "version": 1,
    }
    row.update(overrides)
    return row


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _started(**overrides) -> dict:
    return _row(status="in_progress", accepted_at="2026-03-01T12:00:05",
                host_ready_at="2026-03-01T12:00:06", opponent_ready_at="2026-03-01T12:00:07",
                started_at="2026-03-01T12:00:07", **overrides)


class TestPending:
    def test_host_waits_with_countdown(self):
        view = derive_view(_row(), HOST, _at(10))
        assert view.role == "host"
        assert view.screen == "waiting_for_opponent"
        assert view.seconds_left == 20
        assert view.actions == ["cancel"]
        assert view.phase == "proposed"

    def test_opponent_sees_incoming(self):
        view = derive_view(_row(), OPP, _at(29.5))
        assert view.screen == "incoming_challenge"
        assert view.actions == ["accept", "decline"]
        assert view.seconds_left == 1

    @pytest.mark.parametrize("viewer", [HOST, OPP])
    def test_past_deadline_expires_locally(self, viewer):
        view = derive_view(_row(), viewer, _at(30))
        assert view.screen == "expired"
        assert view.should_expire is True
        assert view.actions == ["expire"]

    def test_outsider_rejected(self):
        with pytest.raises(NotParticipantError):
            derive_view(_row(), OTHER, _at(0))

    def test_open_link_challenge_has_no_opponent(self):
        with pytest.raises(NotParticipantError):
            derive_view(_row(opponent_id=None), OPP, _at(0))


@pytest.mark.parametrize("status", ["declined", "expired", "cancelled"])
def test_closed_statuses(status):
    view = derive_view(_row(status=status), HOST, _at(100))
    assert view.screen == status
    assert view.actions == []
    assert view.phase == "closed"


class TestHandshake:
    def test_host_join_prompt(self):
        row = _row(status="in_progress", accepted_at="2026-03-01T12:00:05")
        view = derive_view(row, HOST, _at(10))
        assert view.screen == "join_prompt"
        assert view.actions == ["ready"]
        assert view.seconds_left == 115
        assert view.phase == "accepted"

    def test_host_waits_for_opponent_ready(self):
        row = _row(status="in_progress", accepted_at="2026-03-01T12:00:05",
                   host_ready_at="2026-03-01T12:00:06")
        view = derive_view(row, HOST, _at(10))
        assert view.screen == "waiting_for_opponent_ready"
        assert view.actions == []

    def test_opponent_waits_for_host(self):
        row = _row(status="in_progress", accepted_at="2026-03-01T12:00:05")
        view = derive_view(row, OPP, _at(10))
        assert view.screen == "waiting_for_host"
        assert view.actions == ["ready"]

    def test_host_never_joined(self):
        row = _row(status="in_progress", accepted_at="2026-03-01T12:00:05",
                   opponent_ready_at="2026-03-01T12:00:06")
        assert derive_view(row, OPP, _at(125)).screen == "host_didnt_join"
        assert derive_view(row, HOST, _at(125)).screen == "join_expired"

    def test_opponent_never_joined(self):
        row = _row(status="in_progress", accepted_at="2026-03-01T12:00:05",
                   host_ready_at="2026-03-01T12:00:06")
        view = derive_view(row, HOST, _at(125))
        assert view.screen == "opponent_didnt_join"
        assert view.seconds_left == 0

    def test_custom_join_timeout(self):
        row = _row(status="in_progress", accepted_at="2026-03-01T12:00:05")
        view = derive_view(row, HOST, _at(20), {"CHALLENGE_JOIN_TIMEOUT": 10})
        assert view.screen == "opponent_didnt_join"


class TestQuiz:
    def test_countdown_during_grace(self):
        view = derive_view(_started(), HOST, _at(8))
        assert view.screen == "countdown"
        assert view.seconds_left == 1
        assert view.phase == "both_ready"
        assert view.quiz_starts_at == "2026-03-01T12:00:09"
        assert view.quiz_ends_at == "2026-03-01T12:01:09"

    def test_both_sides_agree_on_timing(self):
        host = derive_view(_started(), HOST, _at(20))
        opp = derive_view(_started(), OPP, _at(20))
        assert host.screen == opp.screen == "quiz"
        assert host.seconds_left == opp.seconds_left == 49
        assert host.quiz_ends_at == opp.quiz_ends_at
        assert host.actions == ["answer", "finish"]
        assert host.phase == "running"

    def test_time_up_only_allows_finish(self):
        view = derive_view(_started(), OPP, _at(70))
        assert view.seconds_left == 0
        assert view.actions == ["finish"]

    def test_waiting_for_other_player(self):
        view = derive_view(_started(host_finished=True, host_score=3), HOST, _at(30))
        assert view.screen == "waiting_for_result"
        assert view.actions == []
        assert view.my_score == 3

    def test_both_finished_can_reconcile(self):
        row = _started(host_finished=True, opponent_finished=True, host_score=3, opponent_score=2)
        view = derive_view(row, OPP, _at(30))
        assert view.screen == "waiting_for_result"
        assert view.actions == ["reconcile"]
        assert (view.my_score, view.opponent_score) == (2, 3)


class TestResult:
    def test_winner_and_loser(self):
        row = _row(status="completed", winner_id=HOST, host_score=4, opponent_score=2)
        assert derive_view(row, HOST, _at(0)).outcome == "won"
        assert derive_view(row, OPP, _at(0)).outcome == "lost"
        assert derive_view(row, OPP, _at(0)).screen == "result"

    def test_draw_is_identical_for_both(self):
        row = _row(status="completed", is_draw=True, host_score=3, opponent_score=3)
        assert derive_view(row, HOST, _at(0)).outcome == "draw"
        assert derive_view(row, OPP, _at(0)).outcome == "draw"

    def test_to_dict_is_json_ready(self):
        data = derive_view(_row(status="completed", is_draw=True), HOST, _at(0)).to_dict()
        assert data["screen"] == "result"
        assert data["challenge_id"] == "c1"


class TestPhaseOf:
    def test_without_clock_started_is_both_ready(self):
        assert phase_of(_started()) == Phase.BOTH_READY

    def test_running_after_grace(self):
        assert phase_of(_started(), _at(9)) == Phase.RUNNING
        assert phase_of(_started(), _at(8)) == Phase.BOTH_READY

    def test_completed(self):
        assert phase_of(_row(status="completed")) == Phase.COMPLETED
