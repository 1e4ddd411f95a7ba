"""
Per-participant view of a challenge.

Both clients derive what to show purely from the shared row and the
current time, so two observers of the same row always agree. The view
also lists the writes the viewer may perform next; a client that sees
``should_expire`` is expected to send the expire transition itself.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from challenge_state import (
    ChallengeStatus,
    NotParticipantError,
    parse_ts,
    phase_of,
    role_of,
)

DEFAULT_TIMINGS = {
    "CHALLENGE_GRACE_SECONDS": 2,
    "CHALLENGE_JOIN_TIMEOUT": 120,
}


@dataclass
class ParticipantView:
    challenge_id: str
    role: str
    status: str
    phase: str
    screen: str
    actions: list[str] = field(default_factory=list)
    seconds_left: int | None = None
    should_expire: bool = False
    outcome: str | None = None  # won | lost | draw
    my_score: int | None = None
    opponent_score: int | None = None
    quiz_starts_at: str | None = None
    quiz_ends_at: str | None = None
    version: int = 1

    def to_dict(self) -> dict:
        return asdict(self)


def _remaining(deadline: datetime, now: datetime) -> int:
    return max(0, math.ceil((deadline - now).total_seconds()))


def _other(role: str) -> str:
    return "opponent" if role == "host" else "host"


def derive_view(row: dict, viewer_id: int, now: datetime | None = None,
                config: dict | None = None) -> ParticipantView:
    role = role_of(row, viewer_id)
    if role is None:
        raise NotParticipantError("You are not a participant in this challenge")

    now = now or datetime.now()
    timings = {**DEFAULT_TIMINGS, **(config or {})}
    grace = int(timings["CHALLENGE_GRACE_SECONDS"])
    join_timeout = int(timings["CHALLENGE_JOIN_TIMEOUT"])

    status = ChallengeStatus(row["status"])
    view = ParticipantView(
        challenge_id=row["id"],
        role=role,
        status=status.value,
        phase=phase_of(row, now, grace).value,
        screen="",
        my_score=row.get(f"{role}_score"),
        opponent_score=row.get(f"{_other(role)}_score"),
        version=row.get("version", 1),
    )

    if status == ChallengeStatus.PENDING:
        return _pending_view(view, row, role, now)
    if status == ChallengeStatus.COMPLETED:
        return _result_view(view, row, viewer_id)
    if status.is_terminal:
        view.screen = status.value
        return view
    return _in_progress_view(view, row, role, now, grace, join_timeout)


def _pending_view(view: ParticipantView, row: dict, role: str, now: datetime) -> ParticipantView:
    expires_at = parse_ts(row.get("expires_at"))
    if expires_at is not None and now >= expires_at:
        view.screen = "expired"
        view.should_expire = True
        view.actions = ["expire"]
        view.seconds_left = 0
        return view

    if expires_at is not None:
        view.seconds_left = _remaining(expires_at, now)
    if role == "host":
        view.screen = "waiting_for_opponent"
        view.actions = ["cancel"]
    else:
        view.screen = "incoming_challenge"
        view.actions = ["accept", "decline"]
    return view


def _result_view(view: ParticipantView, row: dict, viewer_id: int) -> ParticipantView:
    view.screen = "result"
    if row.get("is_draw"):
        view.outcome = "draw"
    elif row.get("winner_id") == viewer_id:
        view.outcome = "won"
    else:
        view.outcome = "lost"
    return view


def _in_progress_view(view: ParticipantView, row: dict, role: str, now: datetime,
                      grace: int, join_timeout: int) -> ParticipantView:
    me_ready = bool(row.get(f"{role}_ready_at"))
    other_ready = bool(row.get(f"{_other(role)}_ready_at"))
    started_at = parse_ts(row.get("started_at"))

    if started_at is None:
        accepted_at = parse_ts(row.get("accepted_at")) or parse_ts(row.get("created_at"))
        deadline = accepted_at + timedelta(seconds=join_timeout) if accepted_at else None
        if deadline is not None and now >= deadline:
            view.seconds_left = 0
            if not other_ready:
                view.screen = f"{_other(role)}_didnt_join"
            else:
                view.screen = "join_expired"
            return view
        if deadline is not None:
            view.seconds_left = _remaining(deadline, now)

        if role == "host":
            view.screen = "waiting_for_opponent_ready" if me_ready else "join_prompt"
        else:
            view.screen = "waiting_for_host"
        if not me_ready:
            view.actions = ["ready"]
        return view

    quiz_start = started_at + timedelta(seconds=grace)
    quiz_end = quiz_start + timedelta(seconds=int(row["duration_seconds"]))
    view.quiz_starts_at = quiz_start.isoformat(timespec="seconds")
    view.quiz_ends_at = quiz_end.isoformat(timespec="seconds")

    if row.get(f"{role}_finished"):
        view.screen = "waiting_for_result"
        if row.get(f"{_other(role)}_finished"):
            view.actions = ["reconcile"]
        return view

    if now < quiz_start:
        view.screen = "countdown"
        view.seconds_left = _remaining(quiz_start, now)
        return view

    view.screen = "quiz"
    view.seconds_left = _remaining(quiz_end, now)
    view.actions = ["answer", "finish"] if view.seconds_left > 0 else ["finish"]
    return view
