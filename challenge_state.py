"""
Challenge lifecycle — status values, readiness phases and protocol errors.

The challenge row is the only shared state between the two participants.
Status moves through a small finite-state machine; every transition is
written as a compare-and-swap on the prior status (see db_stores).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ChallengeStatus.COMPLETED,
    ChallengeStatus.DECLINED,
    ChallengeStatus.EXPIRED,
    ChallengeStatus.CANCELLED,
})

# (from, to). Accept and decline are written by the opponent, cancel by the
# host, expiry by any observer, completion only by reconciliation.
TRANSITIONS = frozenset({
    (ChallengeStatus.PENDING, ChallengeStatus.IN_PROGRESS),
    (ChallengeStatus.PENDING, ChallengeStatus.DECLINED),
    (ChallengeStatus.PENDING, ChallengeStatus.EXPIRED),
    (ChallengeStatus.PENDING, ChallengeStatus.CANCELLED),
    (ChallengeStatus.IN_PROGRESS, ChallengeStatus.COMPLETED),
})


class Phase(str, Enum):
    """Readiness handshake phases derived from a challenge row."""

    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    BOTH_READY = "both_ready"
    RUNNING = "running"
    COMPLETED = "completed"
    CLOSED = "closed"  # declined / expired / cancelled


def can_transition(current: str | ChallengeStatus, target: str | ChallengeStatus) -> bool:
    return (ChallengeStatus(current), ChallengeStatus(target)) in TRANSITIONS


# Stay server-side until the challenge is completed.
HIDDEN_QUESTION_FIELDS = ("answer", "explanation")


def client_row(row: dict) -> dict:
    """Copy of a challenge row for players, without the answer key while it still matters."""
    if row.get("status") == ChallengeStatus.COMPLETED.value:
        return row
    redacted = dict(row)
    redacted["questions"] = [
        {k: v for k, v in q.items() if k not in HIDDEN_QUESTION_FIELDS}
        for q in row.get("questions") or []
    ]
    return redacted


def role_of(row: dict, user_id: int) -> str | None:
    """Return 'host', 'opponent' or None for a user against a challenge row."""
    if row.get("host_id") == user_id:
        return "host"
    if row.get("opponent_id") is not None and row.get("opponent_id") == user_id:
        return "opponent"
    return None


def parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def phase_of(row: dict, now: datetime | None = None, grace_seconds: int = 2) -> Phase:
    """Derive the handshake phase.

    BOTH_READY and RUNNING differ only by the grace delay after started_at,
    so callers that pass ``now`` get RUNNING once the quiz has begun.
    """
    status = ChallengeStatus(row["status"])
    if status == ChallengeStatus.PENDING:
        return Phase.PROPOSED
    if status == ChallengeStatus.COMPLETED:
        return Phase.COMPLETED
    if status.is_terminal:
        return Phase.CLOSED
    started_at = parse_ts(row.get("started_at"))
    if started_at is None:
        return Phase.ACCEPTED
    if now is not None and now >= started_at + timedelta(seconds=grace_seconds):
        return Phase.RUNNING
    return Phase.BOTH_READY


# ── Errors ───────────────────────────────────────────────────────────


class ChallengeError(Exception):
    """Base class for challenge protocol errors."""

    status_code = 400

    def __init__(self, message: str, **context) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        body = {"error": self.message}
        body.update(self.context)
        return body


class InvalidChallengeRequest(ChallengeError):
    status_code = 400


class NotParticipantError(ChallengeError):
    status_code = 403


class ChallengeNotFoundError(ChallengeError):
    status_code = 404

    def __init__(self, challenge_id: str) -> None:
        super().__init__("Challenge not found", challengeId=challenge_id)


class StaleTransitionError(ChallengeError):
    """A conditional write found the row in a different state than expected."""

    status_code = 409

    def __init__(self, message: str, current_status: str | None = None,
                 current_version: int | None = None) -> None:
        super().__init__(message, currentStatus=current_status, currentVersion=current_version)
        self.current_status = current_status
        self.current_version = current_version
