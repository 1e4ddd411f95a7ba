"""
Challenge operations invoked by the HTTP layer.

Each function validates the caller against the row, performs one guarded
store write and fires the side effects that belong to it (notifications,
progress events). Errors are raised as ChallengeError subclasses and
mapped to JSON by the challenges blueprint.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from agents.question_gen_agent import generate_challenge_questions
from challenge_notifications import notify_challenge_accepted, notify_challenge_request
from challenge_state import (
    ChallengeNotFoundError,
    ChallengeStatus,
    InvalidChallengeRequest,
    NotParticipantError,
    StaleTransitionError,
    parse_ts,
    role_of,
)
from db_stores import (
    AntiCheatLogDB,
    ChallengeAnswerStoreDB,
    ChallengeStatsDB,
    ChallengeStoreDB,
    UserStoreDB,
    generate_share_code,
)
from realtime import publish_progress

logger = logging.getLogger(__name__)

MAX_DURATION_SECONDS = 600
SHARE_CODE_ATTEMPTS = 5


def validate_setup(subject, duration_seconds) -> tuple[str, int]:
    subject = (subject or "").strip() if isinstance(subject, str) else ""
    if not subject:
        raise InvalidChallengeRequest("Subject is required")
    if len(subject) > 200:
        raise InvalidChallengeRequest("Subject is too long")
    try:
        duration = int(duration_seconds)
    except (TypeError, ValueError):
        raise InvalidChallengeRequest("durationSeconds must be an integer")
    if not 0 < duration <= MAX_DURATION_SECONDS:
        raise InvalidChallengeRequest(f"durationSeconds must be between 1 and {MAX_DURATION_SECONDS}")
    return subject, duration


def require_role(row: dict, user_id: int) -> str:
    role = role_of(row, user_id)
    if role is None:
        raise NotParticipantError("You are not a participant in this challenge")
    return role


def _questions_for(host_id: int, subject: str, duration: int, config):
    streak = ChallengeStatsDB.get(host_id).current_streak
    return generate_challenge_questions(subject, duration, streak, config=config)


def create_direct_challenge(host_id: int, opponent_id, subject, duration_seconds, config,
                            now: datetime | None = None) -> dict:
    subject, duration = validate_setup(subject, duration_seconds)
    try:
        opponent_id = int(opponent_id)
    except (TypeError, ValueError):
        raise InvalidChallengeRequest("opponentId is required")
    if opponent_id == host_id:
        raise InvalidChallengeRequest("You cannot challenge yourself")
    if UserStoreDB.get(opponent_id) is None:
        raise InvalidChallengeRequest("Opponent not found")

    qs = _questions_for(host_id, subject, duration, config)
    row = ChallengeStoreDB.create(
        host_id, subject, duration, qs.difficulty, qs.questions_as_dicts(),
        opponent_id=opponent_id,
        expires_in=config.get("CHALLENGE_PENDING_TIMEOUT", 30),
        now=now,
    )
    logger.info("Challenge %s created: host=%s opponent=%s subject=%s duration=%s",
                row["id"], host_id, opponent_id, subject, duration)
    notify_challenge_request(row)
    return row


def create_link_challenge(host_id: int, subject, duration_seconds, config,
                          now: datetime | None = None) -> dict:
    subject, duration = validate_setup(subject, duration_seconds)
    qs = _questions_for(host_id, subject, duration, config)

    for _ in range(SHARE_CODE_ATTEMPTS):
        try:
            row = ChallengeStoreDB.create(
                host_id, subject, duration, qs.difficulty, qs.questions_as_dicts(),
                share_code=generate_share_code(),
                expires_in=config.get("CHALLENGE_LINK_TIMEOUT", 86400),
                now=now,
            )
            logger.info("Link challenge %s created: host=%s code=%s", row["id"], host_id, row["share_code"])
            return row
        except sqlite3.IntegrityError:
            logger.warning("Share code collision, retrying")
    raise InvalidChallengeRequest("Could not allocate a share code, please retry")


def preview_by_code(code: str, now: datetime | None = None) -> dict:
    """Public summary of a link challenge (no questions)."""
    row = ChallengeStoreDB.get_by_share_code(code)
    if row is None:
        raise ChallengeNotFoundError(code)
    now = now or datetime.now()
    expires_at = parse_ts(row["expires_at"])
    expired = expires_at is not None and expires_at <= now
    return {
        "id": row["id"],
        "shareCode": row["share_code"],
        "hostId": row["host_id"],
        "hostUsername": UserStoreDB.username(row["host_id"]),
        "subject": row["subject"],
        "durationSeconds": row["duration_seconds"],
        "difficulty": row["difficulty"],
        "questionCount": len(row["questions"]),
        "status": row["status"],
        "joinable": row["status"] == ChallengeStatus.PENDING.value and row["opponent_id"] is None and not expired,
    }


def join_by_code(code: str, user_id: int, now: datetime | None = None) -> dict:
    existing = ChallengeStoreDB.get_by_share_code(code)
    if existing is not None and existing["opponent_id"] == user_id:
        return existing
    row = ChallengeStoreDB.join_by_code(code, user_id, now)
    logger.info("User %s joined link challenge %s", user_id, row["id"])
    notify_challenge_accepted(row)
    return row


def accept(challenge_id: str, user_id: int, expected_version=None, now=None) -> dict:
    row = ChallengeStoreDB.accept(challenge_id, user_id, now, expected_version)
    logger.info("Challenge %s accepted by %s", challenge_id, user_id)
    return row


def mark_ready(challenge_id: str, user_id: int, expected_version=None, now=None) -> dict:
    row = ChallengeStoreDB.require(challenge_id)
    role = require_role(row, user_id)
    return ChallengeStoreDB.mark_ready(challenge_id, role, now, expected_version)


def expire(challenge_id: str, user_id: int, now=None) -> dict:
    row = ChallengeStoreDB.require(challenge_id)
    require_role(row, user_id)
    return ChallengeStoreDB.expire(challenge_id, now)


def _require_running(row: dict, role: str) -> None:
    if row["status"] != ChallengeStatus.IN_PROGRESS.value or not row["started_at"]:
        raise StaleTransitionError("The quiz has not started", row["status"], row["version"])
    if row[f"{role}_finished"]:
        raise StaleTransitionError("You already finished this challenge", row["status"], row["version"])


def record_answer(challenge_id: str, user_id: int, question_index, selected_answer) -> dict:
    row = ChallengeStoreDB.require(challenge_id)
    role = require_role(row, user_id)
    _require_running(row, role)

    questions = row["questions"]
    try:
        idx = int(question_index)
        selected = int(selected_answer)
    except (TypeError, ValueError):
        raise InvalidChallengeRequest("questionIndex and selectedAnswer must be integers")
    if not 0 <= idx < len(questions):
        raise InvalidChallengeRequest("questionIndex out of range")
    if not 0 <= selected <= 3:
        raise InvalidChallengeRequest("selectedAnswer must be between 0 and 3")

    question = questions[idx]
    is_correct = selected == question.get("answer")
    if not ChallengeAnswerStoreDB.record(challenge_id, user_id, idx, selected, is_correct):
        raise StaleTransitionError("Question already answered", row["status"], row["version"])

    progress = ChallengeAnswerStoreDB.progress(challenge_id, user_id)
    publish_progress(challenge_id, user_id, {**progress, "total": len(questions)})
    return {
        "isCorrect": is_correct,
        "correctAnswer": question.get("answer"),
        "explanation": question.get("explanation", ""),
        "progress": progress,
    }


def finish(challenge_id: str, user_id: int, score=None, expected_version=None) -> dict:
    """Write the caller's own score; omitted scores are graded from recorded answers."""
    row = ChallengeStoreDB.require(challenge_id)
    role = require_role(row, user_id)
    total = len(row["questions"])

    if score is None:
        score = ChallengeAnswerStoreDB.progress(challenge_id, user_id)["correct"]
    try:
        score = int(score)
    except (TypeError, ValueError):
        raise InvalidChallengeRequest("score must be an integer")
    score = max(0, min(score, total))

    ChallengeStoreDB.finish(challenge_id, role, score, expected_version)
    logger.info("Challenge %s: %s finished with %d/%d", challenge_id, role, score, total)
    # the auto-reconcile subscriber may have completed the row in the meantime
    return ChallengeStoreDB.require(challenge_id)


def report_violation(challenge_id: str, user_id: int, event_type, event_data, max_violations: int) -> dict:
    row = ChallengeStoreDB.require(challenge_id)
    role = require_role(row, user_id)
    if row["status"] != ChallengeStatus.IN_PROGRESS.value:
        raise StaleTransitionError("Challenge is not in progress", row["status"], row["version"])
    if not isinstance(event_type, str) or not event_type.strip():
        raise InvalidChallengeRequest("eventType is required")

    count = AntiCheatLogDB.log(challenge_id, user_id, event_type.strip()[:50],
                               event_data if isinstance(event_data, dict) else {})
    logger.warning("Anti-cheat event on %s: user=%s type=%s count=%d",
                   challenge_id, user_id, event_type, count)

    disqualified = False
    if count >= max_violations:
        disqualified = True
        if not row[f"{role}_finished"] and row["started_at"]:
            try:
                ChallengeStoreDB.finish(challenge_id, role, 0)
                logger.warning("Challenge %s: %s disqualified after %d violations", challenge_id, role, count)
            except StaleTransitionError:
                pass  # already finished concurrently
    return {"violations": count, "maxViolations": max_violations, "disqualified": disqualified}
