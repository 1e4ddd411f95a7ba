"""
Challenge notifications: request, accepted, won.

Every function here is fire-and-forget. A failed notification is logged
and swallowed so it can never undo or fail the protocol write that
triggered it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from html import escape

from flask import current_app

from db_stores import Notification, NotificationStoreDB, UserStoreDB
from email_service import EmailService

logger = logging.getLogger(__name__)

CHALLENGE_URL = "/streak-challenge"


def format_duration(seconds: int) -> str:
    return f"{seconds // 60}:{seconds % 60:02d}"


def _challenge_link(challenge_id: str) -> str:
    base = current_app.config.get("BASE_URL", "").rstrip("/")
    return f"{base}{CHALLENGE_URL}?challenge={challenge_id}"


def notify_challenge_request(challenge: dict) -> dict:
    """Tell the opponent they were challenged. Returns which channels succeeded."""
    results = {"inApp": False, "email": False}
    opponent_id = challenge.get("opponent_id")
    if opponent_id is None:
        return results

    try:
        opponent = UserStoreDB.get(opponent_id)
        if opponent is None:
            logger.warning("Challenge %s: opponent %s not found", challenge["id"], opponent_id)
            return results

        host_name = UserStoreDB.username(challenge["host_id"])
        subject = challenge["subject"]
        duration = format_duration(challenge["duration_seconds"])

        NotificationStoreDB(opponent_id).add(Notification(
            id=f"challenge_request_{challenge['id']}",
            type="challenge_request",
            title="Challenge Request!",
            body=f"{host_name} challenged you to a {subject} battle! ({duration})",
            created_at=datetime.now().isoformat(),
            action_url=CHALLENGE_URL,
            data={"challenge_id": challenge["id"], "host_id": challenge["host_id"]},
        ))
        results["inApp"] = True

        if opponent.get("email") and opponent.get("email_notifications", 1):
            timeout = current_app.config.get("CHALLENGE_PENDING_TIMEOUT", 30)
            body = (
                f"<h2>{escape(host_name)} wants to battle!</h2>"
                f"<p>Subject: <strong>{escape(subject)}</strong><br>"
                f"Duration: <strong>{duration}</strong></p>"
                f'<p><a href="{_challenge_link(challenge["id"])}">Accept Challenge</a></p>'
                f"<p>Hurry! This challenge expires in {timeout} seconds!</p>"
            )
            results["email"] = EmailService.send(
                opponent["email"], f"{host_name} challenged you to a battle!", body,
            )
    except Exception:
        logger.exception("Challenge request notification failed for %s", challenge.get("id"))

    logger.info("Challenge %s request notification: %s", challenge.get("id"), results)
    return results


def notify_challenge_accepted(challenge: dict) -> bool:
    """Tell the host that someone joined their shared challenge link."""
    try:
        opponent_name = UserStoreDB.username(challenge.get("opponent_id"))
        NotificationStoreDB(challenge["host_id"]).add(Notification(
            id=f"challenge_accepted_{challenge['id']}",
            type="challenge_accepted",
            title="Challenge Accepted!",
            body=f"{opponent_name} accepted your {challenge['subject']} challenge! Join the battle now!",
            created_at=datetime.now().isoformat(),
            action_url=f"{CHALLENGE_URL}?challenge={challenge['id']}",
            data={"challenge_id": challenge["id"], "opponent_id": challenge.get("opponent_id")},
        ))
        return True
    except Exception:
        logger.exception("Challenge accepted notification failed for %s", challenge.get("id"))
        return False


def notify_challenge_won(challenge: dict, winner_id: int, new_streak: int) -> bool:
    try:
        loser_id = challenge["opponent_id"] if winner_id == challenge["host_id"] else challenge["host_id"]
        loser_name = UserStoreDB.username(loser_id)
        NotificationStoreDB(winner_id).add(Notification(
            id=f"challenge_won_{challenge['id']}",
            type="challenge_won",
            title="Victory!",
            body=f"You beat {loser_name} in {challenge['subject']}. Streak: {new_streak}",
            created_at=datetime.now().isoformat(),
            action_url=CHALLENGE_URL,
            data={"challenge_id": challenge["id"], "streak": new_streak},
        ))
        return True
    except Exception:
        logger.exception("Challenge won notification failed for %s", challenge.get("id"))
        return False
