"""
DB-backed store classes for Streak Arena.

Every write to a challenge row is a conditional UPDATE: the WHERE clause
carries the status (and optionally the version) the writer observed, so a
stale transition affects zero rows and surfaces as StaleTransitionError
instead of silently overwriting the other participant's write.
"""

from __future__ import annotations

import json
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from challenge_state import (
    ChallengeNotFoundError,
    ChallengeStatus,
    InvalidChallengeRequest,
    NotParticipantError,
    StaleTransitionError,
    can_transition,
)
from database import get_db
from realtime import publish
from streaks import ChallengeStats

logger = logging.getLogger(__name__)

_BOOL_COLUMNS = ("host_finished", "opponent_finished", "is_draw")

# Read-alike characters are left out so codes survive being read aloud.
SHARE_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SHARE_CODE_LENGTH = 8


def ts(dt: datetime) -> str:
    return dt.isoformat(timespec="seconds")


def generate_share_code() -> str:
    return "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(SHARE_CODE_LENGTH))


def _row_to_challenge(row) -> dict:
    result = dict(row)
    result["questions"] = json.loads(result.get("questions") or "[]")
    for col in _BOOL_COLUMNS:
        if result.get(col) is not None:
            result[col] = bool(result[col])
    result["is_draw"] = bool(result.get("is_draw"))
    return result


# ── Challenges ───────────────────────────────────────────────────────


class ChallengeStoreDB:
    """The shared challenge record and its guarded transitions."""

    @staticmethod
    def create(host_id: int, subject: str, duration_seconds: int, difficulty: str,
               questions: list[dict], opponent_id: int | None = None,
               share_code: str | None = None, expires_in: int = 30,
               now: datetime | None = None) -> dict:
        now = now or datetime.now()
        challenge_id = str(uuid.uuid4())
        db = get_db()
        db.execute(
            "INSERT INTO streak_challenges (id, host_id, opponent_id, subject, duration_seconds, "
            "difficulty, questions, status, share_code, created_at, expires_at, version) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, 1)",
            (challenge_id, host_id, opponent_id, subject, duration_seconds, difficulty,
             json.dumps(questions), share_code, ts(now), ts(now + timedelta(seconds=expires_in))),
        )
        db.commit()
        row = ChallengeStoreDB.get(challenge_id)
        publish("INSERT", row)
        return row

    @staticmethod
    def get(challenge_id: str) -> dict | None:
        db = get_db()
        row = db.execute("SELECT * FROM streak_challenges WHERE id = ?", (challenge_id,)).fetchone()
        return _row_to_challenge(row) if row else None

    @staticmethod
    def require(challenge_id: str) -> dict:
        row = ChallengeStoreDB.get(challenge_id)
        if row is None:
            raise ChallengeNotFoundError(challenge_id)
        return row

    @staticmethod
    def get_by_share_code(code: str) -> dict | None:
        db = get_db()
        row = db.execute(
            "SELECT * FROM streak_challenges WHERE share_code = ?", (code.strip().upper(),)
        ).fetchone()
        return _row_to_challenge(row) if row else None

    @staticmethod
    def incoming_for(user_id: int, now: datetime | None = None) -> list[dict]:
        now = now or datetime.now()
        db = get_db()
        rows = db.execute(
            "SELECT * FROM streak_challenges WHERE opponent_id = ? AND status = 'pending' "
            "AND (expires_at IS NULL OR expires_at > ?) ORDER BY created_at DESC",
            (user_id, ts(now)),
        ).fetchall()
        return [_row_to_challenge(r) for r in rows]

    @staticmethod
    def pending_for_host(host_id: int, now: datetime | None = None) -> list[dict]:
        now = now or datetime.now()
        db = get_db()
        rows = db.execute(
            "SELECT * FROM streak_challenges WHERE host_id = ? AND status = 'pending' "
            "AND (expires_at IS NULL OR expires_at > ?) ORDER BY created_at DESC",
            (host_id, ts(now)),
        ).fetchall()
        return [_row_to_challenge(r) for r in rows]

    # --- Conditional writes ---

    @staticmethod
    def _cas_update(challenge_id: str, sets: dict[str, Any], conditions: str = "",
                    params: tuple = (), expected_version: int | None = None,
                    message: str = "Challenge state changed", commit: bool = True) -> dict:
        """UPDATE ... SET sets WHERE id=? AND conditions; raise if nothing matched.

        With commit=False the write joins the open transaction and is not
        published; the caller commits and publishes the returned row.
        """
        assignments = ", ".join(f"{col} = ?" for col in sets) + ", version = version + 1"
        where = "id = ?"
        args: list[Any] = list(sets.values()) + [challenge_id]
        if conditions:
            where += f" AND {conditions}"
            args.extend(params)
        if expected_version is not None:
            where += " AND version = ?"
            args.append(expected_version)

        db = get_db()
        cur = db.execute(f"UPDATE streak_challenges SET {assignments} WHERE {where}", args)
        if commit:
            db.commit()
        if cur.rowcount == 0:
            current = ChallengeStoreDB.require(challenge_id)
            logger.warning(
                "Stale write on challenge %s (%s): status=%s version=%s expected_version=%s",
                challenge_id, message, current["status"], current["version"], expected_version,
            )
            raise StaleTransitionError(message, current["status"], current["version"])

        row = ChallengeStoreDB.require(challenge_id)
        if commit:
            publish("UPDATE", row)
        return row

    @staticmethod
    def _transition(challenge_id: str, source: ChallengeStatus, target: ChallengeStatus,
                    sets: dict[str, Any] | None = None, conditions: str = "", params: tuple = (),
                    expected_version: int | None = None,
                    message: str = "Challenge state changed", commit: bool = True) -> dict:
        """Move status from source to target in one conditional write."""
        if not can_transition(source, target):
            raise ValueError(f"Illegal challenge transition {source.value} -> {target.value}")
        where = "status = ?" + (f" AND {conditions}" if conditions else "")
        return ChallengeStoreDB._cas_update(
            challenge_id,
            {"status": target.value, **(sets or {})},
            where,
            (source.value, *params),
            expected_version,
            message=message,
            commit=commit,
        )

    @staticmethod
    def accept(challenge_id: str, user_id: int, now: datetime | None = None,
               expected_version: int | None = None) -> dict:
        now = now or datetime.now()
        row = ChallengeStoreDB.require(challenge_id)
        if row["host_id"] == user_id:
            raise InvalidChallengeRequest("You cannot accept your own challenge")
        if row["opponent_id"] != user_id:
            raise NotParticipantError("This challenge was not sent to you")
        return ChallengeStoreDB._transition(
            challenge_id,
            ChallengeStatus.PENDING,
            ChallengeStatus.IN_PROGRESS,
            {"accepted_at": ts(now)},
            "opponent_id = ? AND (expires_at IS NULL OR expires_at > ?)",
            (user_id, ts(now)),
            expected_version,
            message="Challenge is no longer pending",
        )

    @staticmethod
    def join_by_code(code: str, user_id: int, now: datetime | None = None) -> dict:
        now = now or datetime.now()
        row = ChallengeStoreDB.get_by_share_code(code)
        if row is None:
            raise ChallengeNotFoundError(code)
        if row["host_id"] == user_id:
            raise InvalidChallengeRequest("You cannot join your own challenge")
        if row["opponent_id"] == user_id:
            return row
        return ChallengeStoreDB._transition(
            row["id"],
            ChallengeStatus.PENDING,
            ChallengeStatus.IN_PROGRESS,
            {"opponent_id": user_id, "accepted_at": ts(now)},
            "opponent_id IS NULL AND (expires_at IS NULL OR expires_at > ?)",
            (ts(now),),
            message="This challenge has already been accepted or has expired",
        )

    @staticmethod
    def decline(challenge_id: str, user_id: int, expected_version: int | None = None) -> dict:
        row = ChallengeStoreDB.require(challenge_id)
        if row["opponent_id"] != user_id:
            raise NotParticipantError("Only the challenged player can decline")
        return ChallengeStoreDB._transition(
            challenge_id,
            ChallengeStatus.PENDING,
            ChallengeStatus.DECLINED,
            conditions="opponent_id = ?",
            params=(user_id,),
            expected_version=expected_version,
            message="Challenge is no longer pending",
        )

    @staticmethod
    def cancel(challenge_id: str, user_id: int, expected_version: int | None = None) -> dict:
        row = ChallengeStoreDB.require(challenge_id)
        if row["host_id"] != user_id:
            raise NotParticipantError("Only the host can cancel a challenge")
        return ChallengeStoreDB._transition(
            challenge_id,
            ChallengeStatus.PENDING,
            ChallengeStatus.CANCELLED,
            conditions="host_id = ?",
            params=(user_id,),
            expected_version=expected_version,
            message="Challenge is no longer pending",
        )

    @staticmethod
    def expire(challenge_id: str, now: datetime | None = None) -> dict:
        now = now or datetime.now()
        return ChallengeStoreDB._transition(
            challenge_id,
            ChallengeStatus.PENDING,
            ChallengeStatus.EXPIRED,
            conditions="expires_at IS NOT NULL AND expires_at <= ?",
            params=(ts(now),),
            message="Challenge is not pending past its deadline",
        )

    @staticmethod
    def expire_stale(now: datetime | None = None) -> list[str]:
        """Expire every pending challenge whose deadline passed. Returns expired ids."""
        now = now or datetime.now()
        db = get_db()
        rows = db.execute(
            "SELECT id FROM streak_challenges WHERE status = 'pending' "
            "AND expires_at IS NOT NULL AND expires_at <= ?",
            (ts(now),),
        ).fetchall()
        expired = []
        for r in rows:
            try:
                ChallengeStoreDB.expire(r["id"], now)
                expired.append(r["id"])
            except StaleTransitionError:
                continue  # accepted or cancelled in the meantime
        return expired

    @staticmethod
    def mark_ready(challenge_id: str, role: str, now: datetime | None = None,
                   expected_version: int | None = None) -> dict:
        """Record one side's readiness; the second ack writes started_at once."""
        now = now or datetime.now()
        row = ChallengeStoreDB.require(challenge_id)
        if row["status"] == ChallengeStatus.IN_PROGRESS.value and row["started_at"]:
            return row

        ChallengeStoreDB._cas_update(
            challenge_id,
            {f"{role}_ready_at": ts(now)},
            "status = 'in_progress' AND started_at IS NULL",
            (),
            expected_version,
            message="Challenge is not waiting for players to get ready",
        )

        db = get_db()
        cur = db.execute(
            "UPDATE streak_challenges SET started_at = ?, version = version + 1 "
            "WHERE id = ? AND status = 'in_progress' AND started_at IS NULL "
            "AND host_ready_at IS NOT NULL AND opponent_ready_at IS NOT NULL",
            (ts(now), challenge_id),
        )
        db.commit()
        row = ChallengeStoreDB.require(challenge_id)
        if cur.rowcount:
            logger.info("Challenge %s started (both players ready)", challenge_id)
            publish("UPDATE", row)
        return row

    @staticmethod
    def finish(challenge_id: str, role: str, score: int,
               expected_version: int | None = None) -> dict:
        """Write the caller's own score and finished flag, once."""
        return ChallengeStoreDB._cas_update(
            challenge_id,
            {f"{role}_score": score, f"{role}_finished": 1},
            f"status = 'in_progress' AND started_at IS NOT NULL AND COALESCE({role}_finished, 0) = 0",
            (),
            expected_version,
            message="Challenge is not running or you already finished",
        )

    @staticmethod
    def complete(challenge_id: str, winner_id: int | None, is_draw: bool,
                 host_score: int, opponent_score: int, now: datetime | None = None,
                 commit: bool = True) -> dict:
        """Write the outcome. Only succeeds for the first caller."""
        now = now or datetime.now()
        return ChallengeStoreDB._transition(
            challenge_id,
            ChallengeStatus.IN_PROGRESS,
            ChallengeStatus.COMPLETED,
            {
                "completed_at": ts(now),
                "winner_id": winner_id,
                "is_draw": 1 if is_draw else 0,
                "host_score": host_score,
                "opponent_score": opponent_score,
            },
            "host_finished = 1 AND opponent_finished = 1",
            message="Challenge already completed or not finished by both players",
            commit=commit,
        )


# ── Answers ──────────────────────────────────────────────────────────


class ChallengeAnswerStoreDB:
    """Per-question answers, used for progress and server-side grading."""

    @staticmethod
    def record(challenge_id: str, user_id: int, question_index: int,
               selected_answer: int, is_correct: bool) -> bool:
        db = get_db()
        try:
            db.execute(
                "INSERT INTO challenge_answers (challenge_id, user_id, question_index, "
                "selected_answer, is_correct, answered_at) VALUES (?, ?, ?, ?, ?, ?)",
                (challenge_id, user_id, question_index, selected_answer,
                 1 if is_correct else 0, ts(datetime.now())),
            )
            db.commit()
            return True
        except db.IntegrityError:
            db.rollback()
            return False

    @staticmethod
    def progress(challenge_id: str, user_id: int) -> dict:
        db = get_db()
        row = db.execute(
            "SELECT COUNT(*) AS answered, COALESCE(SUM(is_correct), 0) AS correct "
            "FROM challenge_answers WHERE challenge_id = ? AND user_id = ?",
            (challenge_id, user_id),
        ).fetchone()
        return {"answered": row["answered"], "correct": row["correct"]}


# ── Anti-cheat ───────────────────────────────────────────────────────


class AntiCheatLogDB:
    """Focus-loss / clipboard / shortcut events reported during a quiz."""

    @staticmethod
    def log(challenge_id: str, user_id: int, event_type: str, event_data: dict | None = None) -> int:
        """Insert an event and return the participant's violation count."""
        db = get_db()
        db.execute(
            "INSERT INTO anti_cheat_logs (challenge_id, user_id, event_type, event_data, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (challenge_id, user_id, event_type, json.dumps(event_data or {}), ts(datetime.now())),
        )
        db.commit()
        return AntiCheatLogDB.count(challenge_id, user_id)

    @staticmethod
    def count(challenge_id: str, user_id: int) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COUNT(*) AS c FROM anti_cheat_logs WHERE challenge_id = ? AND user_id = ?",
            (challenge_id, user_id),
        ).fetchone()
        return row["c"]


# ── Challenge stats ──────────────────────────────────────────────────


class ChallengeStatsDB:
    """user_challenge_stats rows; mutated only by result reconciliation."""

    @staticmethod
    def get(user_id: int) -> ChallengeStats:
        db = get_db()
        row = db.execute("SELECT * FROM user_challenge_stats WHERE user_id = ?", (user_id,)).fetchone()
        return ChallengeStats.from_row(row) if row else ChallengeStats(user_id=user_id)

    @staticmethod
    def save(stats: ChallengeStats, commit: bool = True) -> None:
        db = get_db()
        db.execute(
            "INSERT INTO user_challenge_stats (user_id, current_streak, highest_streak, total_wins, "
            "total_challenges, last_challenge_date, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(user_id) DO UPDATE SET current_streak=excluded.current_streak, "
            "highest_streak=excluded.highest_streak, total_wins=excluded.total_wins, "
            "total_challenges=excluded.total_challenges, "
            "last_challenge_date=excluded.last_challenge_date, updated_at=excluded.updated_at",
            (stats.user_id, stats.current_streak, stats.highest_streak, stats.total_wins,
             stats.total_challenges, stats.last_challenge_date, ts(datetime.now())),
        )
        if commit:
            db.commit()

    @staticmethod
    def leaderboard(limit: int = 50) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT s.*, u.display_name, u.name, u.email FROM user_challenge_stats s "
            "JOIN users u ON s.user_id = u.id "
            "ORDER BY s.highest_streak DESC, s.total_wins DESC LIMIT ?",
            (limit,),
        ).fetchall()
        result = []
        for i, r in enumerate(rows, 1):
            result.append({
                "rank": i,
                "user_id": r["user_id"],
                "username": UserStoreDB.username_from_row(r),
                "current_streak": r["current_streak"],
                "highest_streak": r["highest_streak"],
                "total_wins": r["total_wins"],
                "total_challenges": r["total_challenges"],
            })
        return result


# ── Users ────────────────────────────────────────────────────────────


class UserStoreDB:

    @staticmethod
    def get(user_id: int) -> dict | None:
        db = get_db()
        row = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None

    @staticmethod
    def username_from_row(row) -> str:
        if row["display_name"]:
            return row["display_name"]
        if row["email"]:
            return row["email"].split("@")[0]
        return row["name"] or "Unknown"

    @staticmethod
    def username(user_id: int | None) -> str:
        if user_id is None:
            return "Unknown"
        row = UserStoreDB.get(user_id)
        return UserStoreDB.username_from_row(row) if row else "Unknown"

    @staticmethod
    def set_last_seen(user_id: int, when: datetime | None) -> None:
        """Record socket activity; None marks the user offline."""
        db = get_db()
        db.execute("UPDATE users SET last_seen = ? WHERE id = ?", (ts(when) if when else "", user_id))
        db.commit()

    @staticmethod
    def online(since: datetime, exclude_id: int | None = None) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT id, name, email, display_name, last_seen FROM users "
            "WHERE last_seen != '' AND last_seen >= ? AND id != ? ORDER BY last_seen DESC",
            (ts(since), exclude_id if exclude_id is not None else -1),
        ).fetchall()
        return [
            {"userId": r["id"], "username": UserStoreDB.username_from_row(r), "onlineAt": r["last_seen"]}
            for r in rows
        ]


# ── Notifications ────────────────────────────────────────────────────


@dataclass
class Notification:
    id: str
    type: str
    title: str
    body: str
    created_at: str
    read: bool = False
    dismissed: bool = False
    action_url: str = ""
    data: dict = field(default_factory=dict)


class NotificationStoreDB:
    """In-app notifications for one user."""

    def __init__(self, user_id: int):
        self.user_id = user_id

    def add(self, notif: Notification) -> None:
        db = get_db()
        db.execute(
            "INSERT OR IGNORE INTO notifications (id, user_id, type, title, body, "
            "created_at, read, dismissed, action_url, data) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (notif.id, self.user_id, notif.type, notif.title, notif.body,
             notif.created_at, 1 if notif.read else 0, 1 if notif.dismissed else 0,
             notif.action_url, json.dumps(notif.data)),
        )
        db.commit()

    def unread_count(self) -> int:
        db = get_db()
        row = db.execute(
            "SELECT COUNT(*) as cnt FROM notifications WHERE user_id=? AND read=0 AND dismissed=0",
            (self.user_id,),
        ).fetchone()
        return row["cnt"] if row else 0

    def recent(self, n: int = 20) -> list[Notification]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM notifications WHERE user_id=? AND dismissed=0 ORDER BY created_at DESC LIMIT ?",
            (self.user_id, n),
        ).fetchall()
        return [self._row_to_notif(r) for r in rows]

    def mark_read(self, notif_id: str) -> None:
        db = get_db()
        db.execute("UPDATE notifications SET read=1 WHERE id=? AND user_id=?", (notif_id, self.user_id))
        db.commit()

    def mark_all_read(self) -> None:
        db = get_db()
        db.execute("UPDATE notifications SET read=1 WHERE user_id=?", (self.user_id,))
        db.commit()

    def _row_to_notif(self, r) -> Notification:
        return Notification(
            id=r["id"], type=r["type"], title=r["title"], body=r["body"],
            created_at=r["created_at"], read=bool(r["read"]),
            dismissed=bool(r["dismissed"]), action_url=r["action_url"],
            data=json.loads(r["data"]),
        )
