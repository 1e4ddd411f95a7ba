"""
SQLite database layer for Streak Arena.

Uses raw sqlite3 with WAL mode and parameterized queries.
A schema_version table handles migrations.
"""

from __future__ import annotations

import fcntl
import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from flask import current_app, g

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path(__file__).parent / "streak_arena.db"


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- Users
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT UNIQUE,
    password_hash TEXT,
    display_name TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT ''
);

-- Notifications
CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT '',
    read INTEGER NOT NULL DEFAULT 0,
    dismissed INTEGER NOT NULL DEFAULT 0,
    action_url TEXT NOT NULL DEFAULT '',
    data TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at);

-- PvP streak challenges (one shared row per match)
CREATE TABLE IF NOT EXISTS streak_challenges (
    id TEXT PRIMARY KEY,
    host_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    opponent_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
    subject TEXT NOT NULL,
    duration_seconds INTEGER NOT NULL,
    difficulty TEXT NOT NULL DEFAULT 'medium',
    questions TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'pending',
    share_code TEXT UNIQUE,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    expires_at TEXT,
    host_finished INTEGER,
    opponent_finished INTEGER,
    host_score INTEGER,
    opponent_score INTEGER,
    winner_id INTEGER,
    is_draw INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_challenges_opponent ON streak_challenges(opponent_id, status);
CREATE INDEX IF NOT EXISTS idx_challenges_host ON streak_challenges(host_id, status);

-- Per-question answers (opponent progress during the quiz)
CREATE TABLE IF NOT EXISTS challenge_answers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    challenge_id TEXT NOT NULL REFERENCES streak_challenges(id) ON DELETE CASCADE,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    question_index INTEGER NOT NULL,
    selected_answer INTEGER NOT NULL,
    is_correct INTEGER NOT NULL DEFAULT 0,
    answered_at TEXT NOT NULL DEFAULT '',
    UNIQUE(challenge_id, user_id, question_index)
);

-- Streak statistics (written only by result reconciliation)
CREATE TABLE IF NOT EXISTS user_challenge_stats (
    user_id INTEGER PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    current_streak INTEGER NOT NULL DEFAULT 0,
    highest_streak INTEGER NOT NULL DEFAULT 0,
    total_wins INTEGER NOT NULL DEFAULT 0,
    total_challenges INTEGER NOT NULL DEFAULT 0,
    last_challenge_date TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_stats_leaderboard ON user_challenge_stats(highest_streak, total_wins);
"""


MIGRATIONS: list[tuple[int, str]] = [
    # Migration 2: explicit readiness handshake + optimistic concurrency token
    (2, """
        ALTER TABLE streak_challenges ADD COLUMN accepted_at TEXT;
        ALTER TABLE streak_challenges ADD COLUMN host_ready_at TEXT;
        ALTER TABLE streak_challenges ADD COLUMN opponent_ready_at TEXT;
        ALTER TABLE streak_challenges ADD COLUMN version INTEGER NOT NULL DEFAULT 1;
    """),
    # Migration 3: anti-cheat monitoring
    (3, """
        CREATE TABLE IF NOT EXISTS anti_cheat_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            challenge_id TEXT NOT NULL REFERENCES streak_challenges(id) ON DELETE CASCADE,
            user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            event_type TEXT NOT NULL,
            event_data TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL DEFAULT ''
        );
        CREATE INDEX IF NOT EXISTS idx_anticheat_challenge_user ON anti_cheat_logs(challenge_id, user_id);
    """),
    # Migration 4: notification preferences
    (4, """
        ALTER TABLE users ADD COLUMN email_notifications INTEGER NOT NULL DEFAULT 1;
    """),
    # Migration 5: online presence for the challenge hub
    (5, """
        ALTER TABLE users ADD COLUMN last_seen TEXT NOT NULL DEFAULT '';
    """),
]


def get_db():
    """Return a DB connection from Flask g, creating if needed."""
    if "db" not in g:
        db_path = current_app.config.get("DATABASE", str(DEFAULT_DB_PATH))
        g.db = sqlite3.connect(db_path)
        g.db.row_factory = sqlite3.Row
        g.db.execute("PRAGMA journal_mode=WAL")
        g.db.execute("PRAGMA foreign_keys=ON")
    return g.db


def close_db(e=None) -> None:
    """Teardown handler — close DB connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db() -> None:
    """Execute schema DDL to create all tables."""
    db = get_db()
    db.executescript(SCHEMA)
    db.commit()


def run_migrations() -> None:
    """Apply any unapplied versioned migrations.

    Uses file-based locking to prevent race conditions when multiple
    Gunicorn workers start simultaneously.
    """
    db_path = current_app.config.get("DATABASE", str(DEFAULT_DB_PATH))
    lock_file = None
    if db_path != ":memory:":
        lock_path = Path(db_path).with_suffix(".migration.lock")
        try:
            lock_file = open(lock_path, "w")
            fcntl.flock(lock_file, fcntl.LOCK_EX)
        except OSError:
            lock_file = None

    try:
        db = get_db()
        applied = {
            row["version"]
            for row in db.execute("SELECT version FROM schema_version").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version in applied:
                continue
            try:
                db.executescript(sql)
            except sqlite3.OperationalError as e:
                if "duplicate column" not in str(e).lower():
                    raise
            db.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (version, datetime.now().isoformat()),
            )
            db.commit()
            logger.info("Applied migration %d", version)
    finally:
        if lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def init_app(app) -> None:
    """Register teardown and auto-init on first request."""
    app.teardown_appcontext(close_db)

    @app.before_request
    def _ensure_db():
        if not getattr(app, "_db_initialized", False):
            init_db()
            run_migrations()
            app._db_initialized = True
