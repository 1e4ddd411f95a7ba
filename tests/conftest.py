"""
Test fixtures for Streak Arena.

Provides app, client, auth_client (host), opponent_client, and db fixtures
with file-based SQLite. The LLM is mocked globally to avoid API calls.
"""

from __future__ import annotations

import json
import re
import sys
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

HOST_ID = 1
OPPONENT_ID = 2
OUTSIDER_ID = 3
PASSWORD = "Testpass123"


def fake_questions(count: int) -> list[dict]:
    return [
        {
            "question": f"What is {i} + {i}?",
            "options": [str(2 * i), str(2 * i + 1), str(2 * i + 2), str(2 * i + 3)],
            "answer": 0,
            "explanation": f"{i} + {i} = {2 * i}",
        }
        for i in range(count)
    ]


def _fake_llm(provider, model, prompt, system="", **kwargs):
    match = re.search(r"Generate (\d+)", prompt)
    count = int(match.group(1)) if match else 5
    text = "```json\n" + json.dumps(fake_questions(count)) + "\n```"
    return text, {"provider": provider, "model": model, "cache_hit": False}


@pytest.fixture(autouse=True)
def mock_llm():
    """Patch the LLM entry point used by the question generator."""
    with patch("agents.question_gen_agent.resilient_llm_call", side_effect=_fake_llm) as m:
        yield m


@pytest.fixture
def app(tmp_path, request):
    """Create app with file-based SQLite for testing.

    Tests marked ``no_auto_reconcile`` get an app without the feed
    subscriber that decides results, so they can drive reconciliation by hand.
    """
    from app import create_app

    db_file = str(tmp_path / "test.db")
    app = create_app({
        "TESTING": True,
        "DATABASE": db_file,
        "SECRET_KEY": "test-secret-key",
        "OPENAI_API_KEY": "test-key",
        "SOCKETIO_ASYNC_MODE": "threading",
        "CHALLENGE_AUTO_RECONCILE": request.node.get_closest_marker("no_auto_reconcile") is None,
    })

    with app.app_context():
        from database import get_db, init_db, run_migrations
        from werkzeug.security import generate_password_hash

        init_db()
        run_migrations()

        db = get_db()
        pw = generate_password_hash(PASSWORD)
        users = [
            (HOST_ID, "Host Player", "host@example.com", "hoster"),
            (OPPONENT_ID, "Opponent Player", "opponent@example.com", ""),
            (OUTSIDER_ID, "Outsider", "outsider@example.com", ""),
        ]
        for uid, name, email, display in users:
            db.execute(
                "INSERT INTO users (id, name, email, password_hash, display_name, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (uid, name, email, pw, display, datetime.now().isoformat()),
            )
        db.commit()

    yield app


@pytest.fixture
def client(app):
    """Unauthenticated test client."""
    return app.test_client()


def _login(app, email: str):
    client = app.test_client()
    resp = client.post("/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200
    return client


@pytest.fixture
def auth_client(app):
    """Authenticated test client (logged in as the host)."""
    return _login(app, "host@example.com")


@pytest.fixture
def opponent_client(app):
    return _login(app, "opponent@example.com")


@pytest.fixture
def outsider_client(app):
    return _login(app, "outsider@example.com")


@pytest.fixture
def db(app):
    """Direct database access for store tests.

    Do not combine with the HTTP client fixtures: requests would reuse this
    app context and its ``g``.
    """
    with app.app_context():
        from database import get_db
        yield get_db()


@pytest.fixture
def make_challenge(app):
    """Factory for a pending direct challenge created straight through the store.

    Each call runs in its own app context so HTTP clients used alongside it
    never share ``g`` (and the logged-in user) with the store.
    """
    from db_stores import ChallengeStoreDB

    def _make(duration: int = 60, questions: int = 5, now: datetime | None = None,
              expires_in: int = 30, **kwargs) -> dict:
        kwargs.setdefault("opponent_id", OPPONENT_ID)
        with app.app_context():
            return ChallengeStoreDB.create(
                HOST_ID, kwargs.pop("subject", "Mathematics"), duration, kwargs.pop("difficulty", "easy"),
                fake_questions(questions), expires_in=expires_in, now=now, **kwargs,
            )

    return _make


@pytest.fixture
def running_challenge(app, make_challenge):
    """A challenge both players accepted and acknowledged (quiz started)."""
    from db_stores import ChallengeStoreDB

    def _make(**kwargs) -> dict:
        row = make_challenge(**kwargs)
        with app.app_context():
            ChallengeStoreDB.accept(row["id"], OPPONENT_ID)
            ChallengeStoreDB.mark_ready(row["id"], "host")
            return ChallengeStoreDB.mark_ready(row["id"], "opponent")

    return _make
