"""
Shared helpers used across blueprints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from flask import current_app, request
from flask_login import current_user

from challenge_state import InvalidChallengeRequest


def current_user_id() -> int:
    """Return the current authenticated user's ID."""
    return current_user.id


def json_body() -> dict[str, Any]:
    """Parsed JSON object body; anything else is a 400."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidChallengeRequest("Request body must be a JSON object")
    return data


def expected_version(data: dict[str, Any]) -> int | None:
    """Optional optimistic-concurrency token from the body."""
    value = data.get("expectedVersion")
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidChallengeRequest("expectedVersion must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidChallengeRequest("expectedVersion must be an integer")


def now() -> datetime:
    """Server clock used for every timing decision in a request."""
    return datetime.now()


def challenge_timings() -> dict[str, int]:
    cfg = current_app.config
    return {
        "CHALLENGE_GRACE_SECONDS": cfg.get("CHALLENGE_GRACE_SECONDS", 2),
        "CHALLENGE_JOIN_TIMEOUT": cfg.get("CHALLENGE_JOIN_TIMEOUT", 120),
    }


def paginate_args(default_limit: int = 20, max_limit: int = 50) -> tuple[int, int]:
    """Parse page/limit query params with bounds."""
    try:
        page = max(1, int(request.args.get("page", 1)))
    except (TypeError, ValueError):
        page = 1
    try:
        limit = min(max_limit, max(1, int(request.args.get("limit", default_limit))))
    except (TypeError, ValueError):
        limit = default_limit
    return page, limit
