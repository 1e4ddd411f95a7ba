"""PvP streak challenge routes: create, join, handshake, quiz writes, stats."""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required

import challenge_service
from cache_backend import LEADERBOARD_KEY_PREFIX, get_cache
from challenge_state import ChallengeError, client_row
from db_stores import ChallengeAnswerStoreDB, ChallengeStatsDB, ChallengeStoreDB
from extensions import limiter
from helpers import challenge_timings, current_user_id, expected_version, json_body, now
from participant_view import derive_view
from realtime import online_users

logger = logging.getLogger(__name__)

bp = Blueprint("challenges", __name__)

LEADERBOARD_MAX = 50


@bp.app_errorhandler(ChallengeError)
def handle_challenge_error(exc: ChallengeError):
    if exc.status_code >= 500:
        logger.error("Challenge error: %s", exc.message)
    return jsonify(exc.to_dict()), exc.status_code


def _state_payload(row: dict) -> dict:
    view = derive_view(row, current_user_id(), now(), challenge_timings())
    return {"challenge": client_row(row), "view": view.to_dict()}


# ── Creation ──────────────────────────────────────────────

@bp.route("/api/challenges", methods=["POST"])
@login_required
@limiter.limit("20 per hour")
def api_create_challenge():
    data = json_body()
    row = challenge_service.create_direct_challenge(
        current_user_id(),
        data.get("opponentId"),
        data.get("subject"),
        data.get("durationSeconds"),
        current_app.config,
        now=now(),
    )
    return jsonify(_state_payload(row)), 201


@bp.route("/api/challenges/link", methods=["POST"])
@login_required
@limiter.limit("20 per hour")
def api_create_link_challenge():
    data = json_body()
    row = challenge_service.create_link_challenge(
        current_user_id(), data.get("subject"), data.get("durationSeconds"),
        current_app.config, now=now(),
    )
    payload = _state_payload(row)
    payload["shareCode"] = row["share_code"]
    payload["shareUrl"] = f"{current_app.config.get('BASE_URL', '').rstrip('/')}/join/{row['share_code']}"
    return jsonify(payload), 201


@bp.route("/api/challenges/code/<code>")
@login_required
def api_preview_by_code(code):
    return jsonify(challenge_service.preview_by_code(code, now()))


@bp.route("/api/challenges/code/<code>/join", methods=["POST"])
@login_required
def api_join_by_code(code):
    row = challenge_service.join_by_code(code, current_user_id(), now())
    return jsonify(_state_payload(row))


# ── Lists and stats ───────────────────────────────────────

@bp.route("/api/challenges/incoming")
@login_required
def api_incoming():
    rows = ChallengeStoreDB.incoming_for(current_user_id(), now())
    return jsonify({"challenges": [client_row(r) for r in rows]})


@bp.route("/api/challenges/pending")
@login_required
def api_pending():
    rows = ChallengeStoreDB.pending_for_host(current_user_id(), now())
    return jsonify({"challenges": [client_row(r) for r in rows]})


@bp.route("/api/challenges/online")
@login_required
def api_online():
    return jsonify({"users": online_users(exclude_id=current_user_id())})


@bp.route("/api/challenges/stats")
@login_required
def api_stats():
    return jsonify(ChallengeStatsDB.get(current_user_id()).to_dict())


@bp.route("/api/challenges/leaderboard")
@login_required
def api_leaderboard():
    try:
        limit = min(LEADERBOARD_MAX, max(1, int(request.args.get("limit", LEADERBOARD_MAX))))
    except (TypeError, ValueError):
        limit = LEADERBOARD_MAX

    cache = get_cache()
    key = f"{LEADERBOARD_KEY_PREFIX}{limit}"
    entries = cache.get(key)
    if entries is None:
        entries = ChallengeStatsDB.leaderboard(limit)
        cache.set(key, entries, current_app.config.get("LEADERBOARD_CACHE_TTL", 30))
    return jsonify({"leaderboard": entries})


# ── Single challenge ──────────────────────────────────────

@bp.route("/api/challenges/<challenge_id>")
@login_required
def api_get_challenge(challenge_id):
    row = ChallengeStoreDB.require(challenge_id)
    challenge_service.require_role(row, current_user_id())
    progress = {}
    for uid in {row["host_id"], row["opponent_id"]} - {None}:
        progress[str(uid)] = ChallengeAnswerStoreDB.progress(challenge_id, uid)
    return jsonify({"challenge": client_row(row), "progress": progress})


@bp.route("/api/challenges/<challenge_id>/state")
@login_required
def api_challenge_state(challenge_id):
    row = ChallengeStoreDB.require(challenge_id)
    return jsonify(_state_payload(row))


@bp.route("/api/challenges/<challenge_id>/accept", methods=["POST"])
@login_required
def api_accept(challenge_id):
    data = json_body()
    row = challenge_service.accept(challenge_id, current_user_id(), expected_version(data), now())
    return jsonify(_state_payload(row))


@bp.route("/api/challenges/<challenge_id>/decline", methods=["POST"])
@login_required
def api_decline(challenge_id):
    data = json_body()
    row = ChallengeStoreDB.decline(challenge_id, current_user_id(), expected_version(data))
    return jsonify(_state_payload(row))


@bp.route("/api/challenges/<challenge_id>/cancel", methods=["POST"])
@login_required
def api_cancel(challenge_id):
    data = json_body()
    row = ChallengeStoreDB.cancel(challenge_id, current_user_id(), expected_version(data))
    return jsonify(_state_payload(row))


@bp.route("/api/challenges/<challenge_id>/expire", methods=["POST"])
@login_required
def api_expire(challenge_id):
    row = challenge_service.expire(challenge_id, current_user_id(), now())
    return jsonify(_state_payload(row))


@bp.route("/api/challenges/<challenge_id>/ready", methods=["POST"])
@login_required
def api_ready(challenge_id):
    data = json_body()
    row = challenge_service.mark_ready(challenge_id, current_user_id(), expected_version(data), now())
    return jsonify(_state_payload(row))


@bp.route("/api/challenges/<challenge_id>/answers", methods=["POST"])
@login_required
def api_answer(challenge_id):
    data = json_body()
    result = challenge_service.record_answer(
        challenge_id, current_user_id(), data.get("questionIndex"), data.get("selectedAnswer"),
    )
    return jsonify(result)


@bp.route("/api/challenges/<challenge_id>/finish", methods=["POST"])
@login_required
def api_finish(challenge_id):
    data = json_body()
    row = challenge_service.finish(
        challenge_id, current_user_id(), data.get("score"), expected_version(data),
    )
    return jsonify(_state_payload(row))


@bp.route("/api/challenges/<challenge_id>/violations", methods=["POST"])
@login_required
def api_violation(challenge_id):
    data = json_body()
    result = challenge_service.report_violation(
        challenge_id, current_user_id(), data.get("eventType"), data.get("eventData"),
        current_app.config.get("CHALLENGE_MAX_VIOLATIONS", 3),
    )
    return jsonify(result)
