"""Server-side handlers: question generation and result reconciliation."""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify
from flask_login import login_required

from agents.question_gen_agent import (
    ProviderUnavailableError,
    QuestionGenerationError,
    generate_challenge_questions,
)
from challenge_service import require_role
from challenge_state import InvalidChallengeRequest
from db_stores import ChallengeStoreDB
from extensions import limiter
from helpers import current_user_id, json_body
from reconciliation import process_challenge_result

logger = logging.getLogger(__name__)

bp = Blueprint("functions", __name__, url_prefix="/api/functions")


@bp.app_errorhandler(QuestionGenerationError)
def handle_generation_error(exc):
    logger.error("Question generation failed: %s", exc)
    return jsonify({"error": str(exc) or "Failed to generate questions"}), 502


@bp.app_errorhandler(ProviderUnavailableError)
def handle_provider_unavailable(exc):
    return jsonify({"error": "Question generation is not configured"}), 503


@bp.route("/generate-challenge-questions", methods=["POST"])
@login_required
@limiter.limit("30 per hour")
def api_generate_questions():
    data = json_body()
    subject = (data.get("subject") or "").strip() if isinstance(data.get("subject"), str) else ""
    if not subject:
        raise InvalidChallengeRequest("subject is required")
    try:
        duration = int(data.get("durationSeconds", 60))
        streak = int(data.get("hostStreak") or 0)
    except (TypeError, ValueError):
        raise InvalidChallengeRequest("durationSeconds and hostStreak must be integers")

    qs = generate_challenge_questions(subject, duration, streak, config=current_app.config)
    return jsonify(qs.to_response())


@bp.route("/process-challenge-result", methods=["POST"])
@login_required
def api_process_result():
    data = json_body()
    challenge_id = data.get("challengeId")
    if not challenge_id or not isinstance(challenge_id, str):
        raise InvalidChallengeRequest("challengeId is required")

    row = ChallengeStoreDB.require(challenge_id)
    require_role(row, current_user_id())
    result = process_challenge_result(challenge_id, data.get("hostScore"), data.get("opponentScore"))
    return jsonify(result.to_dict())
