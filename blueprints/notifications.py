"""Notification routes."""

from __future__ import annotations

from dataclasses import asdict

from flask import Blueprint, jsonify
from flask_login import login_required

from db_stores import NotificationStoreDB
from helpers import current_user_id, json_body, paginate_args

bp = Blueprint("notifications", __name__)


@bp.route("/api/notifications")
@login_required
def api_notifications():
    """Return recent notifications for the current user."""
    page, limit = paginate_args(default_limit=20, max_limit=50)
    store = NotificationStoreDB(current_user_id())
    all_notifs = store.recent(limit * page)
    start = (page - 1) * limit
    return jsonify({
        "notifications": [asdict(n) for n in all_notifs[start:start + limit]],
        "page": page,
        "limit": limit,
        "unread_count": store.unread_count(),
    })


@bp.route("/api/notifications/read", methods=["POST"])
@login_required
def api_notifications_read():
    data = json_body()
    notif_id = data.get("id", "")
    store = NotificationStoreDB(current_user_id())
    if notif_id == "all":
        store.mark_all_read()
    else:
        store.mark_read(notif_id)
    return jsonify({"success": True})
