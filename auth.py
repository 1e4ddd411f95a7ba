"""
User Authentication — Flask-Login blueprint.

Provides JSON register, login, logout and account-preference routes.
Uses werkzeug.security for password hashing.
"""

from __future__ import annotations

import logging
from datetime import datetime

from flask import Blueprint, g, jsonify, request
from flask_login import LoginManager, UserMixin, current_user, login_required, login_user, logout_user
from werkzeug.security import check_password_hash, generate_password_hash

from database import get_db
from extensions import limiter

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()


class User(UserMixin):
    """Wraps a DB user row for Flask-Login."""

    def __init__(self, id: int, name: str, email: str, display_name: str = ""):
        self.id = id
        self.name = name
        self.email = email
        self.display_name = display_name

    @staticmethod
    def get(user_id: int):
        db = get_db()
        row = db.execute(
            "SELECT id, name, email, display_name FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if row:
            return User(row["id"], row["name"], row["email"], row["display_name"])
        return None

    @staticmethod
    def get_by_email(email: str):
        db = get_db()
        return db.execute(
            "SELECT id, name, email, display_name, password_hash FROM users WHERE email = ?",
            (email,),
        ).fetchone()


@login_manager.user_loader
def load_user(user_id):
    user = User.get(int(user_id))
    if user is not None:
        g.log_user_id = user.id
    return user


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Authentication required"}), 401


def _validate_password(password: str) -> str | None:
    """Return an error message if password is too weak, else None."""
    if len(password) < 8:
        return "Password must be at least 8 characters."
    if not any(c.isupper() for c in password):
        return "Password must contain at least one uppercase letter."
    if not any(c.islower() for c in password):
        return "Password must contain at least one lowercase letter."
    if not any(c.isdigit() for c in password):
        return "Password must contain at least one digit."
    return None


def _user_payload(user: User) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email, "displayName": user.display_name}


@auth_bp.route("/register", methods=["POST"])
@limiter.limit("3 per hour")
def register():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    display_name = (data.get("displayName") or "").strip()

    if not name or not email or not password:
        return jsonify({"error": "Name, email and password are required."}), 400

    pw_error = _validate_password(password)
    if pw_error:
        return jsonify({"error": pw_error}), 400

    if User.get_by_email(email):
        return jsonify({"error": "An account with this email already exists."}), 409

    db = get_db()
    cur = db.execute(
        "INSERT INTO users (name, email, password_hash, display_name, created_at) VALUES (?, ?, ?, ?, ?)",
        (name, email, generate_password_hash(password), display_name, datetime.now().isoformat()),
    )
    db.commit()
    user = User(cur.lastrowid, name, email, display_name)
    login_user(user, remember=True)
    logger.info("Registered user %s", user.id)
    return jsonify({"success": True, "user": _user_payload(user)}), 201


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per 15 minutes")
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""

    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    row = User.get_by_email(email)
    if not row or not row["password_hash"] or not check_password_hash(row["password_hash"], password):
        logger.warning("Failed login for %s", email)
        return jsonify({"error": "Invalid email or password."}), 401

    user = User(row["id"], row["name"], row["email"], row["display_name"])
    login_user(user, remember=True)
    return jsonify({"success": True, "user": _user_payload(user)})


@auth_bp.route("/logout", methods=["POST"])
def logout():
    logout_user()
    return jsonify({"success": True})


@auth_bp.route("/api/account")
@login_required
def account():
    db = get_db()
    row = db.execute(
        "SELECT email_notifications FROM users WHERE id = ?", (current_user.id,)
    ).fetchone()
    payload = _user_payload(current_user)
    payload["emailNotifications"] = bool(row["email_notifications"]) if row else True
    return jsonify(payload)


@auth_bp.route("/api/account/preferences", methods=["POST"])
@login_required
def account_preferences():
    data = request.get_json(silent=True) or {}
    db = get_db()
    if "emailNotifications" in data:
        db.execute(
            "UPDATE users SET email_notifications = ? WHERE id = ?",
            (1 if data["emailNotifications"] else 0, current_user.id),
        )
    if "displayName" in data:
        db.execute(
            "UPDATE users SET display_name = ? WHERE id = ?",
            (str(data["displayName"]).strip()[:50], current_user.id),
        )
    db.commit()
    return jsonify({"success": True})
