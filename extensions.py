"""
Extension singletons shared across modules: rate limiter and SocketIO.

Both are created unbound here and attached in create_app() via init_app().
"""

from __future__ import annotations

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO

limiter = Limiter(key_func=get_remote_address, default_limits=["300 per hour"])

socketio = SocketIO()


def init_socketio(app) -> None:
    """Bind SocketIO; a Redis message queue lets several workers share rooms."""
    socketio.init_app(
        app,
        async_mode=app.config.get("SOCKETIO_ASYNC_MODE", "threading"),
        message_queue=app.config.get("REDIS_URL") or None,
        cors_allowed_origins=app.config.get("SOCKETIO_CORS_ORIGINS"),
    )
