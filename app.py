"""
Streak Arena: Flask web application

Real-time PvP quiz challenges: two players share one challenge record,
receive its changes over SocketIO, and a server-side trigger decides the
winner and updates streaks once both have finished.
"""

from __future__ import annotations

import os
from typing import Any

from flask import Flask, Response

import database
from auth import auth_bp, login_manager
from blueprints import register_blueprints
from extensions import init_socketio, limiter, socketio


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # Load config
    from config import config_by_name
    if test_config is not None:
        app.config.from_object(config_by_name["testing"])
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config["SECRET_KEY"]

    # Structured logging
    from logging_config import init_logging
    init_logging(app)

    # Cache backend (Redis or in-memory)
    from cache_backend import init_cache
    init_cache(app)

    # Background task processing (RQ or synchronous fallback)
    from tasks import init_tasks
    init_tasks(app)

    # Register database teardown
    database.init_app(app)

    # Rate limiter (disabled in testing)
    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    # Change feed, SocketIO bridge and the automatic result trigger
    from realtime import init_realtime
    from reconciliation import register_auto_reconcile
    init_socketio(app)
    feed = init_realtime(app)
    if app.config.get("CHALLENGE_AUTO_RECONCILE", True):
        register_auto_reconcile(feed)

    # Register auth blueprint and login manager
    app.register_blueprint(auth_bp)
    login_manager.init_app(app)

    # Register all application blueprints
    register_blueprints(app)

    @app.route("/healthz")
    def healthz():
        return {"status": "ok"}

    # Security headers
    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        if not app.debug and not app.testing:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # Stale challenge sweeper and cache cleanup
    if not app.config.get("TESTING"):
        from scheduler import init_scheduler
        app.extensions["scheduler"] = init_scheduler(app)

    return app


if __name__ == "__main__":
    application = create_app()
    socketio.run(application, debug=application.debug, port=5001)
