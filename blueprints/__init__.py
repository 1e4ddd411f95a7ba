"""
Blueprint registration for Streak Arena.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.challenges import bp as challenges_bp
    from blueprints.functions import bp as functions_bp
    from blueprints.notifications import bp as notifications_bp

    app.register_blueprint(challenges_bp)
    app.register_blueprint(functions_bp)
    app.register_blueprint(notifications_bp)
