"""
Blueprint registration for StudyAI.

All blueprints are registered without URL prefixes.
"""

from __future__ import annotations


def register_blueprints(app):
    from blueprints.ai import bp as ai_bp
    from blueprints.core import bp as core_bp
    from blueprints.player import bp as player_bp
    from blueprints.study import bp as study_bp

    app.register_blueprint(core_bp)
    app.register_blueprint(study_bp)
    app.register_blueprint(player_bp)
    app.register_blueprint(ai_bp)
