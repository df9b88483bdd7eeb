"""
StudyAI: Flask Web Application

AI study companion: generates quizzes, flashcards and summaries with
Gemini, tracks XP, streaks and mistakes per user in Firestore, and turns
past mistakes into Smart Revision quizzes.
"""

from __future__ import annotations

import atexit
import hashlib
import os
from typing import Any

from flask import Flask, Response, jsonify, request as flask_request
from werkzeug.exceptions import HTTPException

from auth import auth_bp, login_manager
from blueprints import register_blueprints
from extensions import ServiceManager, limiter


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

    app.secret_key = app.config.get("SECRET_KEY", "dev-key-change-in-production")

    # Structured logging
    from logging_config import init_logging
    init_logging(app)

    # Document store (Firestore, SQLite or in-memory)
    from document_store import init_store
    init_store(app)

    # Background writes (thread pool or synchronous)
    import tasks
    tasks.init_tasks(app)
    atexit.register(tasks.shutdown)

    # Identity client, Gemini generator, per-user session registry
    ServiceManager.init_app(app)

    # Rate limiter (disabled in testing)
    limiter.init_app(app)
    if app.config.get("TESTING"):
        limiter.enabled = False

    # Register auth blueprint and login manager
    app.register_blueprint(auth_bp)
    login_manager.init_app(app)

    # Register all application blueprints
    register_blueprints(app)

    # Google OAuth (optional)
    from oauth import init_oauth, oauth_bp
    init_oauth(app)
    app.register_blueprint(oauth_bp)

    @app.errorhandler(HTTPException)
    def json_http_error(e: HTTPException):
        return jsonify({"error": e.description}), e.code

    @app.errorhandler(Exception)
    def json_internal_error(e: Exception):
        app.logger.exception("Unhandled error on %s %s", flask_request.method, flask_request.path)
        return jsonify({"error": "Internal server error"}), 500

    # Security headers
    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # ETag support for JSON API responses
    @app.after_request
    def set_etag(response: Response) -> Response:
        if (
            flask_request.method == "GET"
            and response.status_code == 200
            and response.content_type
            and "application/json" in response.content_type
            and response.content_length
            and response.content_length < 1_048_576  # < 1 MB
        ):
            data = response.get_data()
            etag = '"' + hashlib.md5(data).hexdigest() + '"'
            response.headers["ETag"] = etag
            if_none_match = flask_request.headers.get("If-None-Match")
            if if_none_match and if_none_match == etag:
                response.status_code = 304
                response.set_data(b"")
        return response

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
