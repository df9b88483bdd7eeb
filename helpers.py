"""
Shared helpers used across blueprints.

Extracted from app.py to break circular dependencies.
"""

from __future__ import annotations

from flask import jsonify, request
from flask_login import current_user

from extensions import ServiceManager
from study_session import StudySession


def current_study_session() -> StudySession:
    """The signed-in user's StudySession, opened on demand."""
    registry = ServiceManager.get_registry()
    study_session = registry.get(current_user.id)
    if study_session is None:
        study_session = registry.open(current_user.user)
    return study_session


def json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def error(message: str, status: int = 400):
    return jsonify({"error": message}), status
