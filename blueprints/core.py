"""Core routes: health check, dashboard and sync status."""

from __future__ import annotations

import logging
import time

from flask import Blueprint, Response, jsonify
from flask_login import current_user, login_required

from document_store import RECOMMENDED_RULES
from extensions import ServiceManager
from gamification import TOPIC_SUGGESTIONS, level_for, level_progress_pct
from helpers import current_study_session
from oauth import is_oauth_available

logger = logging.getLogger(__name__)

bp = Blueprint("core", __name__)

_START_TIME = time.time()
RECENT_SET_COUNT = 4


@bp.route("/health")
def health():
    uptime = int(time.time() - _START_TIME)
    return jsonify({"status": "ok", "uptime_seconds": uptime})


@bp.route("/api/dashboard")
@login_required
def dashboard():
    study_session = current_study_session()
    stats = study_session.stats
    return jsonify({
        "user": current_user.user.to_dict(),
        "stats": stats.to_dict(),
        "level": level_for(stats.xp),
        "level_progress": level_progress_pct(stats.xp),
        "recent_sets": [s.summary_dict() for s in study_session.sets[:RECENT_SET_COUNT]],
        "set_count": len(study_session.sets),
        "mistake_count": len(study_session.mistakes),
        "suggestions": TOPIC_SUGGESTIONS,
        "ai_available": ServiceManager.get_generator().available,
        "google_login": is_oauth_available(),
        "sync": study_session.sync_status(),
    })


@bp.route("/api/sync")
@login_required
def sync_status():
    return jsonify(current_study_session().sync_status())


@bp.route("/api/sync/dismiss", methods=["POST"])
@login_required
def dismiss_sync_error():
    study_session = current_study_session()
    study_session.dismiss_sync_error()
    return jsonify(study_session.sync_status())


@bp.route("/api/sync/rules")
def sync_rules():
    """Recommended Firestore rules, as plain text for copy/paste."""
    return Response(RECOMMENDED_RULES, mimetype="text/plain")
