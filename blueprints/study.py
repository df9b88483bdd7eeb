"""Study set routes: generate, list, fetch, open, Smart Revision."""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request
from flask_login import login_required

from extensions import ServiceManager, limiter
from generator import (
    DIFFICULTIES,
    GENERATION_FAILED_MESSAGE,
    MAX_QUESTIONS,
    MIN_QUESTIONS,
    REVISION_FAILED_MESSAGE,
    GenerationError,
    file_input_from_upload,
    generate_study_set,
)
from helpers import current_study_session, error, json_body
from models import ContentType

logger = logging.getLogger(__name__)

bp = Blueprint("study", __name__)


def _generation_params() -> tuple[dict, object]:
    """Read generation parameters from JSON or multipart form data."""
    if request.files or request.form:
        data = request.form.to_dict()
        upload = request.files.get("file")
        if upload is not None and not upload.filename:
            upload = None
        return data, upload
    return json_body(), None


@bp.route("/api/sets/generate", methods=["POST"])
@login_required
@limiter.limit("30 per hour")
def api_generate_set():
    data, upload = _generation_params()

    try:
        content_type = ContentType(str(data.get("type") or ContentType.QUIZ.value).upper())
    except ValueError:
        return error(f"type must be one of: {', '.join(t.value for t in ContentType)}")

    topic = (data.get("topic") or "").strip()
    difficulty = data.get("difficulty") or "Medium"
    if difficulty not in DIFFICULTIES:
        return error(f"difficulty must be one of: {', '.join(DIFFICULTIES)}")
    raw_count = data.get("num_questions")
    try:
        num_questions = 5 if raw_count in (None, "") else int(raw_count)
    except (TypeError, ValueError):
        return error("num_questions must be an integer")
    if not MIN_QUESTIONS <= num_questions <= MAX_QUESTIONS:
        return error(f"num_questions must be between {MIN_QUESTIONS} and {MAX_QUESTIONS}")

    file_input = None
    if upload is not None:
        if content_type is not ContentType.QUIZ:
            return error("Documents can only be turned into quizzes.")
        try:
            file_input = file_input_from_upload(upload)
        except ValueError as e:
            return error(str(e))

    if not topic and file_input is None:
        return error("Enter a topic or upload a document.")

    try:
        study_set = generate_study_set(
            ServiceManager.get_generator(),
            content_type,
            topic=topic,
            difficulty=difficulty,
            num_questions=num_questions,
            file=file_input,
            file_name=upload.filename if upload is not None else "",
        )
    except GenerationError as e:
        logger.error("Generation of %s failed: %s", content_type.value, e)
        return error(GENERATION_FAILED_MESSAGE, 502)

    study_session = current_study_session()
    player = study_session.create_set(study_set)
    return jsonify({
        "set": study_set.to_dict(),
        "player": player.to_dict(),
        "stats": study_session.stats.to_dict(),
    }), 201


@bp.route("/api/sets")
@login_required
def api_list_sets():
    study_session = current_study_session()
    return jsonify({"sets": [s.summary_dict() for s in study_session.sets]})


@bp.route("/api/sets/<set_id>")
@login_required
def api_get_set(set_id):
    study_set = current_study_session().get_set(set_id)
    if study_set is None:
        return error("Study set not found", 404)
    return jsonify({"set": study_set.to_dict()})


@bp.route("/api/sets/<set_id>/open", methods=["POST"])
@login_required
def api_open_set(set_id):
    try:
        player = current_study_session().open_set(set_id)
    except KeyError:
        return error("Study set not found", 404)
    except ValueError as e:
        return error(str(e), 422)
    return jsonify({"player": player.to_dict()})


@bp.route("/api/mistakes")
@login_required
def api_mistakes():
    study_session = current_study_session()
    return jsonify({"mistakes": [m.to_dict() for m in study_session.mistakes]})


@bp.route("/api/revision", methods=["POST"])
@login_required
@limiter.limit("30 per hour")
def api_start_revision():
    study_session = current_study_session()
    try:
        revision = study_session.start_revision(ServiceManager.get_generator())
    except GenerationError as e:
        logger.error("Revision quiz generation failed for %s: %s", study_session.uid, e)
        return error(REVISION_FAILED_MESSAGE, 502)

    if revision is None:
        return jsonify({"set": None, "message": "No mistakes to revise."})
    return jsonify({
        "set": revision.to_dict(),
        "player": study_session.player.to_dict(),
        "mistake_count": len(study_session.mistakes),
    }), 201
