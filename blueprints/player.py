"""Player routes: drive the active quiz, flashcard deck or summary."""

from __future__ import annotations

from flask import Blueprint, jsonify
from flask_login import login_required

from helpers import current_study_session, error, json_body
from players import FlashcardPlayer, QuizPlayer

bp = Blueprint("player", __name__)


def _active(kind):
    """Return (study_session, player, error_response); error_response is set when no matching player is open."""
    study_session = current_study_session()
    player = study_session.player
    if player is None:
        return study_session, None, error("No study set is open", 409)
    if not isinstance(player, kind):
        return study_session, None, error(f"The open set is not a {kind.kind} set", 409)
    return study_session, player, None


@bp.route("/api/player")
@login_required
def api_player():
    player = current_study_session().player
    return jsonify({"player": player.to_dict() if player is not None else None})


@bp.route("/api/player/exit", methods=["POST"])
@login_required
def api_exit():
    current_study_session().close_player()
    return jsonify({"player": None})


# ── Quiz ──────────────────────────────────────────────

@bp.route("/api/player/quiz/answer", methods=["POST"])
@login_required
def api_quiz_answer():
    _, quiz, err = _active(QuizPlayer)
    if err:
        return err
    index = json_body().get("index")
    if isinstance(index, bool) or not isinstance(index, int):
        return error("index must be an integer")
    try:
        result = quiz.answer(index)
    except ValueError as e:
        return error(str(e))
    return jsonify({"answer": result.to_dict(), "player": quiz.to_dict()})


@bp.route("/api/player/quiz/next", methods=["POST"])
@login_required
def api_quiz_next():
    study_session, quiz, err = _active(QuizPlayer)
    if err:
        return err
    was_finished = quiz.finished
    try:
        result = quiz.next()
    except ValueError as e:
        return error(str(e))

    body = {"player": quiz.to_dict()}
    if result is not None:
        body["result"] = result.to_dict()
        if not was_finished:
            stats = study_session.complete_quiz(result)
            body["stats"] = stats.to_dict()
    return jsonify(body)


@bp.route("/api/player/quiz/restart", methods=["POST"])
@login_required
def api_quiz_restart():
    _, quiz, err = _active(QuizPlayer)
    if err:
        return err
    quiz.restart()
    return jsonify({"player": quiz.to_dict()})


# ── Flashcards ────────────────────────────────────────

@bp.route("/api/player/flashcards/<action>", methods=["POST"])
@login_required
def api_flashcards(action):
    _, deck, err = _active(FlashcardPlayer)
    if err:
        return err
    if action == "flip":
        deck.flip()
    elif action == "next":
        deck.next()
    elif action == "prev":
        deck.prev()
    else:
        return error(f"Unknown flashcard action: {action}", 404)
    return jsonify({"player": deck.to_dict()})
