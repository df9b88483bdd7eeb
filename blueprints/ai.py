"""AI tool routes: study chat, image analysis, text-to-speech."""

from __future__ import annotations

import base64
import logging
import uuid

from flask import Blueprint, Response, jsonify, request
from flask_login import login_required

from audio import pcm_to_wav
from extensions import ServiceManager, limiter
from gamification import now_ms
from generator import GENERATION_FAILED_MESSAGE, GenerationError, file_input_from_upload
from helpers import current_study_session, error, json_body
from models import ChatMessage

logger = logging.getLogger(__name__)

bp = Blueprint("ai", __name__)

IMAGE_MIME_TYPES = ("image/png", "image/jpeg", "image/webp")
TTS_MAX_CHARS = 5000


# ── Chat ──────────────────────────────────────────────

@bp.route("/api/chat")
@login_required
def api_chat_history():
    study_session = current_study_session()
    return jsonify({"messages": [m.to_dict() for m in study_session.chat_history]})


@bp.route("/api/chat/message", methods=["POST"])
@login_required
@limiter.limit("60 per hour")
def api_chat_message():
    text = (json_body().get("message") or "").strip()
    if not text:
        return error("Message is required.")

    study_session = current_study_session()
    if study_session.chat is None:
        try:
            study_session.chat = ServiceManager.get_generator().create_chat()
        except GenerationError as e:
            logger.error("Could not start chat for %s: %s", study_session.uid, e)
            return error(GENERATION_FAILED_MESSAGE, 502)

    study_session.add_chat_message(ChatMessage(uuid.uuid4().hex, "user", text, now_ms()))
    reply_text = study_session.chat.send(text)
    reply = ChatMessage(uuid.uuid4().hex, "model", reply_text, now_ms())
    study_session.add_chat_message(reply)
    return jsonify({"reply": reply.to_dict()})


@bp.route("/api/chat/reset", methods=["POST"])
@login_required
def api_chat_reset():
    current_study_session().reset_chat()
    return jsonify({"messages": []})


# ── Image analysis ────────────────────────────────────

@bp.route("/api/analyze-image", methods=["POST"])
@login_required
@limiter.limit("30 per hour")
def api_analyze_image():
    upload = request.files.get("image")
    if upload is not None:
        try:
            file_input = file_input_from_upload(upload)
        except ValueError as e:
            return error(str(e))
        data_b64, mime_type = file_input.data, file_input.mime_type
        prompt = (request.form.get("prompt") or "").strip()
    else:
        body = json_body()
        data_b64 = body.get("image") or ""
        mime_type = body.get("mime_type") or "image/jpeg"
        prompt = (body.get("prompt") or "").strip()
        if not data_b64:
            return error("An image is required.")

    if mime_type not in IMAGE_MIME_TYPES:
        return error(f"Unsupported image type: {mime_type}")

    try:
        analysis = ServiceManager.get_generator().analyze_image(data_b64, prompt, mime_type)
    except GenerationError as e:
        logger.error("Image analysis failed: %s", e)
        return error(GENERATION_FAILED_MESSAGE, 502)
    return jsonify({"analysis": analysis})


# ── Text to speech ────────────────────────────────────

@bp.route("/api/tts", methods=["POST"])
@login_required
@limiter.limit("30 per hour")
def api_tts():
    text = (json_body().get("text") or "").strip()
    if not text:
        return error("Text is required.")
    if len(text) > TTS_MAX_CHARS:
        return error(f"Text must be at most {TTS_MAX_CHARS} characters.")

    try:
        pcm_b64 = ServiceManager.get_generator().generate_speech(text)
        wav = pcm_to_wav(pcm_b64)
    except (GenerationError, ValueError) as e:
        logger.error("Speech generation failed: %s", e)
        return error(GENERATION_FAILED_MESSAGE, 502)

    if request.args.get("format") == "base64":
        return jsonify({"audio": base64.b64encode(wav).decode("ascii"), "mime_type": "audio/wav"})
    return Response(wav, mimetype="audio/wav")
