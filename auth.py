"""
User Authentication: Flask-Login blueprint backed by Firebase Auth.

Provides JSON register, login, logout, profile routes. Browser clients are
tracked with the Flask-Login session cookie; API clients may instead send
a Firebase ID token as ``Authorization: Bearer <token>``.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request, session
from flask_login import LoginManager, UserMixin, current_user, login_required, login_user, logout_user

from audit import log_event
from extensions import ServiceManager, limiter
from identity import AuthError
from models import User

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__)
login_manager = LoginManager()

# auth error code -> HTTP status
_STATUS_BY_CODE = {
    "auth/invalid-credential": 401,
    "auth/invalid-id-token": 401,
    "auth/user-disabled": 403,
    "auth/email-already-in-use": 409,
    "auth/weak-password": 400,
    "auth/invalid-email": 400,
    "auth/too-many-requests": 429,
    "auth/network-request-failed": 502,
    "auth/not-configured": 503,
    "auth/operation-not-supported-in-this-environment": 503,
}


class SessionUser(UserMixin):
    """Wraps the identity provider's user for Flask-Login."""

    def __init__(self, user: User):
        self.user = user

    @property
    def id(self) -> str:
        return self.user.id

    @property
    def name(self) -> str:
        return self.user.name

    @property
    def email(self) -> str:
        return self.user.email


@login_manager.user_loader
def load_user(user_id):
    registry = ServiceManager.get_registry()
    study_session = registry.get(user_id)
    if study_session is not None:
        return SessionUser(study_session.user)

    # Registry was reset (e.g. process restart) but the cookie is still valid
    profile = session.get("profile")
    if profile and profile.get("id") == user_id:
        study_session = registry.open(User(profile["id"], profile.get("name", ""), profile.get("email", "")))
        return SessionUser(study_session.user)
    return None


@login_manager.request_loader
def load_user_from_request(req):
    token = bearer_token(req)
    if not token:
        return None
    try:
        user = ServiceManager.get_identity().verify_id_token(token)
    except AuthError as e:
        logger.warning("Rejected bearer token: %s", e)
        return None
    study_session = ServiceManager.get_registry().open(user)
    return SessionUser(study_session.user)


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({"error": "Authentication required."}), 401


def bearer_token(req) -> str:
    header = req.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return ""


def auth_error_response(e: AuthError):
    return jsonify({"error": e.user_message, "code": e.code}), _STATUS_BY_CODE.get(e.code, 400)


def _credentials() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    return data


def start_session(auth_session) -> dict:
    user = auth_session.user
    # Make sure state is open even if the identity client was swapped out
    ServiceManager.get_registry().open(user)
    login_user(SessionUser(user), remember=True)
    session["profile"] = user.to_dict()
    session["id_token"] = auth_session.id_token
    return {"user": user.to_dict(), "is_new_user": auth_session.is_new_user}


@auth_bp.route("/login", methods=["POST"])
@limiter.limit("5 per 15 minutes")
def login():
    data = _credentials()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    try:
        auth_session = ServiceManager.get_identity().sign_in_with_password(email, password)
    except AuthError as e:
        log_event("login_failed", None, f"email={email} code={e.code}")
        return auth_error_response(e)

    log_event("login_success", auth_session.user.id)
    return jsonify(start_session(auth_session))


@auth_bp.route("/register", methods=["POST"])
@limiter.limit("3 per hour")
def register():
    data = _credentials()
    name = (data.get("name") or "").strip()
    email = (data.get("email") or "").strip().lower()
    password = data.get("password") or ""
    if not email or not password:
        return jsonify({"error": "Email and password are required."}), 400

    try:
        auth_session = ServiceManager.get_identity().create_account(email, password, name)
    except AuthError as e:
        log_event("register_failed", None, f"email={email} code={e.code}")
        return auth_error_response(e)

    log_event("register", auth_session.user.id, f"email={email}")
    return jsonify(start_session(auth_session)), 201


@auth_bp.route("/logout", methods=["POST"])
def logout():
    if current_user.is_authenticated:
        uid = current_user.id
        ServiceManager.get_identity().sign_out(current_user.user)
        # Observers normally close the session; close it anyway for swapped clients
        ServiceManager.get_registry().close(uid)
        log_event("logout", uid)
    logout_user()
    session.clear()
    return jsonify({"success": True})


@auth_bp.route("/api/me")
@login_required
def me():
    study_session = ServiceManager.get_registry().open(current_user.user)
    return jsonify({"user": current_user.user.to_dict(), "sync": study_session.sync_status()})


@auth_bp.route("/api/profile", methods=["PATCH"])
@login_required
def update_profile():
    data = request.get_json(silent=True) or {}
    name = (data.get("name") or "").strip()
    if not name:
        return jsonify({"error": "Name is required."}), 400

    token = bearer_token(request) or session.get("id_token", "")
    if token:
        try:
            ServiceManager.get_identity().update_display_name(token, name)
        except AuthError as e:
            logger.error("Display name update failed for %s: %s", current_user.id, e)
            return auth_error_response(e)

    study_session = ServiceManager.get_registry().open(current_user.user)
    study_session.rename(name)
    if "profile" in session:
        session["profile"] = study_session.user.to_dict()
    log_event("profile_update", current_user.id, f"name={name}")
    return jsonify({"user": study_session.user.to_dict()})
