"""Google OAuth integration: optional sign-in via Google, exchanged for a Firebase session."""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request, url_for

from audit import log_event
from auth import auth_error_response, start_session
from extensions import ServiceManager
from identity import AuthError

logger = logging.getLogger(__name__)

oauth_bp = Blueprint("oauth", __name__)

_oauth_registry = None


def _get_oauth():
    """Lazy-init the OAuth registry."""
    global _oauth_registry
    if _oauth_registry is not None:
        return _oauth_registry

    from authlib.integrations.flask_client import OAuth

    _oauth_registry = OAuth()
    return _oauth_registry


def init_oauth(app):
    """Initialize OAuth with the Flask app. Call from create_app()."""
    client_id = app.config.get("GOOGLE_OAUTH_CLIENT_ID", "")
    if not client_id:
        logger.info("GOOGLE_OAUTH_CLIENT_ID not set; Google OAuth disabled")
        return

    oauth = _get_oauth()
    oauth.init_app(app)
    oauth.register(
        name="google",
        client_id=client_id,
        client_secret=app.config.get("GOOGLE_OAUTH_CLIENT_SECRET", ""),
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
        overwrite=True,
    )


def is_oauth_available() -> bool:
    """Check if Google OAuth is configured."""
    client_id = current_app.config.get("GOOGLE_OAUTH_CLIENT_ID", "")
    return bool(client_id) and _oauth_registry is not None


def _not_configured():
    return auth_error_response(AuthError(
        "auth/operation-not-supported-in-this-environment",
        "Google login is not configured.",
    ))


@oauth_bp.route("/login/google")
def google_login():
    """Redirect to Google OAuth consent screen."""
    if not is_oauth_available():
        return _not_configured()

    oauth = _get_oauth()
    redirect_uri = url_for("oauth.google_callback", _external=True)
    return oauth.google.authorize_redirect(redirect_uri)


@oauth_bp.route("/callback/google")
def google_callback():
    """Handle Google OAuth callback."""
    if not is_oauth_available():
        return _not_configured()

    if request.args.get("error"):
        # access_denied: the user closed or refused the consent screen
        logger.info("Google OAuth cancelled: %s", request.args.get("error"))
        return auth_error_response(AuthError("auth/popup-closed-by-user", request.args["error"]))

    oauth = _get_oauth()
    try:
        token = oauth.google.authorize_access_token()
    except Exception as e:
        logger.error("Google OAuth error: %s", e)
        return auth_error_response(AuthError("auth/invalid-credential", str(e)))

    google_id_token = token.get("id_token")
    if not google_id_token:
        logger.error("Google OAuth response carried no id_token")
        return auth_error_response(AuthError("auth/invalid-credential", "Missing Google ID token"))

    try:
        auth_session = ServiceManager.get_identity().sign_in_with_idp(
            google_id_token,
            request_uri=url_for("oauth.google_callback", _external=True),
        )
    except AuthError as e:
        log_event("login_google_failed", None, f"code={e.code}")
        return auth_error_response(e)

    log_event("login_google", auth_session.user.id)
    return jsonify(start_session(auth_session))
