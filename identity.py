"""
Identity provider client: Firebase Authentication.

Email/password and Google sign-in go through the Identity Toolkit REST API;
bearer ID tokens from API clients are verified with firebase-admin.
Observers registered with ``on_auth_state_changed`` are told about every
sign-in and sign-out so per-user state can be opened and torn down.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlencode

import requests

from models import User

logger = logging.getLogger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
DEFAULT_TIMEOUT = 10

AUTH_ERROR_MESSAGES = {
    "auth/invalid-credential": "Invalid email or password.",
    "auth/email-already-in-use": "Email already in use.",
    "auth/weak-password": "Password should be at least 6 characters.",
    "auth/operation-not-supported-in-this-environment": (
        "Authentication is not supported in this environment "
        "(likely due to strict browser privacy settings or preview restrictions)."
    ),
    "auth/popup-blocked": "Popup was blocked. Please allow popups for this site.",
    "auth/popup-closed-by-user": "Google sign-in was cancelled before it completed.",
    "auth/invalid-email": "Please enter a valid email address.",
    "auth/user-disabled": "This account has been disabled.",
    "auth/too-many-requests": "Too many attempts. Please wait a moment and try again.",
    "auth/network-request-failed": "Could not reach the authentication service. Please try again.",
    "auth/not-configured": "Authentication service not initialized",
}

# Identity Toolkit error strings -> client error codes
_PROVIDER_CODES = {
    "INVALID_LOGIN_CREDENTIALS": "auth/invalid-credential",
    "INVALID_PASSWORD": "auth/invalid-credential",
    "EMAIL_NOT_FOUND": "auth/invalid-credential",
    "INVALID_IDP_RESPONSE": "auth/invalid-credential",
    "EMAIL_EXISTS": "auth/email-already-in-use",
    "WEAK_PASSWORD": "auth/weak-password",
    "OPERATION_NOT_ALLOWED": "auth/operation-not-supported-in-this-environment",
    "INVALID_EMAIL": "auth/invalid-email",
    "MISSING_EMAIL": "auth/invalid-email",
    "USER_DISABLED": "auth/user-disabled",
    "TOO_MANY_ATTEMPTS_TRY_LATER": "auth/too-many-requests",
}


class AuthError(Exception):
    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message

    @property
    def user_message(self) -> str:
        return auth_error_message(self.code, self.message)


def auth_error_message(code: str, fallback: str = "") -> str:
    """User-facing text for an auth error code."""
    if code in AUTH_ERROR_MESSAGES:
        return AUTH_ERROR_MESSAGES[code]
    return fallback or "Authentication failed."


@dataclass(frozen=True)
class AuthSession:
    user: User
    id_token: str
    refresh_token: str = ""
    expires_in: int = 3600
    is_new_user: bool = False


@dataclass(frozen=True)
class AuthEvent:
    kind: str  # "signed_in" | "signed_out"
    user: User


AuthObserver = Callable[[AuthEvent], None]


class IdentityClient:
    """Thin client over the Identity Toolkit REST API."""

    def __init__(self, api_key: str, http: requests.Session | None = None,
                 firebase_app=None, timeout: int = DEFAULT_TIMEOUT) -> None:
        self.api_key = api_key
        self.http = http or requests.Session()
        self.firebase_app = firebase_app
        self.timeout = timeout
        self._observers: list[AuthObserver] = []
        self._lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    # ── Observers ──────────────────────────────────────────

    def on_auth_state_changed(self, observer: AuthObserver) -> Callable[[], None]:
        """Register ``observer``; returns a function that removes it."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def _emit(self, event: AuthEvent) -> None:
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception("Auth observer failed on %s for user %s", event.kind, event.user.id)

    # ── REST plumbing ──────────────────────────────────────

    def _post(self, endpoint: str, payload: dict) -> dict:
        if not self.configured:
            raise AuthError("auth/not-configured", AUTH_ERROR_MESSAGES["auth/not-configured"])
        url = f"{IDENTITY_TOOLKIT_URL}/accounts:{endpoint}"
        try:
            resp = self.http.post(url, params={"key": self.api_key}, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Identity Toolkit %s request failed: %s", endpoint, e)
            raise AuthError("auth/network-request-failed", str(e)) from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code >= 400:
            raise self._error_from_body(body, resp.status_code)
        return body

    @staticmethod
    def _error_from_body(body: dict, status: int) -> AuthError:
        raw = ((body or {}).get("error") or {}).get("message") or f"HTTP {status}"
        # e.g. "WEAK_PASSWORD : Password should be at least 6 characters"
        key = raw.split(":", 1)[0].strip()
        code = _PROVIDER_CODES.get(key, "auth/internal-error")
        return AuthError(code, raw)

    @staticmethod
    def _session_from(body: dict, name: str | None = None) -> AuthSession:
        email = body.get("email", "")
        user = User(
            id=body["localId"],
            name=User.display_name(name or body.get("displayName"), email),
            email=email,
        )
        return AuthSession(
            user=user,
            id_token=body.get("idToken", ""),
            refresh_token=body.get("refreshToken", ""),
            expires_in=int(body.get("expiresIn") or 3600),
            is_new_user=bool(body.get("isNewUser", False)),
        )

    # ── Operations ─────────────────────────────────────────

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        body = self._post("signInWithPassword", {
            "email": email,
            "password": password,
            "returnSecureToken": True,
        })
        session = self._session_from(body)
        self._emit(AuthEvent("signed_in", session.user))
        return session

    def create_account(self, email: str, password: str, display_name: str = "") -> AuthSession:
        body = self._post("signUp", {
            "email": email,
            "password": password,
            "returnSecureToken": True,
        })
        session = self._session_from(body, display_name)
        if display_name:
            try:
                self.update_display_name(session.id_token, display_name)
            except AuthError as e:
                logger.warning("Could not set display name for %s: %s", session.user.id, e)
        session = AuthSession(
            user=session.user,
            id_token=session.id_token,
            refresh_token=session.refresh_token,
            expires_in=session.expires_in,
            is_new_user=True,
        )
        self._emit(AuthEvent("signed_in", session.user))
        return session

    def sign_in_with_idp(self, google_id_token: str, request_uri: str = "http://localhost") -> AuthSession:
        """Exchange a Google OpenID token for a Firebase session."""
        body = self._post("signInWithIdp", {
            "postBody": urlencode({"id_token": google_id_token, "providerId": "google.com"}),
            "requestUri": request_uri,
            "returnIdpCredential": True,
            "returnSecureToken": True,
        })
        session = self._session_from(body, body.get("displayName") or body.get("fullName"))
        self._emit(AuthEvent("signed_in", session.user))
        return session

    def update_display_name(self, id_token: str, name: str) -> None:
        self._post("update", {
            "idToken": id_token,
            "displayName": name,
            "returnSecureToken": False,
        })

    def sign_out(self, user: User) -> None:
        """Firebase sessions are client-held tokens; signing out only notifies observers."""
        self._emit(AuthEvent("signed_out", user))

    def verify_id_token(self, token: str) -> User:
        """Validate a bearer ID token and return the user it belongs to."""
        from firebase_admin import auth as firebase_auth

        try:
            claims = firebase_auth.verify_id_token(token, app=self.firebase_app)
        except Exception as e:
            raise AuthError("auth/invalid-id-token", str(e)) from e
        email = claims.get("email", "")
        return User(
            id=claims["uid"],
            name=User.display_name(claims.get("name"), email),
            email=email,
        )
