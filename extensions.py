"""
Singleton management for shared services (identity client, Gemini
generator, session registry), the Firebase app and the rate limiter.
"""

from __future__ import annotations

import logging

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address, default_limits=["200 per hour"])


def init_firebase(app):
    """Return the default firebase_admin App, initializing it on first use."""
    import firebase_admin
    from firebase_admin import credentials

    try:
        return firebase_admin.get_app()
    except ValueError:
        pass

    cred_path = app.config.get("FIREBASE_CREDENTIALS", "")
    cred = credentials.Certificate(cred_path) if cred_path else credentials.ApplicationDefault()
    options = {}
    project_id = app.config.get("FIREBASE_PROJECT_ID", "")
    if project_id:
        options["projectId"] = project_id
    firebase_app = firebase_admin.initialize_app(cred, options or None)
    app.logger.info("Firebase initialized (project=%s)", project_id or "default")
    return firebase_app


class ServiceManager:
    """Process-wide identity client, generator and session registry."""

    _identity = None
    _generator = None
    _registry = None
    _unsubscribe = None

    @classmethod
    def init_app(cls, app) -> None:
        from generator import GeminiGenerator
        from identity import IdentityClient
        from study_session import SessionRegistry

        cls.reset()
        firebase_app = None
        if app.config.get("DOCUMENT_STORE") == "firestore":
            try:
                firebase_app = init_firebase(app)
            except Exception as e:
                app.logger.warning("Firebase admin unavailable (%s); bearer tokens disabled", e)

        cls._generator = GeminiGenerator.from_config(app.config)
        cls._registry = SessionRegistry(idle_timeout=app.config.get("SESSION_IDLE_TIMEOUT", 3600))
        cls.set_identity(IdentityClient(app.config.get("FIREBASE_API_KEY", ""), firebase_app=firebase_app))

    @classmethod
    def get_identity(cls):
        if cls._identity is None:
            raise RuntimeError("ServiceManager.init_app() has not been called")
        return cls._identity

    @classmethod
    def set_identity(cls, identity) -> None:
        """Swap the identity client; the registry follows its sign-in/out events."""
        if cls._unsubscribe is not None:
            cls._unsubscribe()
            cls._unsubscribe = None
        cls._identity = identity
        if identity is not None:
            cls._unsubscribe = identity.on_auth_state_changed(cls.get_registry().handle_auth_event)

    @classmethod
    def get_generator(cls):
        if cls._generator is None:
            from generator import GeminiGenerator
            cls._generator = GeminiGenerator()
        return cls._generator

    @classmethod
    def set_generator(cls, generator) -> None:
        cls._generator = generator

    @classmethod
    def get_registry(cls):
        if cls._registry is None:
            from study_session import SessionRegistry
            cls._registry = SessionRegistry()
        return cls._registry

    @classmethod
    def reset(cls) -> None:
        """Tear down all sessions and forget every service."""
        if cls._unsubscribe is not None:
            cls._unsubscribe()
        if cls._registry is not None:
            cls._registry.close_all()
        cls._identity = None
        cls._generator = None
        cls._registry = None
        cls._unsubscribe = None
