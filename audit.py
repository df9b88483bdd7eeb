"""
Audit logging: records security-relevant events (sign-in, sign-up,
sign-out, profile changes) as structured log lines.
"""

from __future__ import annotations

import logging

from flask import has_request_context, request

logger = logging.getLogger(__name__)


def log_event(action: str, user_id: str | None = None, detail: str = "") -> None:
    """Emit a structured audit line."""
    ip = ""
    if has_request_context():
        ip = request.remote_addr or ""
    logger.info(
        "audit: %s user_id=%s detail=%s ip=%s", action, user_id, detail, ip,
        extra={"audit_action": action, "user_id": user_id},
    )
