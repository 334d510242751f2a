"""
Shared-secret bearer authentication for the automation trigger.

The external scheduler (Vercel / Kubernetes CronJob / plain crontab) calls
the automation endpoints with ``Authorization: Bearer <CRON_SECRET>``.
"""

import functools
import hmac
import logging

from flask import current_app, request

from itsm.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def _bearer_token() -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


def require_cron_secret(f):
    """Decorator: reject the request with 401 unless it carries the cron bearer secret."""

    @functools.wraps(f)
    def decorated(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        token = _bearer_token()
        if not expected or token is None or not hmac.compare_digest(token, expected):
            logger.warning("Rejected automation trigger from %s", request.remote_addr)
            return api_error(E.UNAUTHORIZED, "Unauthorized")
        return f(*args, **kwargs)

    return decorated
