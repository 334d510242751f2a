"""
Actor resolution for API requests.

The identity provider issues a signed access token; callers send it as
``Authorization: Bearer <token>``. The token is verified with PyJWT
(signature, expiry and, when ``JWT_AUDIENCE`` is set, audience) and its
``sub`` claim is looked up in the local ``profiles`` table, which is the
only source of the actor's role and organization.

Usage:
    from itsm.auth import current_actor

    actor = current_actor()          # raises AuthenticationError → 401
"""

import logging

import jwt
from flask import current_app, g, request

from itsm.core.exceptions import AuthenticationError
from itsm.models import db
from itsm.models.auth import Profile
from itsm.services.change_lifecycle import Actor

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = "HS256"


def _secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _bearer_token() -> str:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Authentication required. Provide a bearer token.")
    return token


def decode_identity_token(token: str) -> dict:
    """Verify ``token`` and return its claims; AuthenticationError if it is not acceptable."""
    config = current_app.config
    try:
        return jwt.decode(
            token,
            _secret(),
            algorithms=[config.get("JWT_ALGORITHM", DEFAULT_ALGORITHM)],
            audience=config.get("JWT_AUDIENCE") or None,
            leeway=config.get("JWT_LEEWAY_SECONDS", 0),
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected bearer token: %s", exc)
        raise AuthenticationError("Invalid token") from exc


def current_actor() -> Actor:
    """Resolve the actor of the current request from its verified token."""
    claims = decode_identity_token(_bearer_token())
    user_id = str(claims["sub"])

    profile = db.session.get(Profile, user_id)
    if profile is None:
        logger.warning("Token subject has no profile: %s", user_id[:8])
        raise AuthenticationError("Unknown user")

    # Read by the logging filter; resolved afresh on every call
    g.actor_id = profile.id
    return Actor.from_profile(profile)
