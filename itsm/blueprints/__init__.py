"""
ITSM Change Lifecycle Engine
Blueprint helpers shared by the API modules.
"""

from flask import request
from werkzeug.exceptions import BadRequest


def json_body() -> dict:
    """Return the request's JSON object; an empty body is ``{}``.

    Raises:
        BadRequest: body present but not a JSON object (→ 400).
    """
    if not request.get_data(cache=True):
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest("Request body must be a JSON object")
    return data


def pagination_args(default_limit=50, max_limit=200) -> tuple[int, int]:
    """(limit, offset) from the query string, clamped to sane bounds."""
    try:
        limit = min(max(int(request.args.get("limit", default_limit)), 1), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return limit, offset
