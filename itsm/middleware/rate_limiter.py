"""
Per-blueprint rate limits.

The shared ``Limiter`` in ``itsm/__init__.py`` has no default limit; each
blueprint gets the limit listed in ``BLUEPRINT_LIMITS``. Counters live in
Redis when ``REDIS_URL`` is set, so they hold across workers.
"""

import logging

logger = logging.getLogger(__name__)

# blueprint name -> limit per client address; None means exempt
BLUEPRINT_LIMITS = {
    "automation": "30/minute",
    "change": "60/minute",
    "notification": "60/minute",
    "health": None,
}


def init_rate_limits(app, limiter):
    if app.config.get("TESTING"):
        logger.info("Rate limiting off under TESTING")
        return

    for name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(name)
        if bp is None:
            continue
        if limit is None:
            limiter.exempt(bp)
        else:
            limiter.limit(limit)(bp)

    logger.info("Rate limits applied: %s", ", ".join(
        f"{name}={limit or 'exempt'}" for name, limit in BLUEPRINT_LIMITS.items()
    ))
