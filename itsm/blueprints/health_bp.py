"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  - 200 as soon as the app is serving
    GET /api/v1/health/live   - database, Redis and change-automation status

Only the database decides the overall verdict. Redis backs the rate
limiter and may be absent; a lifecycle scan that has not run recently is
reported as ``stale`` so the external trigger can be alerted on, but the
API itself is still healthy.
"""

import logging
import time
from datetime import timedelta

import redis
from flask import Blueprint, current_app, jsonify
from sqlalchemy.exc import SQLAlchemyError

from itsm.models import db
from itsm.models.scheduling import ScheduledJob
from itsm.utils.helpers import ensure_utc, isoformat_utc, utcnow

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")

# A scan missing this many consecutive intervals counts as stale
STALE_AFTER_INTERVALS = 3


def _timed(fn):
    t0 = time.perf_counter()
    fn()
    return round((time.perf_counter() - t0) * 1000, 1)


def _check_database() -> dict:
    try:
        latency = _timed(lambda: db.session.execute(db.text("SELECT 1")))
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Health check: database failed: %s", exc)
        return {"status": "error", "detail": exc.__class__.__name__}
    return {"status": "ok", "latency_ms": latency}


def _check_redis() -> dict:
    redis_url = current_app.config.get("REDIS_URL", "")
    if not redis_url:
        return {"status": "skipped", "detail": "no REDIS_URL configured"}
    try:
        latency = _timed(lambda: redis.from_url(redis_url, socket_timeout=2).ping())
    except redis.RedisError as exc:
        return {"status": "error", "detail": str(exc)}
    return {"status": "ok", "latency_ms": latency}


def _check_change_automation() -> dict:
    try:
        job = ScheduledJob.query.filter_by(job_name="change_lifecycle").first()
    except SQLAlchemyError:
        db.session.rollback()
        return {"status": "unknown"}
    if job is None or job.last_run_at is None:
        return {"status": "never_run"}
    if not job.is_enabled:
        return {"status": "paused", "last_run_at": isoformat_utc(job.last_run_at)}

    interval = int(current_app.config.get("AUTOMATION_INTERVAL_SECONDS", 60))
    age = utcnow() - ensure_utc(job.last_run_at)
    stale = age > timedelta(seconds=interval * STALE_AFTER_INTERVALS)
    return {
        "status": "stale" if stale else "ok",
        "last_run_at": isoformat_utc(job.last_run_at),
        "last_run_status": job.last_run_status,
    }


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
    }
    healthy = checks["database"]["status"] == "ok"
    if healthy:
        checks["change_automation"] = _check_change_automation()

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
