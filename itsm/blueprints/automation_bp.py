"""
Automation Trigger Blueprint.

Called by an external scheduler, authenticated with the shared cron
secret (``Authorization: Bearer <CRON_SECRET>``).

Routes (prefix /api/v1):
  POST   /automation/changes               – run one automation pass now
  GET    /automation/changes               – pending automations + last 24h executions
  POST   /cron/change-lifecycle            – run the change_lifecycle job via the scheduler
  GET    /scheduler/jobs                   – registered jobs and their last run
  PATCH  /scheduler/jobs/<name>/toggle     – enable / disable a job  {enabled}
"""

import logging

from flask import Blueprint, current_app, jsonify
from werkzeug.exceptions import BadRequest

from itsm.blueprints import json_body
from itsm.middleware.cron_auth import require_cron_secret
from itsm.services.change_automation import automation_overview, run_change_automation
from itsm.services.scheduler_service import SchedulerService
from itsm.utils.errors import E, api_error, register_error_handlers
from itsm.utils.helpers import utcnow

logger = logging.getLogger(__name__)

automation_bp = Blueprint("automation", __name__, url_prefix="/api/v1")
register_error_handlers(automation_bp)


def _now():
    clock = current_app.config.get("AUTOMATION_CLOCK") or utcnow
    return clock()


@automation_bp.route("/automation/changes", methods=["POST"])
@require_cron_secret
def run_automation():
    """Auto-start due changes and send completion prompts."""
    now = _now()
    summary = run_change_automation(now)
    return jsonify({
        "success": True,
        "timestamp": now.isoformat(),
        "results": summary.to_dict(),
    })


@automation_bp.route("/automation/changes", methods=["GET"])
@require_cron_secret
def automation_status():
    now = _now()
    return jsonify({"timestamp": now.isoformat(), **automation_overview(now)})


@automation_bp.route("/cron/change-lifecycle", methods=["POST"])
@require_cron_secret
def cron_change_lifecycle():
    result = SchedulerService.run_job("change_lifecycle")
    status = 500 if result.get("status") in ("failed", "error") else 200
    return jsonify(result), status


# ═══════════════════════════════════════════════════════════════════════════
#  SCHEDULER JOB MANAGEMENT
# ═══════════════════════════════════════════════════════════════════════════


@automation_bp.route("/scheduler/jobs", methods=["GET"])
@require_cron_secret
def list_scheduled_jobs():
    SchedulerService.ensure_jobs_registered()
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@automation_bp.route("/scheduler/jobs/<job_name>/toggle", methods=["PATCH"])
@require_cron_secret
def toggle_job(job_name):
    enabled = json_body().get("enabled")
    if not isinstance(enabled, bool):
        raise BadRequest("'enabled' field is required (true/false)")

    SchedulerService.ensure_jobs_registered()
    result = SchedulerService.toggle_job(job_name, enabled)
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
