"""
Change Management Blueprint.

Routes (prefix /api/v1):
  GET    /changes                          – list (filters: status, incident_id, problem_id)
  POST   /changes                          – create a draft change
  GET    /changes/<id>                     – change detail
  PUT    /changes/<id>                     – partial update (status routed through the state machine)
  POST   /changes/<id>/approval            – submit for approval (draft → pending)
  PUT    /changes/<id>/approval            – approve / reject  {action, comments}
  PUT    /changes/<id>/cancel              – cancel  {reason}
  POST   /changes/<id>/start               – manual start by the assignee
  POST   /changes/<id>/completion          – record outcome  {outcome, notes}
  GET    /changes/<id>/completion          – latest completion response
  GET    /changes/<id>/status-history      – applied transitions
  GET    /changes/<id>/automations         – automation rows

Every route resolves the actor from its bearer token. Service exceptions are
mapped to JSON errors by ``register_error_handlers``.
"""

import logging

from flask import Blueprint, jsonify, request

from itsm.auth import current_actor
from itsm.blueprints import json_body
from itsm.services import change_lifecycle, change_service
from itsm.services.change_lifecycle import allowed_targets
from itsm.utils.errors import register_error_handlers

logger = logging.getLogger(__name__)

change_bp = Blueprint("change", __name__, url_prefix="/api/v1")
register_error_handlers(change_bp)


def _change_response(change, status=200):
    d = change.to_dict()
    d["allowed_transitions"] = allowed_targets(change.status)
    return jsonify(d), status


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════


@change_bp.route("/changes", methods=["GET"])
def list_changes():
    changes = change_service.list_changes(
        current_actor(),
        status=request.args.get("status"),
        incident_id=request.args.get("incident_id"),
        problem_id=request.args.get("problem_id"),
    )
    return jsonify({"items": [c.to_dict() for c in changes], "total": len(changes)})


@change_bp.route("/changes", methods=["POST"])
def create_change():
    change = change_service.create_change(json_body(), current_actor())
    return _change_response(change, 201)


@change_bp.route("/changes/<change_id>", methods=["GET"])
def get_change(change_id):
    change = change_service.get_change(change_id, current_actor())
    d = change.to_dict(include_children=True)
    d["allowed_transitions"] = allowed_targets(change.status)
    return jsonify(d)


@change_bp.route("/changes/<change_id>", methods=["PUT"])
def update_change(change_id):
    change = change_service.update_change(change_id, json_body(), current_actor())
    return _change_response(change)


# ═════════════════════════════════════════════════════════════════════════════
# LIFECYCLE ACTIONS
# ═════════════════════════════════════════════════════════════════════════════


@change_bp.route("/changes/<change_id>/approval", methods=["POST"])
def submit_for_approval(change_id):
    change = change_lifecycle.submit_for_approval(change_id, current_actor())
    return _change_response(change)


@change_bp.route("/changes/<change_id>/approval", methods=["PUT"])
def decide_approval(change_id):
    data = json_body()
    change = change_lifecycle.decide_approval(
        change_id, current_actor(), data.get("action"), data.get("comments"),
    )
    return _change_response(change)


@change_bp.route("/changes/<change_id>/cancel", methods=["PUT"])
def cancel_change(change_id):
    data = json_body()
    change = change_lifecycle.cancel_change(change_id, current_actor(), data.get("reason"))
    return _change_response(change)


@change_bp.route("/changes/<change_id>/start", methods=["POST"])
def start_change(change_id):
    change = change_lifecycle.start_change(change_id, current_actor())
    return _change_response(change)


@change_bp.route("/changes/<change_id>/completion", methods=["POST"])
def record_completion(change_id):
    data = json_body()
    change = change_lifecycle.record_completion(
        change_id, current_actor(), data.get("outcome"), data.get("notes"),
    )
    return _change_response(change)


@change_bp.route("/changes/<change_id>/completion", methods=["GET"])
def get_completion(change_id):
    response = change_service.latest_completion_response(change_id, current_actor())
    return jsonify({"response": response.to_dict() if response else None})


# ═════════════════════════════════════════════════════════════════════════════
# HISTORY
# ═════════════════════════════════════════════════════════════════════════════


@change_bp.route("/changes/<change_id>/status-history", methods=["GET"])
def status_history(change_id):
    rows = change_service.list_status_history(change_id, current_actor())
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)})


@change_bp.route("/changes/<change_id>/automations", methods=["GET"])
def change_automations(change_id):
    rows = change_service.list_automations(change_id, current_actor())
    return jsonify({"items": [r.to_dict() for r in rows], "total": len(rows)})
