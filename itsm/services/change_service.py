"""
Change Management - Service Layer.

Business logic for:
    - Change CRUD:       create, read, list with filters
    - Partial update:    ``ChangeUpdate`` parsed from the request body and
                         applied field by field; a ``status`` key is routed
                         through the lifecycle state machine
    - Link validation:   a change points at a problem or an incident, never both
    - Child records:     approvals, automations, completion responses, history
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields
from typing import Any

from itsm.core.exceptions import NotFoundError, ValidationError
from itsm.models import db
from itsm.models.change import (
    CHANGE_PRIORITIES,
    CHANGE_STATUSES,
    Change,
    ChangeAutomation,
    ChangeCompletionResponse,
    ChangeStatusHistory,
)
from itsm.services.change_lifecycle import (
    Actor,
    evaluate_transition,
    reschedule_automations,
    transition_change,
)
from itsm.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)

REQUIRED_ON_CREATE = ("title", "description", "rollback_plan", "test_plan")
UNLINK_VALUES = (None, "", "none")


class _Unset:
    """Marks a ChangeUpdate field the request body did not mention."""

    def __repr__(self):
        return "UNSET"

    def __bool__(self):
        return False


UNSET: Any = _Unset()


# ═════════════════════════════════════════════════════════════════════════════
# Field parsers
# ═════════════════════════════════════════════════════════════════════════════


def _text(name):
    def parse(value):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} must be a non-empty string", details={name: "required"})
        return value.strip()
    return parse


def _choice(name, choices):
    def parse(value):
        if value not in choices:
            raise ValidationError(
                f"Invalid {name}: {value!r}. Must be one of: {', '.join(choices)}",
                details={name: f"one of {', '.join(choices)}"},
            )
        return value
    return parse


def _optional_id(name):
    def parse(value):
        if value in UNLINK_VALUES:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string id", details={name: "invalid"})
        return value
    return parse


def _optional_datetime(name):
    def parse(value):
        try:
            return parse_datetime(value)
        except ValueError as exc:
            raise ValidationError(str(exc), details={name: "invalid datetime"}) from exc
    return parse


def _string_list(name):
    def parse(value):
        if value is None:
            return []
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ValidationError(f"{name} must be a list of strings", details={name: "invalid"})
        return [v.strip() for v in value if v.strip()]
    return parse


_PARSERS = {
    "title": _text("title"),
    "description": _text("description"),
    "rollback_plan": _text("rollback_plan"),
    "test_plan": _text("test_plan"),
    "priority": _choice("priority", CHANGE_PRIORITIES),
    "status": _choice("status", CHANGE_STATUSES),
    "assigned_to": _optional_id("assigned_to"),
    "scheduled_for": _optional_datetime("scheduled_for"),
    "estimated_end_time": _optional_datetime("estimated_end_time"),
    "tags": _string_list("tags"),
    "affected_services": _string_list("affected_services"),
    "problem_id": _optional_id("problem_id"),
    "incident_id": _optional_id("incident_id"),
}


# ═════════════════════════════════════════════════════════════════════════════
# ChangeUpdate
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ChangeUpdate:
    """Validated, explicit set of change fields supplied by a request.

    Fields left at ``UNSET`` were not in the body and are not touched.
    ``None`` means "clear this field".
    """

    title: Any = UNSET
    description: Any = UNSET
    priority: Any = UNSET
    status: Any = UNSET
    assigned_to: Any = UNSET
    scheduled_for: Any = UNSET
    estimated_end_time: Any = UNSET
    rollback_plan: Any = UNSET
    test_plan: Any = UNSET
    tags: Any = UNSET
    affected_services: Any = UNSET
    problem_id: Any = UNSET
    incident_id: Any = UNSET

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_payload(cls, data) -> "ChangeUpdate":
        """Parse a request body; unknown keys and bad values raise ValidationError."""
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        unknown = sorted(set(data) - set(cls.field_names()))
        if unknown:
            raise ValidationError(
                f"Unknown field(s): {', '.join(unknown)}",
                details={name: "unknown field" for name in unknown},
            )
        return cls(**{name: _PARSERS[name](value) for name, value in data.items()})

    def provided(self) -> dict:
        """Fields present in the request, excluding ``status``."""
        return {
            name: getattr(self, name)
            for name in self.field_names()
            if name != "status" and getattr(self, name) is not UNSET
        }

    def merged_links(self, change=None) -> tuple[str | None, str | None]:
        """(problem_id, incident_id) after applying this update to ``change``."""
        problem_id = self.problem_id
        incident_id = self.incident_id
        if problem_id is UNSET:
            problem_id = change.problem_id if change is not None else None
        if incident_id is UNSET:
            incident_id = change.incident_id if change is not None else None
        return problem_id, incident_id


def validate_links(problem_id, incident_id) -> None:
    if problem_id and incident_id:
        raise ValidationError(
            "Change cannot be linked to both a problem and an incident. Please select only one.",
            details={"problem_id": problem_id, "incident_id": incident_id},
        )


# ═════════════════════════════════════════════════════════════════════════════
# CRUD
# ═════════════════════════════════════════════════════════════════════════════


def _generate_change_number(organization_id) -> str:
    """CHG-0001, CHG-0002, ... per organization."""
    count = Change.query_for_organization(organization_id).count()
    return f"CHG-{count + 1:04d}"


def get_change(change_id: str, actor: Actor) -> Change:
    """Fetch a change visible to ``actor``; other organizations' changes look missing."""
    change = db.session.get(Change, change_id)
    if change is None or change.organization_id != actor.organization_id:
        raise NotFoundError("Change", change_id)
    return change


def list_changes(actor: Actor, *, status=None, incident_id=None, problem_id=None):
    """Changes of the actor's organization, newest first."""
    q = Change.query_for_organization(actor.organization_id)
    if status:
        if status not in CHANGE_STATUSES:
            raise ValidationError(f"Invalid status filter: {status!r}", details={"status": status})
        q = q.filter(Change.status == status)
    if incident_id:
        q = q.filter(Change.incident_id == incident_id)
    if problem_id:
        q = q.filter(Change.problem_id == problem_id)
    return q.order_by(Change.created_at.desc()).all()


def create_change(data, actor: Actor) -> Change:
    """Create a draft change requested by ``actor``."""
    if isinstance(data, dict) and "status" in data:
        raise ValidationError(
            "New changes always start in draft; submit for approval to move them on",
            details={"status": "not allowed on create"},
        )
    update = ChangeUpdate.from_payload(data)
    values = update.provided()

    missing = [name for name in REQUIRED_ON_CREATE if name not in values]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={name: "required" for name in missing},
        )
    validate_links(*update.merged_links())

    values.setdefault("priority", "medium")
    change = Change(
        organization_id=actor.organization_id,
        change_number=_generate_change_number(actor.organization_id),
        requested_by=actor.user_id,
        status="draft",
        **values,
    )
    db.session.add(change)
    db.session.commit()
    logger.info("Change created id=%s number=%s", change.id, change.change_number)
    return change


def update_change(change_id: str, data, actor: Actor, *, now=None) -> Change:
    """
    Apply a partial update.

    Everything is validated before anything is written: field values, the
    problem / incident rule against the merged result, and (when ``status``
    is present) the state-machine decision. Field edits and the status
    transition then commit together.
    """
    update = ChangeUpdate.from_payload(data)
    change = get_change(change_id, actor)
    validate_links(*update.merged_links(change))

    target = update.status
    if target is not UNSET and target != change.status:
        evaluate_transition(change, target, actor).raise_if_denied()
    else:
        target = None

    values = update.provided()
    if not values and target is None:
        return change

    expected_status = change.status
    for name, value in values.items():
        setattr(change, name, value)

    if target is not None:
        # Field edits ride along in the transition's transaction.
        return transition_change(change.id, target, actor, expected_status=expected_status, now=now)

    now = now or utcnow()
    change.updated_at = now
    try:
        reschedule_automations(change, values, now)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Change updated id=%s fields=%s", change.id, ",".join(sorted(values)))
    return change


# ── Child records ───────────────────────────────────────────────────────────


def list_status_history(change_id: str, actor: Actor):
    change = get_change(change_id, actor)
    return change.status_history.order_by(ChangeStatusHistory.changed_at).all()


def list_automations(change_id: str, actor: Actor):
    change = get_change(change_id, actor)
    return change.automations.order_by(ChangeAutomation.scheduled_for).all()


def latest_completion_response(change_id: str, actor: Actor) -> ChangeCompletionResponse | None:
    change = get_change(change_id, actor)
    return change.completion_responses.order_by(ChangeCompletionResponse.responded_at.desc()).first()
