"""
Change Lifecycle - Service Layer.

Business logic for:
    - Transition table:       the single definition of legal status moves and who may make them
    - Transition evaluation:  pure allow / deny decision plus the side effects to apply
    - Transition execution:   guarded status write, side effects and history in one transaction
    - Lifecycle actions:      submit, approve / reject, cancel, start, complete / fail

Every status change in the engine goes through ``transition_change``. It
writes the new status with ``UPDATE ... WHERE id = :id AND status = :from``
so two actors racing on the same change cannot both win: the loser gets a
ConcurrencyConflictError and nothing of theirs is written. Notifications
go out only after the transaction has committed.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime

from itsm.core.exceptions import (
    AuthorizationError,
    ConcurrencyConflictError,
    NotFoundError,
    ValidationError,
)
from itsm.models import db
from itsm.models.auth import MANAGER_ROLES, Profile
from itsm.models.change import (
    CANCELLABLE_CHANGE_STATUSES,
    CHANGE_STATUSES,
    COMPLETION_OUTCOMES,
    TERMINAL_CHANGE_STATUSES,
    Change,
    ChangeApproval,
    ChangeAutomation,
    ChangeCompletionResponse,
    ChangeStatusHistory,
)
from itsm.services.notification import NotificationService
from itsm.services.recipients import approval_request_recipients, derive_recipients
from itsm.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Actors
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Actor:
    """Whoever drives a transition.

    ``user_id`` is None for the scheduler. ``role`` always comes from the
    actor's Profile row, never from the request.
    """

    user_id: str | None = None
    role: str | None = None
    organization_id: str | None = None

    @property
    def is_system(self) -> bool:
        return self.user_id is None

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES

    @classmethod
    def from_profile(cls, profile: Profile) -> "Actor":
        return cls(user_id=profile.id, role=profile.role, organization_id=profile.organization_id)


SYSTEM_ACTOR = Actor()


# ═════════════════════════════════════════════════════════════════════════════
# Transition table
# ═════════════════════════════════════════════════════════════════════════════


class SideEffect(str, enum.Enum):
    OPEN_APPROVAL = "open_approval"
    APPROVE_APPROVAL = "approve_approval"
    REJECT_APPROVAL = "reject_approval"
    SCHEDULE_AUTOMATIONS = "schedule_automations"
    CANCEL_AUTOMATIONS = "cancel_automations"
    RECORD_AUTO_START = "record_auto_start"
    CLOSE_COMPLETION_PROMPT = "close_completion_prompt"
    RECORD_COMPLETION_RESPONSE = "record_completion_response"
    SET_COMPLETED_AT = "set_completed_at"
    CLEAR_COMPLETED_AT = "clear_completed_at"
    NOTIFY = "notify"


class ActorRule(str, enum.Enum):
    ANYONE = "anyone"
    MANAGER = "manager"
    SCHEDULER_OR_ASSIGNEE = "scheduler_or_assignee"
    ASSIGNEE_OR_MANAGER = "assignee_or_manager"


_DENIAL_REASONS = {
    ActorRule.MANAGER: "Only owners, admins, and managers can do this",
    ActorRule.SCHEDULER_OR_ASSIGNEE: "Only the assignee can start this change",
    ActorRule.ASSIGNEE_OR_MANAGER: "Only the assignee or a manager can record the outcome of this change",
}


@dataclass(frozen=True)
class TransitionRule:
    trigger: str
    actors: ActorRule
    side_effects: tuple[SideEffect, ...]
    event: str


_S = SideEffect

CHANGE_TRANSITIONS: dict[tuple[str, str], TransitionRule] = {
    ("draft", "pending"): TransitionRule(
        "submit", ActorRule.ANYONE,
        (_S.OPEN_APPROVAL, _S.CLEAR_COMPLETED_AT, _S.NOTIFY),
        "change_submitted",
    ),
    ("pending", "approved"): TransitionRule(
        "approve", ActorRule.MANAGER,
        (_S.APPROVE_APPROVAL, _S.SCHEDULE_AUTOMATIONS, _S.CLEAR_COMPLETED_AT, _S.NOTIFY),
        "change_approved",
    ),
    ("pending", "cancelled"): TransitionRule(
        "reject", ActorRule.MANAGER,
        (_S.REJECT_APPROVAL, _S.CANCEL_AUTOMATIONS, _S.CLEAR_COMPLETED_AT, _S.NOTIFY),
        "change_cancelled",
    ),
    ("draft", "cancelled"): TransitionRule(
        "cancel", ActorRule.MANAGER,
        (_S.CANCEL_AUTOMATIONS, _S.CLEAR_COMPLETED_AT, _S.NOTIFY),
        "change_cancelled",
    ),
    ("approved", "cancelled"): TransitionRule(
        "cancel", ActorRule.MANAGER,
        (_S.CANCEL_AUTOMATIONS, _S.CLEAR_COMPLETED_AT, _S.NOTIFY),
        "change_cancelled",
    ),
    ("approved", "in_progress"): TransitionRule(
        "start", ActorRule.SCHEDULER_OR_ASSIGNEE,
        (_S.RECORD_AUTO_START, _S.CLEAR_COMPLETED_AT, _S.NOTIFY),
        "change_started",
    ),
    ("in_progress", "completed"): TransitionRule(
        "complete", ActorRule.ASSIGNEE_OR_MANAGER,
        (_S.CLOSE_COMPLETION_PROMPT, _S.RECORD_COMPLETION_RESPONSE, _S.SET_COMPLETED_AT, _S.NOTIFY),
        "change_completed",
    ),
    ("in_progress", "failed"): TransitionRule(
        "fail", ActorRule.ASSIGNEE_OR_MANAGER,
        (_S.CLOSE_COMPLETION_PROMPT, _S.RECORD_COMPLETION_RESPONSE, _S.CLEAR_COMPLETED_AT, _S.NOTIFY),
        "change_failed",
    ),
}


def allowed_targets(status: str) -> list[str]:
    """Statuses reachable from ``status`` in one step, in lifecycle order."""
    return [to for (frm, to) in CHANGE_TRANSITIONS if frm == status]


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation (pure)
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TransitionDecision:
    allowed: bool
    from_status: str
    target: str
    rule: TransitionRule | None = None
    side_effects: tuple[SideEffect, ...] = field(default_factory=tuple)
    error_kind: str | None = None  # "validation" | "authorization"
    reason: str = ""

    def raise_if_denied(self) -> None:
        if self.allowed:
            return
        if self.error_kind == "authorization":
            raise AuthorizationError(self.reason)
        raise ValidationError(
            self.reason,
            details={"from_status": self.from_status, "to_status": self.target,
                     "allowed": allowed_targets(self.from_status)},
            transition=True,
        )


def _actor_permitted(rule: ActorRule, change, actor: Actor) -> bool:
    if rule is ActorRule.ANYONE:
        return True
    is_assignee = actor.user_id is not None and actor.user_id == change.assigned_to
    if rule is ActorRule.MANAGER:
        return actor.is_manager
    if rule is ActorRule.SCHEDULER_OR_ASSIGNEE:
        return actor.is_system or is_assignee
    if rule is ActorRule.ASSIGNEE_OR_MANAGER:
        return is_assignee or actor.is_manager
    return False


def evaluate_transition(change, target: str, actor: Actor) -> TransitionDecision:
    """Decide whether ``actor`` may move ``change`` to ``target``.

    Pure: reads ``change.status`` and ``change.assigned_to`` only, touches
    no database state. Validation failures (unknown status, illegal edge)
    are reported before authorization failures.
    """
    current = change.status

    def deny(kind, reason):
        return TransitionDecision(False, current, target, error_kind=kind, reason=reason)

    if target not in CHANGE_STATUSES:
        return deny("validation", f"Invalid status: {target!r}")
    if current not in CHANGE_STATUSES:
        return deny("validation", f"Stored status {current!r} is not a known change status")
    if current == target:
        return deny("validation", f"Change is already {current}")

    rule = CHANGE_TRANSITIONS.get((current, target))
    if rule is None:
        if target == "cancelled":
            reason = (
                f"Cannot cancel change in {current} status. Can only cancel changes in "
                f"{', '.join(CANCELLABLE_CHANGE_STATUSES)} status"
            )
        elif current in TERMINAL_CHANGE_STATUSES:
            reason = f"Change is {current}; no further status changes are possible"
        else:
            reason = f"Invalid transition: {current} → {target}"
        return deny("validation", reason)

    if not _actor_permitted(rule.actors, change, actor):
        return deny("authorization", _DENIAL_REASONS[rule.actors])

    return TransitionDecision(True, current, target, rule=rule, side_effects=rule.side_effects)


# ═════════════════════════════════════════════════════════════════════════════
# Execution
# ═════════════════════════════════════════════════════════════════════════════


_HISTORY_COMMENTS = {
    "change_submitted": "Submitted for manager review",
    "change_approved": "Approved by manager",
    "change_rejected": "Rejected by manager",
    "change_cancelled": "Cancelled by manager",
    "change_started": "Started by assignee",
    "change_auto_started": "Automatically started as scheduled",
    "change_completed": "Marked as completed",
    "change_failed": "Marked as failed",
}

_NOTIFICATION_TEXT = {
    "change_submitted": ("Change Submitted for Approval", "was submitted for manager review."),
    "change_approval_request": ("Change Approval Required", "is waiting for your approval."),
    "change_approved": ("Change Approved", "has been approved."),
    "change_rejected": ("Change Rejected", "was rejected."),
    "change_cancelled": ("Change Cancelled", "has been cancelled."),
    "change_started": ("Change Started", "is now in progress."),
    "change_auto_started": ("Change Started Automatically", "was started automatically as scheduled."),
    "change_completed": ("Change Completed Successfully", "was marked as completed."),
    "change_failed": ("Change Failed", "was marked as failed."),
    "change_completion_prompt": (
        "Change Completion Check Required",
        "has passed its estimated end time. Please confirm whether it completed successfully.",
    ),
}


def change_notification_payload(change, event: str, **data) -> dict:
    """Title, message and link data for a notification about ``change``."""
    title, tail = _NOTIFICATION_TEXT[event]
    return {
        "title": title,
        "message": f"{change.change_number}: {change.title} {tail}",
        "change_id": change.id,
        "organization_id": change.organization_id,
        "data": {"change_number": change.change_number, **data},
    }


def _load_change(change_id: str, actor: Actor) -> Change:
    change = db.session.get(Change, change_id)
    if change is None:
        raise NotFoundError("Change", change_id)
    if not actor.is_system and change.organization_id != actor.organization_id:
        raise NotFoundError("Change", change_id)
    return change


def _conditional_status_update(change_id: str, from_status: str, values: dict) -> bool:
    """``UPDATE changes SET ... WHERE id = :id AND status = :from``; True if the row matched."""
    matched = (
        Change.query
        .filter(Change.id == change_id, Change.status == from_status)
        .update(values, synchronize_session="evaluate")
    )
    return matched == 1


def transition_change(
    change_id: str,
    target: str,
    actor: Actor,
    *,
    expected_status: str | None = None,
    comments: str | None = None,
    event: str | None = None,
    now: datetime | None = None,
) -> Change:
    """
    Move a change to ``target`` status.

    Args:
        change_id: The change to move.
        target: Desired status.
        actor: Who is acting (``SYSTEM_ACTOR`` for the scheduler).
        expected_status: The status the caller based its decision on.
            When given and different from the stored status, nothing is
            evaluated and ConcurrencyConflictError is raised.
        comments: Free text recorded on the approval / completion row and
            the status history.
        event: Notification type override (e.g. ``change_rejected`` for a
            rejection, which shares the pending → cancelled edge with cancel).
        now: Clock value for every timestamp written.

    Returns:
        The updated Change.

    Raises:
        NotFoundError, ValidationError, AuthorizationError, ConcurrencyConflictError.
    """
    now = now or utcnow()
    try:
        change = _load_change(change_id, actor)
        from_status = change.status
        if expected_status is not None and from_status != expected_status:
            raise ConcurrencyConflictError(change_id, expected_status, from_status)

        decision = evaluate_transition(change, target, actor)
        decision.raise_if_denied()

        values = {"status": target, "updated_at": now, "completed_at": None}
        if SideEffect.SET_COMPLETED_AT in decision.side_effects:
            values["completed_at"] = now
        if not _conditional_status_update(change.id, from_status, values):
            raise ConcurrencyConflictError(change_id, from_status)

        event = _resolve_event(decision.rule, actor, event)
        _apply_side_effects(change, decision, actor, now, comments, event)
        db.session.add(ChangeStatusHistory(
            change_id=change.id,
            organization_id=change.organization_id,
            from_status=from_status,
            to_status=target,
            changed_by=actor.user_id,
            comment=comments or _HISTORY_COMMENTS.get(event),
            changed_at=now,
        ))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Change %s transitioned %s → %s by %s",
        change.change_number, from_status, target, actor.user_id or "scheduler",
        extra={"change_id": change.id, "actor_id": actor.user_id},
    )
    if SideEffect.NOTIFY in decision.side_effects:
        # The transition is committed; a notification failure must not surface as its failure
        try:
            _notify_transition(change, from_status, actor, event, comments)
        except Exception:
            db.session.rollback()
            logger.exception(
                "Notifications for change %s (%s) failed", change.id, event,
                extra={"change_id": change.id},
            )
    return change


def _resolve_event(rule: TransitionRule, actor: Actor, event: str | None) -> str:
    if event:
        return event
    if rule.event == "change_started" and actor.is_system:
        return "change_auto_started"
    return rule.event


def _open_approval(change_id: str) -> ChangeApproval | None:
    return ChangeApproval.query.filter_by(change_id=change_id, status="pending").first()


def _pending_automations(change_id: str, automation_type: str | None = None):
    q = ChangeAutomation.query.filter_by(change_id=change_id, executed=False)
    if automation_type:
        q = q.filter_by(automation_type=automation_type)
    return q.all()


def _apply_side_effects(change, decision, actor, now, comments, event) -> None:
    for effect in decision.side_effects:
        if effect is SideEffect.OPEN_APPROVAL:
            if _open_approval(change.id) is not None:
                raise ValidationError("Change already has an open approval request")
            db.session.add(ChangeApproval(
                change_id=change.id,
                organization_id=change.organization_id,
                requested_by=actor.user_id or change.requested_by,
                status="pending",
                requested_at=now,
            ))

        elif effect in (SideEffect.APPROVE_APPROVAL, SideEffect.REJECT_APPROVAL):
            approval = _open_approval(change.id)
            if approval is None:
                # Pending without an approval row (e.g. imported data): record the decision anyway.
                approval = ChangeApproval(
                    change_id=change.id,
                    organization_id=change.organization_id,
                    requested_by=change.requested_by,
                    requested_at=now,
                )
                db.session.add(approval)
            approval.status = "approved" if effect is SideEffect.APPROVE_APPROVAL else "rejected"
            approval.approved_by = actor.user_id
            approval.comments = comments or _HISTORY_COMMENTS.get(event)
            approval.responded_at = now

        elif effect is SideEffect.SCHEDULE_AUTOMATIONS:
            _schedule_automations(change)

        elif effect is SideEffect.CANCEL_AUTOMATIONS:
            reason = "Change was rejected" if event == "change_rejected" else "Change was manually cancelled"
            for automation in _pending_automations(change.id):
                automation.mark_executed(now, error_message=reason)

        elif effect is SideEffect.RECORD_AUTO_START:
            pending = _pending_automations(change.id, "auto_start")
            if actor.is_system:
                if pending:
                    for automation in pending:
                        automation.mark_executed(now)
                else:
                    db.session.add(ChangeAutomation(
                        change_id=change.id,
                        organization_id=change.organization_id,
                        automation_type="auto_start",
                        scheduled_for=change.scheduled_for or now,
                        executed=True,
                        executed_at=now,
                    ))
            else:
                for automation in pending:
                    automation.mark_executed(now, error_message="Change was started manually")

        elif effect is SideEffect.CLOSE_COMPLETION_PROMPT:
            for automation in _pending_automations(change.id, "completion_prompt"):
                automation.mark_executed(now)

        elif effect is SideEffect.RECORD_COMPLETION_RESPONSE:
            db.session.add(ChangeCompletionResponse(
                change_id=change.id,
                organization_id=change.organization_id,
                outcome=decision.target,
                notes=comments,
                responded_by=actor.user_id,
                responded_at=now,
            ))


# automation type -> the Change column that says when it is due
AUTOMATION_TIME_FIELDS = {
    "auto_start": "scheduled_for",
    "completion_prompt": "estimated_end_time",
}


def _queue_automation(change, automation_type: str, when) -> None:
    db.session.add(ChangeAutomation(
        change_id=change.id,
        organization_id=change.organization_id,
        automation_type=automation_type,
        scheduled_for=when,
    ))


def _schedule_automations(change) -> None:
    """Queue auto-start / completion-prompt rows for a newly approved change."""
    for automation_type, field_name in AUTOMATION_TIME_FIELDS.items():
        when = getattr(change, field_name)
        if when is None or _pending_automations(change.id, automation_type):
            continue
        _queue_automation(change, automation_type, when)


def reschedule_automations(change, changed_fields, now: datetime) -> None:
    """
    Keep pending automation rows in step with edited schedule fields.

    A moved time moves the pending row; a cleared time closes it; a time
    added to an approved change with no pending row queues one. The caller
    commits.
    """
    for automation_type, field_name in AUTOMATION_TIME_FIELDS.items():
        if field_name not in changed_fields:
            continue
        when = getattr(change, field_name)
        pending = _pending_automations(change.id, automation_type)
        if when is None:
            for automation in pending:
                automation.mark_executed(now, error_message="Schedule was removed")
        elif pending:
            for automation in pending:
                automation.scheduled_for = when
        elif change.status == "approved":
            _queue_automation(change, automation_type, when)


def _manager_ids(organization_id) -> list[str]:
    return [
        p.id for p in Profile.query_for_organization(organization_id)
        .filter(Profile.role.in_(MANAGER_ROLES))
        .order_by(Profile.created_at, Profile.email)
        .all()
    ]


def _notify_transition(change, from_status, actor, event, comments) -> None:
    data = {
        "from_status": from_status,
        "to_status": change.status,
        "actor_id": actor.user_id,
    }
    if comments:
        data["comments"] = comments
    NotificationService.deliver(
        derive_recipients(change, actor.user_id),
        event,
        change_notification_payload(change, event, **data),
    )
    if event == "change_submitted":
        NotificationService.deliver(
            approval_request_recipients(_manager_ids(change.organization_id), actor.user_id),
            "change_approval_request",
            change_notification_payload(change, "change_approval_request", requested_by=actor.user_id),
        )


# ═════════════════════════════════════════════════════════════════════════════
# Lifecycle actions
# ═════════════════════════════════════════════════════════════════════════════


def submit_for_approval(change_id: str, actor: Actor, *, now=None) -> Change:
    """draft → pending; opens the approval request."""
    return transition_change(change_id, "pending", actor, now=now)


def decide_approval(change_id: str, actor: Actor, action: str, comments: str | None = None, *, now=None) -> Change:
    """Resolve the open approval request: ``approve`` or ``reject``."""
    if action not in ("approve", "reject"):
        raise ValidationError('Invalid action. Must be "approve" or "reject"', details={"action": action})
    change = _load_change(change_id, actor)
    if change.status != "pending":
        raise ValidationError(
            f"Can only {action} pending changes (change is {change.status})", transition=True,
        )
    if action == "approve":
        return transition_change(change_id, "approved", actor, expected_status="pending",
                                 comments=comments, now=now)
    return transition_change(change_id, "cancelled", actor, expected_status="pending",
                             comments=comments, event="change_rejected", now=now)


def cancel_change(change_id: str, actor: Actor, reason: str | None = None, *, now=None) -> Change:
    """Cancel a draft, pending or approved change."""
    comments = f"Cancelled by manager: {reason}" if reason else None
    return transition_change(change_id, "cancelled", actor, comments=comments, now=now)


def start_change(change_id: str, actor: Actor, *, now=None) -> Change:
    """approved → in_progress, by the assignee (the scheduler uses ``transition_change`` directly)."""
    return transition_change(change_id, "in_progress", actor, now=now)


def record_completion(change_id: str, actor: Actor, outcome: str, notes: str | None = None, *, now=None) -> Change:
    """in_progress → completed | failed, recording the completion response."""
    if outcome not in COMPLETION_OUTCOMES:
        raise ValidationError(
            'Invalid outcome. Must be "completed" or "failed"', details={"outcome": outcome},
        )
    return transition_change(change_id, outcome, actor,
                             comments=notes, now=now)
