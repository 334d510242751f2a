"""
State-machine tests for the change lifecycle.

Covers:
    1. evaluate_transition (pure, no database):
       - every edge of CHANGE_TRANSITIONS is allowed for a qualified actor
       - every (from, to) pair outside the table is a validation error
       - terminal states have no outgoing edges
       - actor rules: managers approve / reject / cancel, the assignee or the
         scheduler starts, the assignee or a manager records the outcome
       - completed_at is set exactly on → completed, cleared everywhere else

    2. transition_change and the lifecycle actions (database):
       - draft → pending opens exactly one approval and asks managers to approve
       - approve / reject resolve the open approval; approve schedules automations
       - cancel closes automations and the open approval
       - completion records the response and closes the completion prompt
       - status history rows, notification fan-out, organization scoping
"""

import itertools
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import SQLAlchemyError

from itsm.core.exceptions import AuthorizationError, NotFoundError, ValidationError
from itsm.models import db
from itsm.models.change import (
    CHANGE_STATUSES,
    TERMINAL_CHANGE_STATUSES,
    Change,
    ChangeApproval,
    ChangeAutomation,
    ChangeCompletionResponse,
    ChangeStatusHistory,
)
from itsm.models.notification import Notification
from itsm.services.change_lifecycle import (
    CHANGE_TRANSITIONS,
    SYSTEM_ACTOR,
    Actor,
    SideEffect,
    allowed_targets,
    cancel_change,
    decide_approval,
    evaluate_transition,
    record_completion,
    start_change,
    submit_for_approval,
    transition_change,
)
from itsm.services.notification import NotificationService
from itsm.utils.helpers import ensure_utc

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

MANAGER = Actor(user_id="u-manager", role="manager", organization_id="org")
ASSIGNEE = Actor(user_id="u-assignee", role="member", organization_id="org")
MEMBER = Actor(user_id="u-member", role="member", organization_id="org")

_OUTSIDE_TABLE = [
    pair for pair in itertools.product(CHANGE_STATUSES, repeat=2) if pair not in CHANGE_TRANSITIONS
]


def _change(status, assigned_to="u-assignee"):
    return SimpleNamespace(status=status, assigned_to=assigned_to, requested_by="u-requester")


def _notifications():
    return {(n.user_id, n.type) for n in Notification.query.all()}


# ═════════════════════════════════════════════════════════════════════════════
# 1. evaluate_transition
# ═════════════════════════════════════════════════════════════════════════════


class TestEvaluateTransition:

    @pytest.mark.parametrize("from_status,to_status", sorted(CHANGE_TRANSITIONS))
    def test_every_edge_is_allowed_for_a_qualified_actor(self, from_status, to_status):
        actor = SYSTEM_ACTOR if (from_status, to_status) == ("approved", "in_progress") else MANAGER
        decision = evaluate_transition(_change(from_status), to_status, actor)
        assert decision.allowed, decision.reason
        assert decision.side_effects == CHANGE_TRANSITIONS[(from_status, to_status)].side_effects

    @pytest.mark.parametrize("from_status,to_status", _OUTSIDE_TABLE)
    def test_pairs_outside_the_table_are_validation_errors(self, from_status, to_status):
        decision = evaluate_transition(_change(from_status), to_status, MANAGER)
        assert not decision.allowed
        assert decision.error_kind == "validation"
        with pytest.raises(ValidationError):
            decision.raise_if_denied()

    @pytest.mark.parametrize("status", sorted(TERMINAL_CHANGE_STATUSES))
    def test_terminal_states_have_no_outgoing_edges(self, status):
        assert allowed_targets(status) == []

    def test_unknown_target_status(self):
        decision = evaluate_transition(_change("draft"), "archived", MANAGER)
        assert decision.error_kind == "validation"
        assert "Invalid status" in decision.reason

    @pytest.mark.parametrize("from_status,to_status", sorted(CHANGE_TRANSITIONS))
    def test_completed_at_set_only_on_completion(self, from_status, to_status):
        effects = CHANGE_TRANSITIONS[(from_status, to_status)].side_effects
        if to_status == "completed":
            assert SideEffect.SET_COMPLETED_AT in effects
            assert SideEffect.CLEAR_COMPLETED_AT not in effects
        else:
            assert SideEffect.CLEAR_COMPLETED_AT in effects
            assert SideEffect.SET_COMPLETED_AT not in effects

    def test_every_edge_notifies(self):
        assert all(SideEffect.NOTIFY in rule.side_effects for rule in CHANGE_TRANSITIONS.values())


class TestActorRules:

    def test_anyone_may_submit(self):
        assert evaluate_transition(_change("draft"), "pending", MEMBER).allowed

    @pytest.mark.parametrize("role", ["owner", "admin", "manager"])
    def test_manager_roles_may_approve(self, role):
        actor = Actor(user_id="u-x", role=role)
        assert evaluate_transition(_change("pending"), "approved", actor).allowed

    @pytest.mark.parametrize("role", ["member", "viewer", None])
    def test_other_roles_may_not_approve(self, role):
        decision = evaluate_transition(_change("pending"), "approved", Actor(user_id="u-x", role=role))
        assert decision.error_kind == "authorization"
        with pytest.raises(AuthorizationError):
            decision.raise_if_denied()

    def test_member_may_not_cancel(self):
        decision = evaluate_transition(_change("approved"), "cancelled", MEMBER)
        assert decision.error_kind == "authorization"

    def test_scheduler_and_assignee_may_start(self):
        assert evaluate_transition(_change("approved"), "in_progress", SYSTEM_ACTOR).allowed
        assert evaluate_transition(_change("approved"), "in_progress", ASSIGNEE).allowed

    def test_manager_who_is_not_assignee_may_not_start(self):
        decision = evaluate_transition(_change("approved"), "in_progress", MANAGER)
        assert decision.error_kind == "authorization"

    @pytest.mark.parametrize("target", ["completed", "failed"])
    def test_outcome_recorded_by_assignee_or_manager(self, target):
        assert evaluate_transition(_change("in_progress"), target, ASSIGNEE).allowed
        assert evaluate_transition(_change("in_progress"), target, MANAGER).allowed
        assert evaluate_transition(_change("in_progress"), target, MEMBER).error_kind == "authorization"

    def test_validation_reported_before_authorization(self):
        decision = evaluate_transition(_change("completed"), "cancelled", MEMBER)
        assert decision.error_kind == "validation"


# ═════════════════════════════════════════════════════════════════════════════
# 2. transition_change & lifecycle actions
# ═════════════════════════════════════════════════════════════════════════════


class TestSubmitAndApprove:

    def test_submit_opens_one_approval_and_asks_managers(self, make_change, requester, assignee, manager):
        change = make_change("draft")
        submit_for_approval(change.id, Actor.from_profile(requester), now=NOW)

        change = db.session.get(Change, change.id)
        assert change.status == "pending"
        approvals = ChangeApproval.query.filter_by(change_id=change.id).all()
        assert len(approvals) == 1
        assert approvals[0].status == "pending"
        assert approvals[0].requested_by == requester.id

        sent = _notifications()
        assert (assignee.id, "change_submitted") in sent
        assert (manager.id, "change_approval_request") in sent
        assert not any(user_id == requester.id for user_id, _ in sent)

    def test_submit_twice_is_rejected(self, make_change, requester):
        change = make_change("draft")
        submit_for_approval(change.id, Actor.from_profile(requester), now=NOW)
        with pytest.raises(ValidationError):
            submit_for_approval(change.id, Actor.from_profile(requester), now=NOW)
        assert ChangeApproval.query.filter_by(change_id=change.id).count() == 1

    def test_approve_resolves_approval_and_schedules_automations(
        self, make_change, requester, assignee, manager,
    ):
        change = make_change(
            "draft",
            scheduled_for=NOW + timedelta(hours=1),
            estimated_end_time=NOW + timedelta(hours=3),
        )
        submit_for_approval(change.id, Actor.from_profile(requester), now=NOW)
        decide_approval(change.id, Actor.from_profile(manager), "approve", "Looks good", now=NOW)

        assert db.session.get(Change, change.id).status == "approved"
        approval = ChangeApproval.query.filter_by(change_id=change.id).one()
        assert approval.status == "approved"
        assert approval.approved_by == manager.id
        assert approval.comments == "Looks good"
        assert approval.responded_at is not None

        automations = ChangeAutomation.query.filter_by(change_id=change.id).all()
        assert sorted(a.automation_type for a in automations) == ["auto_start", "completion_prompt"]
        assert not any(a.executed for a in automations)

        sent = _notifications()
        assert (requester.id, "change_approved") in sent
        assert (assignee.id, "change_approved") in sent

    def test_approve_without_schedule_creates_no_automations(self, make_change, requester, manager):
        change = make_change("draft")
        submit_for_approval(change.id, Actor.from_profile(requester), now=NOW)
        decide_approval(change.id, Actor.from_profile(manager), "approve", now=NOW)
        assert ChangeAutomation.query.filter_by(change_id=change.id).count() == 0

    def test_reject_cancels_change_and_rejects_approval(self, make_change, requester, manager):
        change = make_change("draft")
        submit_for_approval(change.id, Actor.from_profile(requester), now=NOW)
        decide_approval(change.id, Actor.from_profile(manager), "reject", "Too risky", now=NOW)

        assert db.session.get(Change, change.id).status == "cancelled"
        approval = ChangeApproval.query.filter_by(change_id=change.id).one()
        assert approval.status == "rejected"
        assert approval.comments == "Too risky"
        assert (requester.id, "change_rejected") in _notifications()

    def test_non_manager_cannot_approve(self, make_change, requester, member):
        change = make_change("draft")
        submit_for_approval(change.id, Actor.from_profile(requester), now=NOW)

        with pytest.raises(AuthorizationError):
            decide_approval(change.id, Actor.from_profile(member), "approve", now=NOW)

        assert db.session.get(Change, change.id).status == "pending"
        assert ChangeApproval.query.filter_by(change_id=change.id).one().status == "pending"

    def test_decide_requires_pending_change(self, make_change, manager):
        change = make_change("draft")
        with pytest.raises(ValidationError):
            decide_approval(change.id, Actor.from_profile(manager), "approve", now=NOW)

    def test_decide_rejects_unknown_action(self, make_change, manager):
        change = make_change("pending")
        with pytest.raises(ValidationError):
            decide_approval(change.id, Actor.from_profile(manager), "maybe", now=NOW)


class TestCancel:

    @pytest.mark.parametrize("status", ["draft", "pending", "approved"])
    def test_cancel_from_cancellable_status(self, status, make_change, requester, assignee, manager):
        change = make_change(status, scheduled_for=NOW + timedelta(hours=2))
        if status == "pending":
            db.session.add(ChangeApproval(change_id=change.id, requested_by=requester.id, status="pending"))
        if status == "approved":
            db.session.add(ChangeAutomation(
                change_id=change.id, automation_type="auto_start", scheduled_for=change.scheduled_for,
            ))
        db.session.commit()

        cancel_change(change.id, Actor.from_profile(manager), reason="Vendor delayed", now=NOW)

        assert db.session.get(Change, change.id).status == "cancelled"
        for automation in ChangeAutomation.query.filter_by(change_id=change.id):
            assert automation.executed
            assert automation.error_message == "Change was manually cancelled"
        if status == "pending":
            approval = ChangeApproval.query.filter_by(change_id=change.id).one()
            assert approval.status == "rejected"
            assert approval.comments == "Cancelled by manager: Vendor delayed"
        sent = _notifications()
        assert (requester.id, "change_cancelled") in sent
        assert (assignee.id, "change_cancelled") in sent

    def test_cancel_completed_change_is_rejected(self, make_change, manager):
        change = make_change("completed")
        completed_at = change.completed_at

        with pytest.raises(ValidationError) as exc_info:
            cancel_change(change.id, Actor.from_profile(manager), reason="Too late", now=NOW)

        assert "Can only cancel changes in draft, pending, approved" in str(exc_info.value)
        change = db.session.get(Change, change.id)
        assert change.status == "completed"
        assert change.completed_at == completed_at
        assert ChangeStatusHistory.query.filter_by(change_id=change.id).count() == 0
        assert Notification.query.count() == 0

    def test_member_cannot_cancel(self, make_change, member):
        change = make_change("approved")
        with pytest.raises(AuthorizationError):
            cancel_change(change.id, Actor.from_profile(member), now=NOW)
        assert db.session.get(Change, change.id).status == "approved"


class TestStartAndComplete:

    def test_manual_start_closes_pending_auto_start(self, make_change, assignee):
        change = make_change("approved", scheduled_for=NOW + timedelta(hours=4))
        db.session.add(ChangeAutomation(
            change_id=change.id, automation_type="auto_start", scheduled_for=change.scheduled_for,
        ))
        db.session.commit()

        start_change(change.id, Actor.from_profile(assignee), now=NOW)

        assert db.session.get(Change, change.id).status == "in_progress"
        automation = ChangeAutomation.query.filter_by(change_id=change.id).one()
        assert automation.executed
        assert automation.error_message == "Change was started manually"

    def test_scheduler_start_records_executed_auto_start(self, make_change, requester, assignee):
        change = make_change("approved", scheduled_for=NOW - timedelta(minutes=5))

        transition_change(change.id, "in_progress", SYSTEM_ACTOR, expected_status="approved", now=NOW)

        automation = ChangeAutomation.query.filter_by(change_id=change.id).one()
        assert automation.automation_type == "auto_start"
        assert automation.executed
        assert automation.error_message is None
        sent = _notifications()
        assert (requester.id, "change_auto_started") in sent
        assert (assignee.id, "change_auto_started") in sent

    def test_completion_sets_completed_at_and_records_response(self, make_change, assignee):
        change = make_change("in_progress", estimated_end_time=NOW - timedelta(hours=1))
        db.session.add(ChangeAutomation(
            change_id=change.id, automation_type="completion_prompt",
            scheduled_for=change.estimated_end_time,
        ))
        db.session.commit()

        record_completion(change.id, Actor.from_profile(assignee), "completed", "All green", now=NOW)

        change = db.session.get(Change, change.id)
        assert change.status == "completed"
        assert ensure_utc(change.completed_at) == NOW
        response = ChangeCompletionResponse.query.filter_by(change_id=change.id).one()
        assert response.outcome == "completed"
        assert response.notes == "All green"
        assert response.responded_by == assignee.id
        assert ChangeAutomation.query.filter_by(change_id=change.id).one().executed

    def test_failure_leaves_completed_at_empty(self, make_change, manager):
        change = make_change("in_progress")
        record_completion(change.id, Actor.from_profile(manager), "failed", "Rolled back", now=NOW)
        change = db.session.get(Change, change.id)
        assert change.status == "failed"
        assert change.completed_at is None

    def test_completion_rejects_unknown_outcome(self, make_change, assignee):
        change = make_change("in_progress")
        with pytest.raises(ValidationError):
            record_completion(change.id, Actor.from_profile(assignee), "done", now=NOW)


class TestHistoryAndScoping:

    def test_full_lifecycle_writes_history(self, make_change, requester, assignee, manager):
        change = make_change("draft")
        submit_for_approval(change.id, Actor.from_profile(requester), now=NOW)
        decide_approval(change.id, Actor.from_profile(manager), "approve", now=NOW)
        start_change(change.id, Actor.from_profile(assignee), now=NOW)
        record_completion(change.id, Actor.from_profile(assignee), "completed", now=NOW)

        rows = ChangeStatusHistory.query.filter_by(change_id=change.id).all()
        assert sorted((r.from_status, r.to_status) for r in rows) == sorted([
            ("draft", "pending"),
            ("pending", "approved"),
            ("approved", "in_progress"),
            ("in_progress", "completed"),
        ])
        by_edge = {(r.from_status, r.to_status): r for r in rows}
        assert by_edge[("pending", "approved")].changed_by == manager.id
        assert by_edge[("approved", "in_progress")].changed_by == assignee.id

    def test_unknown_change(self, manager):
        with pytest.raises(NotFoundError):
            cancel_change("missing-id", Actor.from_profile(manager), now=NOW)

    def test_other_organization_sees_not_found(self, make_change, outsider):
        change = make_change("approved")
        with pytest.raises(NotFoundError):
            cancel_change(change.id, Actor.from_profile(outsider), now=NOW)
        assert db.session.get(Change, change.id).status == "approved"

    def test_notification_failure_does_not_undo_transition(self, make_change, manager, monkeypatch):
        def _boom(*args, **kwargs):
            raise SQLAlchemyError("notifications table unavailable")

        monkeypatch.setattr(NotificationService, "notify", staticmethod(_boom))
        change = make_change("approved")

        cancel_change(change.id, Actor.from_profile(manager), now=NOW)

        assert db.session.get(Change, change.id).status == "cancelled"
        assert ChangeStatusHistory.query.filter_by(change_id=change.id).count() == 1
