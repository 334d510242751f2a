"""
Optimistic concurrency tests.

The status write is ``UPDATE ... WHERE id = :id AND status = :from``. These
tests move the row underneath an in-memory Change and check that the losing
transition writes nothing: no status, no history, no approval, no
automation, no notification.
"""

from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from itsm.core.exceptions import ConcurrencyConflictError, ValidationError
from itsm.models import db
from itsm.models.auth import Profile
from itsm.models.change import Change, ChangeApproval, ChangeAutomation, ChangeStatusHistory
from itsm.models.notification import Notification
from itsm.services.change_lifecycle import (
    SYSTEM_ACTOR,
    Actor,
    cancel_change,
    decide_approval,
    transition_change,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _move_behind_the_session(change_id, status):
    """Change the stored status without refreshing objects already in the session."""
    db.session.execute(
        sa.update(Change).where(Change.id == change_id).values(status=status),
        execution_options={"synchronize_session": False},
    )


class TestConditionalWrite:

    def test_stale_read_raises_conflict_and_writes_nothing(self, make_change, manager):
        change = make_change("approved", scheduled_for=NOW - timedelta(minutes=1))
        assert change.status == "approved"  # loaded into the identity map
        _move_behind_the_session(change.id, "cancelled")

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            transition_change(change.id, "in_progress", SYSTEM_ACTOR, now=NOW)

        assert exc_info.value.retryable is True
        assert exc_info.value.expected_status == "approved"
        assert ChangeStatusHistory.query.count() == 0
        assert ChangeAutomation.query.count() == 0
        assert Notification.query.count() == 0

    def test_stale_cancel_does_not_resurrect(self, make_change, manager):
        change = make_change("pending")
        assert change.status == "pending"
        _move_behind_the_session(change.id, "approved")

        with pytest.raises(ConcurrencyConflictError):
            cancel_change(change.id, Actor.from_profile(manager), reason="Too risky", now=NOW)

        # The rollback discarded the uncommitted move as well; the row is untouched.
        assert db.session.get(Change, change.id).status == "pending"
        assert ChangeStatusHistory.query.count() == 0

    def test_expected_status_mismatch_is_a_conflict(self, make_change, manager):
        change = make_change("cancelled")
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            transition_change(
                change.id, "in_progress", SYSTEM_ACTOR, expected_status="approved", now=NOW,
            )
        assert exc_info.value.actual_status == "cancelled"

    def test_without_expected_status_a_wrong_status_is_validation(self, make_change, assignee):
        change = make_change("cancelled")
        with pytest.raises(ValidationError):
            transition_change(change.id, "in_progress", Actor.from_profile(assignee), now=NOW)


class TestRacingActors:

    def test_second_approver_loses(self, make_change, requester, manager):
        second_manager = Profile(
            email="manager2@acme.test", full_name="Manager2", role="admin",
            organization_id=manager.organization_id,
        )
        db.session.add(second_manager)
        change = make_change("pending")
        db.session.add(ChangeApproval(
            change_id=change.id, organization_id=change.organization_id,
            requested_by=requester.id, status="pending", requested_at=NOW,
        ))
        db.session.commit()
        assert change.status == "pending"

        # The second manager read "pending"; the first approval lands in between.
        _move_behind_the_session(change.id, "approved")

        with pytest.raises(ConcurrencyConflictError):
            decide_approval(change.id, Actor.from_profile(second_manager), "reject", now=NOW)

        approval = ChangeApproval.query.filter_by(change_id=change.id).one()
        assert approval.status == "pending"
        assert ChangeStatusHistory.query.count() == 0

    def test_decision_after_another_decision_is_rejected(self, make_change, requester, manager):
        change = make_change("pending")
        decide_approval(change.id, Actor.from_profile(manager), "approve", now=NOW)

        with pytest.raises(ValidationError):
            decide_approval(change.id, Actor.from_profile(manager), "reject", now=NOW)

        approval = ChangeApproval.query.filter_by(change_id=change.id).one()
        assert approval.status == "approved"
        assert approval.approved_by == manager.id

    def test_scheduler_loses_to_manual_cancel(self, make_change, manager):
        change = make_change("approved", scheduled_for=NOW - timedelta(minutes=1))

        cancel_change(change.id, Actor.from_profile(manager), reason="Freeze", now=NOW)

        with pytest.raises(ConcurrencyConflictError):
            transition_change(
                change.id, "in_progress", SYSTEM_ACTOR, expected_status="approved", now=NOW,
            )
        assert db.session.get(Change, change.id).status == "cancelled"
        history = ChangeStatusHistory.query.filter_by(change_id=change.id).all()
        assert [(h.from_status, h.to_status) for h in history] == [("approved", "cancelled")]

    def test_manual_cancel_loses_to_scheduler(self, make_change, manager):
        change = make_change("approved", scheduled_for=NOW - timedelta(minutes=1))

        transition_change(change.id, "in_progress", SYSTEM_ACTOR, expected_status="approved", now=NOW)

        with pytest.raises(ConcurrencyConflictError):
            transition_change(
                change.id, "cancelled", Actor.from_profile(manager), expected_status="approved", now=NOW,
            )
        assert db.session.get(Change, change.id).status == "in_progress"
