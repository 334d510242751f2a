"""
ITSM Change Lifecycle Engine
Change management domain models.

Models:
    - Change:                   the change record and its lifecycle status
    - ChangeApproval:           approval request opened on draft → pending (one open per change)
    - ChangeAutomation:         scheduled side effect (auto_start | completion_prompt)
    - ChangeCompletionResponse: the success / failure answer recorded on completion
    - ChangeStatusHistory:      one row per applied status transition

Lifecycle states:
    Change:          draft → pending → approved → in_progress → completed | failed
                     draft | pending | approved → cancelled
    ChangeApproval:  pending → approved | rejected

The legal moves and who may make them live in
``itsm.services.change_lifecycle``; the constraints below only guard the
invariants the database can check on its own.
"""

from datetime import datetime, timezone

from itsm.models import db
from itsm.models.base import OrganizationModel, new_id
from itsm.utils.helpers import isoformat_utc

# ── Constants ────────────────────────────────────────────────────────────────

CHANGE_STATUSES = (
    "draft", "pending", "approved", "in_progress", "completed", "failed", "cancelled",
)
TERMINAL_CHANGE_STATUSES = frozenset({"completed", "failed", "cancelled"})
CANCELLABLE_CHANGE_STATUSES = ("draft", "pending", "approved")
CHANGE_PRIORITIES = ("low", "medium", "high", "critical")

APPROVAL_STATUSES = ("pending", "approved", "rejected")
AUTOMATION_TYPES = ("auto_start", "completion_prompt")
COMPLETION_OUTCOMES = ("completed", "failed")


def _sql_in(column, values):
    return "{} IN ({})".format(column, ", ".join(f"'{v}'" for v in values))


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Change
# ═════════════════════════════════════════════════════════════════════════════


class Change(OrganizationModel):
    """
    A planned modification to production infrastructure or services.

    ``status`` is only ever written through the conditional update in
    ``transition_change``; every other field is free to edit while the
    change is open.
    """

    __tablename__ = "changes"
    __table_args__ = (
        db.CheckConstraint(_sql_in("status", CHANGE_STATUSES), name="ck_changes_status"),
        db.CheckConstraint(_sql_in("priority", CHANGE_PRIORITIES), name="ck_changes_priority"),
        db.CheckConstraint(
            "problem_id IS NULL OR incident_id IS NULL", name="ck_changes_single_link",
        ),
        db.CheckConstraint(
            "(status = 'completed' AND completed_at IS NOT NULL) "
            "OR (status <> 'completed' AND completed_at IS NULL)",
            name="ck_changes_completed_at",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    change_number = db.Column(db.String(20), nullable=False, index=True, comment="CHG-0001")

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=False)
    rollback_plan = db.Column(db.Text, nullable=False)
    test_plan = db.Column(db.Text, nullable=False)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)

    requested_by = db.Column(db.String(36), nullable=False, index=True)
    assigned_to = db.Column(db.String(36), nullable=True, index=True)

    scheduled_for = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    estimated_end_time = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    problem_id = db.Column(db.String(36), nullable=True, index=True)
    incident_id = db.Column(db.String(36), nullable=True, index=True)

    tags = db.Column(db.JSON, default=list)
    affected_services = db.Column(db.JSON, default=list)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # Relationships
    approvals = db.relationship(
        "ChangeApproval", backref="change", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ChangeApproval.requested_at",
    )
    automations = db.relationship(
        "ChangeAutomation", backref="change", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ChangeAutomation.scheduled_for",
    )
    completion_responses = db.relationship(
        "ChangeCompletionResponse", backref="change", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ChangeCompletionResponse.responded_at",
    )
    status_history = db.relationship(
        "ChangeStatusHistory", backref="change", lazy="dynamic",
        cascade="all, delete-orphan", order_by="ChangeStatusHistory.changed_at",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CHANGE_STATUSES

    def to_dict(self, include_children=False):
        d = {
            "id": self.id,
            "organization_id": self.organization_id,
            "change_number": self.change_number,
            "title": self.title,
            "description": self.description,
            "rollback_plan": self.rollback_plan,
            "test_plan": self.test_plan,
            "priority": self.priority,
            "status": self.status,
            "is_terminal": self.is_terminal,
            "requested_by": self.requested_by,
            "assigned_to": self.assigned_to,
            "scheduled_for": isoformat_utc(self.scheduled_for),
            "estimated_end_time": isoformat_utc(self.estimated_end_time),
            "completed_at": isoformat_utc(self.completed_at),
            "problem_id": self.problem_id,
            "incident_id": self.incident_id,
            "tags": self.tags or [],
            "affected_services": self.affected_services or [],
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
        }
        if include_children:
            d["approvals"] = [a.to_dict() for a in self.approvals]
            d["automations"] = [a.to_dict() for a in self.automations]
        return d

    def __repr__(self):
        return f"<Change {self.change_number} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# ChangeApproval
# ═════════════════════════════════════════════════════════════════════════════


class ChangeApproval(OrganizationModel):
    """
    Manager sign-off request for a change.

    At most one ``pending`` row per change; the partial unique index below
    backs up the check ``transition_change`` makes before opening one.
    """

    __tablename__ = "change_approvals"
    __table_args__ = (
        db.CheckConstraint(_sql_in("status", APPROVAL_STATUSES), name="ck_change_approvals_status"),
        db.Index(
            "uq_change_approvals_one_open",
            "change_id",
            unique=True,
            sqlite_where=db.text("status = 'pending'"),
            postgresql_where=db.text("status = 'pending'"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    change_id = db.Column(
        db.String(36), db.ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    requested_by = db.Column(db.String(36), nullable=True)
    approved_by = db.Column(db.String(36), nullable=True, comment="Manager who resolved the request")
    status = db.Column(db.String(20), nullable=False, default="pending")
    comments = db.Column(db.Text, nullable=True)
    requested_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    responded_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "change_id": self.change_id,
            "requested_by": self.requested_by,
            "approved_by": self.approved_by,
            "status": self.status,
            "comments": self.comments,
            "requested_at": isoformat_utc(self.requested_at),
            "responded_at": isoformat_utc(self.responded_at),
        }

    def __repr__(self):
        return f"<ChangeApproval {self.change_id} [{self.status}]>"


# ═════════════════════════════════════════════════════════════════════════════
# ChangeAutomation
# ═════════════════════════════════════════════════════════════════════════════


class ChangeAutomation(OrganizationModel):
    """
    A scheduled side effect attached to an approved change.

    ``executed`` flips once, whether the run succeeded or not; a failed or
    superseded run keeps the reason in ``error_message``.
    """

    __tablename__ = "change_automations"
    __table_args__ = (
        db.CheckConstraint(
            _sql_in("automation_type", AUTOMATION_TYPES), name="ck_change_automations_type",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    change_id = db.Column(
        db.String(36), db.ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    automation_type = db.Column(db.String(30), nullable=False)
    scheduled_for = db.Column(db.DateTime(timezone=True), nullable=False)
    executed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    executed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def mark_executed(self, now, error_message=None):
        self.executed = True
        self.executed_at = now
        self.error_message = error_message

    def to_dict(self):
        return {
            "id": self.id,
            "change_id": self.change_id,
            "automation_type": self.automation_type,
            "scheduled_for": isoformat_utc(self.scheduled_for),
            "executed": self.executed,
            "executed_at": isoformat_utc(self.executed_at),
            "error_message": self.error_message,
            "created_at": isoformat_utc(self.created_at),
        }

    def __repr__(self):
        state = "done" if self.executed else "pending"
        return f"<ChangeAutomation {self.automation_type} {self.change_id} [{state}]>"


# ═════════════════════════════════════════════════════════════════════════════
# Completion responses & status history
# ═════════════════════════════════════════════════════════════════════════════


class ChangeCompletionResponse(OrganizationModel):
    __tablename__ = "change_completion_responses"
    __table_args__ = (
        db.CheckConstraint(
            _sql_in("outcome", COMPLETION_OUTCOMES), name="ck_change_completion_outcome",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    change_id = db.Column(
        db.String(36), db.ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    outcome = db.Column(db.String(20), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    responded_by = db.Column(db.String(36), nullable=True)
    responded_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "change_id": self.change_id,
            "outcome": self.outcome,
            "notes": self.notes,
            "responded_by": self.responded_by,
            "responded_at": isoformat_utc(self.responded_at),
        }


class ChangeStatusHistory(OrganizationModel):
    """Audit trail of applied transitions. ``changed_by`` is null for the scheduler."""

    __tablename__ = "change_status_history"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    change_id = db.Column(
        db.String(36), db.ForeignKey("changes.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    from_status = db.Column(db.String(20), nullable=False)
    to_status = db.Column(db.String(20), nullable=False)
    changed_by = db.Column(db.String(36), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    changed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "change_id": self.change_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "changed_by": self.changed_by,
            "comment": self.comment,
            "changed_at": isoformat_utc(self.changed_at),
        }

    def __repr__(self):
        return f"<ChangeStatusHistory {self.change_id}: {self.from_status} → {self.to_status}>"
