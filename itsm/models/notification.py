"""
ITSM Change Lifecycle Engine
Notification model.

Notifications are written by the change lifecycle (one row per recipient
per event) and read back through the per-user notification API.
"""

from itsm.models import db
from itsm.models.base import OrganizationModel, new_id
from itsm.utils.helpers import isoformat_utc, utcnow

NOTIFICATION_TYPES = {
    "change_submitted",
    "change_approval_request",
    "change_approved",
    "change_rejected",
    "change_cancelled",
    "change_started",
    "change_auto_started",
    "change_completed",
    "change_failed",
    "change_completion_prompt",
}


class Notification(OrganizationModel):
    """A message to one user about one change event."""

    __tablename__ = "notifications"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), nullable=False, index=True)
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    data = db.Column(db.JSON, default=dict)

    change_id = db.Column(
        db.String(36), db.ForeignKey("changes.id", ondelete="CASCADE"), nullable=True, index=True,
    )

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    read_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def mark_read(self, at=None):
        if not self.is_read:
            self.is_read = True
            self.read_at = at or utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "data": self.data or {},
            "change_id": self.change_id,
            "is_read": self.is_read,
            "read_at": isoformat_utc(self.read_at),
            "created_at": isoformat_utc(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.type} -> {self.user_id}>"
