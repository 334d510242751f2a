"""
ITSM Change Lifecycle Engine
Profile model: local mirror of identity-provider users.

Roles are always read from this table, never from request input.
"""

from datetime import datetime, timezone

from itsm.models import db
from itsm.models.base import OrganizationModel, new_id

# ── Constants ────────────────────────────────────────────────────────────────

ROLES = ("owner", "admin", "manager", "member", "viewer")
MANAGER_ROLES = frozenset({"owner", "admin", "manager"})


class Profile(OrganizationModel):
    __tablename__ = "profiles"
    __table_args__ = (
        db.CheckConstraint(
            "role IN ({})".format(", ".join(f"'{r}'" for r in ROLES)),
            name="ck_profiles_role",
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), nullable=False, unique=True)
    full_name = db.Column(db.String(200), default="")
    role = db.Column(db.String(20), nullable=False, default="member")

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def is_manager(self) -> bool:
        return self.role in MANAGER_ROLES

    def to_dict(self):
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
        }

    def __repr__(self):
        return f"<Profile {self.email} [{self.role}]>"
