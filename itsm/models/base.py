"""
Organization-scoped model base.

Every row that belongs to a customer organization carries an
``organization_id`` column. Queries from the API layer go through
``query_for_organization`` so that one organization never reads another's
changes; a cross-organization lookup looks exactly like a missing record.
"""

import uuid

from itsm.models import db


def new_id() -> str:
    """Primary keys are UUID4 strings, matching the identity provider's user ids."""
    return str(uuid.uuid4())


class OrganizationModel(db.Model):
    """Abstract base for organization-owned tables."""

    __abstract__ = True

    organization_id = db.Column(db.String(36), nullable=True, index=True)

    @classmethod
    def query_for_organization(cls, organization_id):
        """Return a query filtered to one organization (``None`` means unscoped rows)."""
        if organization_id is None:
            return cls.query.filter(cls.organization_id.is_(None))
        return cls.query.filter(cls.organization_id == organization_id)
