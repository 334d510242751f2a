"""
Fixtures for the change lifecycle engine tests.

One app per session on in-memory SQLite; every test runs inside its own
app context against freshly created tables.

    - app / client
    - requester / assignee / manager / member / outsider: Profile rows
    - make_change: factory for Change rows in any status
    - token: signs an identity-provider access token (claims overridable)
    - headers: bearer-token Authorization header for a profile
"""

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from itsm import create_app
from itsm.models import db as _db
from itsm.models.auth import Profile
from itsm.models.change import Change

ORG_ID = "org-acme"
OTHER_ORG_ID = "org-globex"

# Fixed clock for scheduler tests
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """The ``testing`` app, built once."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Tables for the whole run."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Own app context per test; tables are dropped and recreated afterwards."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    return app.test_client()


# ── Profiles ─────────────────────────────────────────────────────────────


def _make_profile(role, email, organization_id=ORG_ID):
    profile = Profile(
        email=email, full_name=email.split("@")[0].title(), role=role, organization_id=organization_id,
    )
    _db.session.add(profile)
    _db.session.commit()
    return profile


@pytest.fixture()
def requester():
    return _make_profile("member", "requester@acme.test")


@pytest.fixture()
def assignee():
    return _make_profile("member", "assignee@acme.test")


@pytest.fixture()
def manager():
    return _make_profile("manager", "manager@acme.test")


@pytest.fixture()
def member():
    return _make_profile("member", "member@acme.test")


@pytest.fixture()
def outsider():
    """A manager of a different organization."""
    return _make_profile("admin", "admin@globex.test", organization_id=OTHER_ORG_ID)


@pytest.fixture()
def token(app):
    def _token(subject, *, secret=None, expires_in=timedelta(minutes=15), **claims):
        now = datetime.now(timezone.utc)
        payload = {"sub": subject, "iat": now, "exp": now + expires_in, **claims}
        return jwt.encode(payload, secret or app.config["JWT_SECRET_KEY"], algorithm="HS256")
    return _token


@pytest.fixture()
def headers(token):
    def _headers(profile):
        return {"Authorization": f"Bearer {token(profile.id)}"}
    return _headers


# ── Changes ──────────────────────────────────────────────────────────────


@pytest.fixture()
def make_change(requester, assignee):
    """Factory: a committed Change in the requested status.

    Defaults: requested by ``requester``, assigned to ``assignee``, in ORG_ID.
    """
    counter = {"n": 0}

    def _make(status="draft", **overrides):
        counter["n"] += 1
        values = {
            "organization_id": ORG_ID,
            "change_number": f"CHG-{counter['n']:04d}",
            "title": f"Patch database cluster #{counter['n']}",
            "description": "Apply minor version upgrade",
            "rollback_plan": "Restore from snapshot",
            "test_plan": "Run smoke tests",
            "priority": "medium",
            "requested_by": requester.id,
            "assigned_to": assignee.id,
            "status": status,
        }
        if status == "completed":
            values["completed_at"] = NOW - timedelta(hours=1)
        values.update(overrides)
        change = Change(**values)
        _db.session.add(change)
        _db.session.commit()
        return change

    return _make
