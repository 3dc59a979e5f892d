"""
Shared pytest fixtures for the Advisory Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - team_a / team_b, alice / carol (team A), bob (team B), admin
    - sheet: draft sheet with three entries
    - distributed: the sheet distributed to team A and team B
"""

import pytest

from advisory_tracker import create_app
from advisory_tracker.models import db as _db
from advisory_tracker.models.sheet import Sheet, SheetEntry
from advisory_tracker.models.team import Team, User


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


def _team(name: str) -> Team:
    t = Team(name=name, description=f"{name} operations")
    _db.session.add(t)
    _db.session.commit()
    return t


def _user(username: str, team: Team | None = None, role: str = "member") -> User:
    u = User(username=username, full_name=username.title(), role=role,
             team_id=team.id if team else None)
    _db.session.add(u)
    _db.session.commit()
    return u


@pytest.fixture()
def team_a():
    return _team("Distribution")


@pytest.fixture()
def team_b():
    return _team("Transmission")


@pytest.fixture()
def alice(team_a):
    return _user("alice", team_a)


@pytest.fixture()
def carol(team_a):
    return _user("carol", team_a)


@pytest.fixture()
def bob(team_b):
    return _user("bob", team_b)


@pytest.fixture()
def admin():
    return _user("root", role="admin")


@pytest.fixture()
def sheet():
    """Draft sheet with three entries (rows 1..3), committed."""
    s = Sheet(title="October Advisories")
    _db.session.add(s)
    _db.session.flush()
    for i, (product, risk) in enumerate(
        [("Apache Tomcat", "High"), ("OpenSSL", "Critical"), ("Siemens S7 PLC", "Medium")],
        start=1,
    ):
        _db.session.add(SheetEntry(
            sheet_id=s.id, row_number=i, product_name=product, oem_vendor="Vendor",
            risk_level=risk, cve=f"CVE-2026-000{i}", source="CERT-In",
        ))
    _db.session.commit()
    return s


@pytest.fixture()
def entries(sheet):
    return (
        SheetEntry.query.filter_by(sheet_id=sheet.id)
        .order_by(SheetEntry.row_number)
        .all()
    )


@pytest.fixture()
def distributed(sheet, team_a, team_b, admin):
    """Distribute ``sheet`` to both teams and return the service result."""
    from advisory_tracker.services.fanout_service import distribute

    return distribute(sheet.id, [team_a.id, team_b.id], distributed_by=admin.id)
