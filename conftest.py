"""
Shared pytest fixtures. The environment is prepared before ``app`` is
imported so Config picks up the in-memory database and test settings.
"""
import os
import sys
import tempfile
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# Set testing environment before importing app
os.environ['TESTING'] = 'True'
os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['WTF_CSRF_ENABLED'] = 'False'
os.environ['MAIL_SUPPRESS_SEND'] = 'True'
os.environ.pop('REDIS_URL', None)
os.environ['SESSION_FILE_DIR'] = tempfile.mkdtemp(prefix='voice-sessions-')

import app as app_module  # noqa: E402
from app import app, db, cache, Membership, User, Role  # noqa: E402

STRONG_PASSWORD = "Str0ng!Pass"


class FrozenClock:
    """Stand-in for ``app.utcnow`` that only moves when told to."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def fresh_db():
    app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        MAX_FAILED_LOGIN_ATTEMPTS=5,
        LOCKOUT_DURATION_MINUTES=30,
        APP_BASE_URL=None,
    )
    with app.app_context():
        db.drop_all()
        db.create_all()
        cache.clear()
        yield
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client():
    return app.test_client()


@pytest.fixture
def clock(monkeypatch):
    frozen = FrozenClock(datetime(2025, 1, 15, 12, 0, 0))
    monkeypatch.setattr(app_module, "utcnow", frozen)
    return frozen


@pytest.fixture
def memberships():
    """The seeded Free and Premium plans."""
    app_module.seed_defaults()
    free = Membership.query.filter_by(name="Free").one()
    premium = Membership.query.filter_by(name="Premium").one()
    assert premium.price == Decimal("20.00")
    return free, premium


@pytest.fixture
def make_user():
    def _make_user(email="parent@familymail.ca", password=STRONG_PASSWORD, role=Role.USER, **fields):
        user = User(
            first_name=fields.pop("first_name", "Pat"),
            last_name=fields.pop("last_name", "Parent"),
            email=email.lower(),
            phone=fields.pop("phone", "416-555-1234"),
            role=role,
            **fields
        )
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


def login(client, email, password=STRONG_PASSWORD):
    return client.post("/login", data={"email": email, "password": password})


@pytest.fixture
def logged_in(client, make_user):
    """A client signed in as a regular member; returns (client, user)."""
    def _logged_in(**fields):
        user = make_user(**fields)
        response = login(client, user.email)
        assert response.status_code == 302
        return client, user
    return _logged_in


@pytest.fixture
def admin_client(client, make_user):
    admin = make_user(email="admin@familymail.ca", role=Role.ADMIN, first_name="Ada", last_name="Admin")
    response = login(client, admin.email)
    assert "/admin/dashboard" in response.headers["Location"]
    return client
