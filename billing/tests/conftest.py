"""
pytest configuration and fixtures for the billing engine.

Provides:
- App on in-memory SQLite with all tables
- One user per role (plus a second customer for ownership checks)
- Plans
- Logged-in test clients per role
"""

from datetime import datetime, timedelta

import pytest
from flask import g

from billing import create_app
from billing.extensions import db
from billing.models import Plan, Role, User
from billing.security import SYSTEM_ACTOR
from billing.services import QuoteLedger

PASSWORD = "secret-pass-123"
NOW = datetime(2026, 3, 1, 12, 0, 0)


# ============================================================================
# APP & DATABASE
# ============================================================================

@pytest.fixture
def app():
    """Flask app with a fresh in-memory database, app context pushed."""
    app = create_app("config.TestingConfig")

    # Test requests reuse the pushed app context (and its `g`); resolve the
    # logged-in user from each client's own session cookie.
    @app.before_request
    def _reset_cached_login():
        g.pop("_login_user", None)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def system():
    return SYSTEM_ACTOR


# ============================================================================
# USERS
# ============================================================================

def _make_user(username: str, role: Role) -> User:
    user = User(
        username=username,
        email=f"{username}@example.com",
        name=username.replace("_", " ").title(),
        role=role,
        is_active=True,
    )
    user.set_password(PASSWORD)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin(app):
    return _make_user("admin", Role.ADMIN)


@pytest.fixture
def sales(app):
    return _make_user("sales_rep", Role.SALES)


@pytest.fixture
def finance(app):
    return _make_user("finance_clerk", Role.FINANCE)


@pytest.fixture
def customer(app):
    return _make_user("customer", Role.CUSTOMER)


@pytest.fixture
def other_customer(app):
    return _make_user("other_customer", Role.CUSTOMER)


# ============================================================================
# PLANS
# ============================================================================

def _make_plan(name: str, price: int, tokens: int) -> Plan:
    plan = Plan(name=name, price=price, token_amount=tokens, is_active=True)
    db.session.add(plan)
    db.session.commit()
    return plan


@pytest.fixture
def basic_plan(app):
    return _make_plan("Basic", 1000, 100)


@pytest.fixture
def pro_plan(app):
    return _make_plan("Pro", 5000, 500)


# ============================================================================
# CLIENT FIXTURES
# ============================================================================

@pytest.fixture
def client(app):
    """Anonymous test client."""
    return app.test_client()


def _logged_in_client(app, user: User):
    client = app.test_client()
    response = client.post("/auth/login", json={"username": user.username, "password": PASSWORD})
    assert response.status_code == 200, response.get_json()
    return client


@pytest.fixture
def sales_client(app, sales):
    return _logged_in_client(app, sales)


@pytest.fixture
def customer_client(app, customer):
    return _logged_in_client(app, customer)


@pytest.fixture
def other_customer_client(app, other_customer):
    return _logged_in_client(app, other_customer)


@pytest.fixture
def admin_client(app, admin):
    return _logged_in_client(app, admin)


@pytest.fixture
def finance_client(app, finance):
    return _logged_in_client(app, finance)


# ============================================================================
# DOMAIN HELPERS
# ============================================================================

@pytest.fixture
def make_quote(sales, customer, now):
    """Factory: pending quote for `customer`, created by sales at NOW."""
    def factory(items=None, tax=0, expiry_days=7, owner=None):
        return QuoteLedger.create(
            (owner or customer).id,
            items or [{"name": "Consulting", "unit_price": 1000, "quantity": 2}],
            now + timedelta(days=expiry_days),
            actor=sales,
            tax=tax,
            now=now,
        )

    return factory
