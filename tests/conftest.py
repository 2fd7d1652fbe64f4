"""
Shared fixtures: an in-memory SQLite database per test, profiles for each
role, and a TestClient bound to the same session.
"""
import os

# Must be set before lawletters.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lawletters.auth import RequestContext, create_access_token
from lawletters.database import Base, get_db
from lawletters.main import app
from lawletters.models.db_models import ProfileDB, Role, SubscriptionStatus, LetterType, Priority
from lawletters.services.letters import LetterInput
from lawletters.services.referrals import CouponEngine


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


# =============================================================================
# PROFILES
# =============================================================================

@pytest.fixture
def make_profile(db):
    def _make(role=Role.USER, email=None, password_hash="not-a-real-hash", full_name=None):
        profile = ProfileDB(
            id=str(uuid4()),
            email=email or f"{role.value}-{uuid4().hex[:8]}@example.com",
            password_hash=password_hash,
            full_name=full_name,
            role=role,
            points=0,
            commission_earned=Decimal("0.00"),
            subscription_status=SubscriptionStatus.INACTIVE,
        )
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def user(make_profile):
    return make_profile(Role.USER, full_name="Jane Customer")


@pytest.fixture
def other_user(make_profile):
    return make_profile(Role.USER, full_name="John Other")


@pytest.fixture
def employee(make_profile, db):
    profile = make_profile(Role.EMPLOYEE, full_name="Eve Employee")
    CouponEngine(db).create_employee_coupon(profile.id)
    return profile


@pytest.fixture
def admin(make_profile):
    return make_profile(Role.ADMIN, full_name="Ada Admin")


@pytest.fixture
def ctx_for():
    return RequestContext.from_profile


@pytest.fixture
def letter_input():
    def _make(**overrides):
        fields = dict(
            title="Unpaid invoice #1042",
            description="Client has not paid invoice #1042 for $2,400 due 60 days ago.",
            sender_name="Jane Customer",
            sender_address="1 Main St, Springfield",
            recipient_name="Acme Corp",
            recipient_address="99 Industrial Way, Shelbyville",
            recipient_email="billing@acme.example.com",
            letter_type=LetterType.GENERAL_DEMAND_LETTER,
            priority=Priority.HIGH,
            desired_resolution="Payment in full within 14 days",
        )
        fields.update(overrides)
        return LetterInput(**fields)

    return _make


# =============================================================================
# HTTP
# =============================================================================

@pytest.fixture
def client(db):
    def _get_test_db():
        yield db

    app.dependency_overrides[get_db] = _get_test_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(profile):
        token = create_access_token(profile.id, profile.email, Role(profile.role).value)
        return {"Authorization": f"Bearer {token}"}

    return _headers
