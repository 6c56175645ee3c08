"""
Pytest configuration and shared fixtures for membership billing tests
"""

import os

# The package builds its engine at import time; point it at SQLite first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from membership_billing.core.database import Base
from membership_billing import models  # noqa: F401 - registers tables
from membership_billing.services import audit_service  # noqa: F401 - registers audit_logs
from membership_billing.models import Plan, Subscription, SubscriptionEnhancement
from membership_billing.services.gateways.mock import MockGateway
from membership_billing.services.retry_policy import FixedScheduleBackoff

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    """Fresh in-memory database per test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    """Database session"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def redis_client():
    """Redis double: every lock and lease is granted"""
    client = MagicMock()
    client.lock.return_value.acquire.return_value = True
    with patch("membership_billing.core.redis_lock.get_redis_client", return_value=client):
        yield client


@pytest.fixture
def gateway():
    """Scriptable in-process gateway"""
    return MockGateway(webhook_secret="test-webhook-secret")


@pytest.fixture
def retry_policy():
    return FixedScheduleBackoff.from_hours([24, 72, 168])


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def plan(db):
    """Monthly plan"""
    plan = Plan(name="Gold Membership", price=Decimal("1500.00"), currency="KES", billing_period_days=30)
    db.add(plan)
    db.commit()
    return plan


@pytest.fixture
def subscription(db, plan):
    """Active subscription that ends in six hours (inside the renewal lead window)"""
    subscription = Subscription(
        subscriber_id="member-001",
        plan_id=plan.id,
        starts_at=NOW - timedelta(days=30),
        ends_at=NOW + timedelta(hours=6),
        is_active=True,
    )
    db.add(subscription)
    db.commit()
    return subscription


@pytest.fixture
def enhancement(db, subscription):
    """Enhancement with a stored payment method"""
    enhancement = SubscriptionEnhancement(
        subscription_id=subscription.id,
        payment_method="AUTH_test123",
        enhancement_metadata={"email": "member@example.com"},
    )
    db.add(enhancement)
    db.commit()
    return enhancement
