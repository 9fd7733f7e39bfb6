import os
import uuid

# Settings are read at import time; pin the test configuration first.
os.environ["DATABASE_URL"] = "sqlite+pysqlite://"
os.environ["APP_ENV"] = "test"
os.environ["INSTAGRAM_APP_SECRET"] = "test-app-secret"
os.environ["INSTAGRAM_WEBHOOK_VERIFY_TOKEN"] = "test-verify-token"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["OPENAI_API_KEY"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from neuraslide import models  # noqa: F401
from neuraslide.db import Base
from neuraslide.models.account import InstagramAccount, User
from neuraslide.models.automation import Automation, AutomationPriority, AutomationStatus
from neuraslide.models.billing import SubscriptionPlan

ACCOUNT_IG_ID = "17841400000000001"


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def _unique_email() -> str:
    return f"test-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def user(db_session):
    user = User(email=_unique_email(), name="Test Owner", stripe_customer_id="cus_test")
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture()
def instagram_account(db_session, user):
    account = InstagramAccount(
        ig_user_id=ACCOUNT_IG_ID,
        username="neuraslide_shop",
        user_id=user.id,
        access_token="test-access-token",
    )
    db_session.add(account)
    db_session.commit()
    db_session.refresh(account)
    return account


@pytest.fixture()
def plan(db_session):
    """Plan mixing numeric, unlimited and boolean feature limits."""
    plan = SubscriptionPlan(
        name="Pro",
        stripe_price_id="price_pro",
        features={
            "aiReplies": 500,
            "instagramIntegration": True,
            "advancedAnalytics": False,
            "productCatalog": -1,
        },
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture()
def make_automation(db_session, user):
    def _make(trigger: dict, response: dict, **overrides):
        values = {
            "user_id": user.id,
            "name": "Test automation",
            "trigger": trigger,
            "response": response,
            "status": AutomationStatus.active,
            "priority": AutomationPriority.medium,
            "is_active": True,
        }
        values.update(overrides)
        automation = Automation(**values)
        db_session.add(automation)
        db_session.commit()
        db_session.refresh(automation)
        return automation

    return _make


@pytest.fixture()
def client(db_session):
    from fastapi.testclient import TestClient

    from neuraslide.db import get_db
    from neuraslide.main import app

    def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.pop(get_db, None)
