from __future__ import annotations

import os
import tempfile

# Ambiente di test: impostato PRIMA di importare app.config
_DB_DIR = tempfile.mkdtemp(prefix="commission-engine-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'engine.db')}"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["CRON_SECRET"] = "cron-test-secret"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["BUSINESS_TIMEZONE"] = "America/Sao_Paulo"
os.environ["REWARDFUL_API_SECRET"] = "rw_test"

import pytest
from fastapi.testclient import TestClient

from app.db import SessionLocal, engine
from app.legacy_source import get_legacy_source
from app.main import app
from app.security import create_access_token
from app.stripe_source import get_commerce_source
from models import Base
from models.admin import Admin
from models.affiliates import Affiliate
from tests.factories import FakeCommerceSource, FakeLegacySource


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def affiliate(db) -> Affiliate:
    a = Affiliate(code="AB12", name="Ana Bento", email="ana@example.com", tier=1, qualifying_sale_count=0, is_active=True)
    db.add(a)
    db.commit()
    db.refresh(a)
    return a


@pytest.fixture
def other_affiliate(db) -> Affiliate:
    a = Affiliate(code="XY99", name="Xavier Yuri", email="xavier@example.com", tier=1, qualifying_sale_count=0, is_active=True)
    db.add(a)
    db.commit()
    db.refresh(a)
    return a


@pytest.fixture
def commerce_source() -> FakeCommerceSource:
    source = FakeCommerceSource()
    app.dependency_overrides[get_commerce_source] = lambda: source
    return source


@pytest.fixture
def legacy_source() -> FakeLegacySource:
    source = FakeLegacySource()
    app.dependency_overrides[get_legacy_source] = lambda: source
    return source


@pytest.fixture
def client() -> TestClient:
    return TestClient(app)


@pytest.fixture
def admin_headers(db) -> dict:
    admin = Admin(email="admin@example.com", is_active=True, is_superadmin=True)
    db.add(admin)
    db.commit()
    db.refresh(admin)
    token = create_access_token({"sub": f"admin:{admin.id}"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def cron_headers() -> dict:
    return {"Authorization": "Bearer cron-test-secret"}
