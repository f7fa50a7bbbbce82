"""Pytest fixtures for testing"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("MATURITY_SCHEDULER_ENABLED", "false")

from datetime import datetime, timezone
from decimal import Decimal
from typing import Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from bullion_gateway.api.dependencies import get_notification_client, get_session_factory
from bullion_gateway.api.main import create_app
from bullion_gateway.domain.models import Metal
from bullion_gateway.infrastructure.clients.notifier import NotificationClient
from bullion_gateway.infrastructure.database.models import Base, PlanTemplate
from bullion_gateway.infrastructure.database.repositories import PriceRepository
from bullion_gateway.infrastructure.database.session import enable_sqlite_transactions, get_db
from bullion_gateway.services.plans import PlanService

# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
enable_sqlite_transactions(engine)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

# 12:00 in Asia/Kolkata, inside the default 10:00-18:00 window
MARKET_HOURS_NOW = datetime(2026, 1, 15, 6, 30, tzinfo=timezone.utc)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def notifier() -> MagicMock:
    """Notification client that records calls instead of posting webhooks"""
    client = MagicMock(spec=NotificationClient)
    client.notify = AsyncMock(return_value=True)
    client.notify_all = AsyncMock(return_value=None)
    return client


@pytest.fixture
def client(db: Session, notifier: MagicMock) -> Generator[TestClient, None, None]:
    """Create FastAPI test client with test database, inside market hours"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notification_client] = lambda: notifier
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal

    with patch("bullion_gateway.services.market.utcnow", return_value=MARKET_HOURS_NOW):
        yield TestClient(app)


@pytest.fixture
def customer_headers() -> dict:
    return {"X-User-ID": "user-1"}


@pytest.fixture
def admin_headers() -> dict:
    return {"X-User-ID": "admin", "X-User-Role": "admin"}


@pytest.fixture
def prices(db: Session) -> dict:
    """Current rates per gram"""
    rates = {
        Metal.GOLD_24K: Decimal("7000"),
        Metal.GOLD_22K: Decimal("6500"),
        Metal.SILVER: Decimal("90"),
    }
    repo = PriceRepository(db)
    for metal, rate in rates.items():
        repo.add(metal, rate)
    db.commit()
    return rates


@pytest.fixture
def template(db: Session) -> PlanTemplate:
    """12-month gold template at 1000 per month"""
    return PlanService(db).create_template("Gold 12M", Metal.GOLD_24K, 12, Decimal("1000"))


@pytest.fixture
def session_factory(db: Session):
    """Factory for work that opens its own sessions; the schema comes from ``db``"""
    return TestingSessionLocal
