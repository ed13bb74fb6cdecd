"""Pytest configuration for conversion ledger tests

WHAT: Shared fixtures for service and HTTP endpoint tests
WHY: Every test gets an isolated in-memory database, explicit settings and
     recorded (never real) Stripe and Meta HTTP traffic
REFERENCES:
    - conversion_ledger/main.py: FastAPI application
    - conversion_ledger/database.py: Database configuration
    - conversion_ledger/deps.py: Dependency injection
"""

import json
import os
from typing import Any, Callable, Generator, Optional

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before the package creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from conversion_ledger.deps import Settings  # noqa: E402
from conversion_ledger.models import Base, CampaignMapping  # noqa: E402
from conversion_ledger.services.attribution_fanout import AttributionFanout  # noqa: E402
from conversion_ledger.services.stripe_client import StripeClient  # noqa: E402
from conversion_ledger.tests.helpers import (  # noqa: E402
    DEFAULT_ACCESS_TOKEN,
    DEFAULT_PIXEL_ID,
    STRIPE_API_URL,
    WEBHOOK_SECRET,
    RecordingTransport,
    meta_ok,
    sign_payload,
)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine shared across threads."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)

    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings & HTTP Fixtures
# ============================================================================

@pytest.fixture
def settings() -> Settings:
    """Explicit settings; nothing is read from the developer's .env."""
    return Settings(
        _env_file=None,
        BACKEND_CORS_ORIGINS="http://localhost:3000",
        ADMIN_API_KEY=None,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_API_URL=STRIPE_API_URL,
        META_PIXEL_ID=DEFAULT_PIXEL_ID,
        META_ACCESS_TOKEN=DEFAULT_ACCESS_TOKEN,
        META_TEST_EVENT_CODE=None,
        DEFAULT_CURRENCY="jpy",
    )


@pytest.fixture
def stripe_http() -> RecordingTransport:
    """Stripe API double; unknown customers by default."""
    return RecordingTransport(lambda request: httpx.Response(404, json={"error": {"message": "No such customer"}}))


@pytest.fixture
def meta_http() -> RecordingTransport:
    return RecordingTransport(meta_ok)


@pytest.fixture
def stripe_client(stripe_http) -> StripeClient:
    return StripeClient(api_key="sk_test_123", base_url=STRIPE_API_URL, transport=stripe_http.transport)


@pytest.fixture
def fanout(meta_http) -> AttributionFanout:
    return AttributionFanout(api_version="v18.0", timeout=5.0, transport=meta_http.transport)


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def app(test_db_session, settings, stripe_client, fanout):
    """Create FastAPI test application with every external seam overridden."""
    from conversion_ledger.main import create_app
    from conversion_ledger.database import get_db
    from conversion_ledger.deps import get_attribution_fanout, get_settings, get_stripe_client

    test_app = create_app()

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    test_app.dependency_overrides[get_settings] = lambda: settings
    test_app.dependency_overrides[get_stripe_client] = lambda: stripe_client
    test_app.dependency_overrides[get_attribution_fanout] = lambda: fanout

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def post_webhook(client) -> Callable[..., httpx.Response]:
    """POST a correctly signed Stripe event (dict or raw bytes)."""

    def _post(event: Any, signature: Optional[str] = None) -> httpx.Response:
        body = event if isinstance(event, bytes) else json.dumps(event).encode("utf-8")
        return client.post(
            "/webhooks/stripe",
            content=body,
            headers={
                "Content-Type": "application/json",
                "Stripe-Signature": signature if signature is not None else sign_payload(body),
            },
        )

    return _post


@pytest.fixture
def campaign(test_db_session) -> CampaignMapping:
    mapping = CampaignMapping(
        campaign_id="cmp_spring",
        meta_pixel_id="111222333444555",
        meta_access_token="EAAB-campaign-token",
        campaign_name="Spring launch",
    )
    test_db_session.add(mapping)
    test_db_session.commit()
    return mapping
