"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import time
from typing import Any, AsyncGenerator, Dict, Optional
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine

from billing_sync.api.container import ServiceContainer, build_container
from billing_sync.api.main import create_app
from billing_sync.config import Settings
from billing_sync.database.connection import create_engine, create_session_factory, init_db
from billing_sync.database.repository import SqlAlchemyRecordStore

WEBHOOK_SECRET = "whsec_test_fake_secret"
IN_MEMORY_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_body(event_id: str, event_type: str, obj: Dict[str, Any]) -> str:
    """Serialize a Stripe event envelope."""
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "api_version": "2023-10-16",
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
    )


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url=IN_MEMORY_DATABASE_URL,
        redis_url=None,
        retry_max_attempts=0,
        retry_jitter=False,
        escalation_channels="database,log",
        app_name="billing-sync-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """In-memory SQLite engine with all tables created."""
    engine = create_engine(IN_MEMORY_DATABASE_URL, test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine: AsyncEngine) -> SqlAlchemyRecordStore:
    return SqlAlchemyRecordStore(create_session_factory(engine))


@pytest.fixture
def stripe_sdk() -> MagicMock:
    """Stand-in for the stripe module."""
    return MagicMock()


@pytest_asyncio.fixture
async def container(
    test_settings: Settings, stripe_sdk: MagicMock
) -> AsyncGenerator[ServiceContainer, Any]:
    """Service container over in-memory SQLite and a mocked Stripe SDK."""
    container = build_container(
        test_settings, http_client=httpx.AsyncClient(), stripe_sdk=stripe_sdk
    )
    await init_db(container.engine)
    yield container
    await container.close()


@pytest_asyncio.fixture
async def client(
    test_settings: Settings, container: ServiceContainer
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings, container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def subscription_object() -> Dict[str, Any]:
    """Sample Stripe subscription payload."""
    return {
        "id": "sub_123",
        "object": "subscription",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "canceled_at": None,
        "current_period_start": 1_700_000_000,
        "current_period_end": 1_702_592_000,
        "trial_start": None,
        "trial_end": None,
        "metadata": {"account_id": "acct_123"},
        "items": {"data": [{"id": "si_123", "price": {"id": "price_basic"}}]},
    }
