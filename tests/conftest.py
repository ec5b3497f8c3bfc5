"""
Test configuration and fixtures.
Uses a file-backed SQLite database per test (so concurrent sessions see each
other's commits) and mocks Redis and all outbound HTTP.
"""
import base64
import os

# Settings are read from the environment on first use - set before any import
TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode()
os.environ.update({
    "APP_ENV": "test",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "REDIS_URL": "redis://localhost:6379/15",
    "META_APP_SECRET": "test_meta_secret",
    "META_VERIFY_TOKEN": "test_verify_token",
    "RAZORPAY_WEBHOOK_SECRET": "test_razorpay_secret",
    "PAYPAL_CLIENT_ID": "test_paypal_client",
    "PAYPAL_CLIENT_SECRET": "test_paypal_secret",
    "PAYPAL_WEBHOOK_ID": "WH-TEST-123",
    "ENCRYPTION_KEY": TEST_ENCRYPTION_KEY,
    "WEBHOOKS_ENABLED": "true",
    "LOG_LEVEL": "WARNING",
})

import httpx
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from webhook_intake.config import get_settings
from webhook_intake.database import Base, configure_engine, dispose_engine
from webhook_intake.services.handlers import HandlerRegistry
from webhook_intake.utils.encryption import reset_cipher_cache
import webhook_intake.models  # noqa: F401


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def settings():
    """Fresh Settings (and cipher) per test so monkeypatched env vars apply."""
    get_settings.cache_clear()
    reset_cipher_cache()
    yield get_settings()
    get_settings.cache_clear()
    reset_cipher_cache()


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("webhook_intake.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.lpush = AsyncMock(return_value=1)
        redis_mock.llen = AsyncMock(return_value=0)
        redis_mock.rpop = AsyncMock(return_value=None)
        redis_mock.brpop = AsyncMock(return_value=None)
        redis_mock.publish = AsyncMock(return_value=0)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
async def db_engine(tmp_path):
    """SQLite database file shared by every session the code under test opens."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'webhooks.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    configure_engine(engine)
    yield engine
    await dispose_engine()


@pytest.fixture
async def db(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry():
    """Handler registry with no default, so tests register exactly what runs."""
    return HandlerRegistry(default=None)


@pytest.fixture
async def client(db_engine):
    """HTTP client bound to the app in-process (no lifespan, no background workers)."""
    from webhook_intake.main import create_app
    app = create_app(start_workers=False)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http


@pytest.fixture
def razorpay_capture_payload():
    return {
        "entity": "event",
        "account_id": "acc_BFQ7uQEaa7j2z7",
        "event": "payment.captured",
        "contains": ["payment"],
        "payload": {
            "payment": {
                "entity": {
                    "id": "pay_ABC123",
                    "entity": "payment",
                    "amount": 50000,
                    "currency": "INR",
                    "status": "captured",
                    "order_id": "order_XYZ789",
                    "method": "upi",
                    "created_at": 1760000000,
                }
            }
        },
        "created_at": 1760000001,
    }


@pytest.fixture
def instagram_message_payload():
    return {
        "object": "instagram",
        "entry": [
            {
                "id": "17841400000000000",
                "time": 1760000000000,
                "messaging": [
                    {
                        "sender": {"id": "PSID_123"},
                        "recipient": {"id": "17841400000000000"},
                        "timestamp": 1760000000000,
                        "message": {"mid": "aWdfZAG1faXRlbToxOklHTWVzc2FnZAUlEOjE3", "text": "Book me for Tuesday"},
                    }
                ],
            }
        ],
    }


@pytest.fixture
def whatsapp_message_payload():
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA_ID",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"display_phone_number": "15550001111", "phone_number_id": "PNID_1"},
                            "messages": [
                                {
                                    "from": "919800000000",
                                    "id": "wamid.HBgLOTE5ODAwMDAwMDAwFQIAEhgg",
                                    "timestamp": "1760000000",
                                    "type": "text",
                                    "text": {"body": "Is Dr. Rao free tomorrow?"},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }


@pytest.fixture
def paypal_capture_payload():
    return {
        "id": "WH-58D329510W468432D-8HN650336L201105X",
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource_type": "capture",
        "create_time": "2026-10-18T10:00:00Z",
        "resource": {
            "id": "42311647XV020574X",
            "status": "COMPLETED",
            "amount": {"currency_code": "USD", "value": "49.99"},
            "supplementary_data": {"related_ids": {"order_id": "5O190127TN364715T"}},
        },
    }
