import hashlib
import hmac
import json
import time
from datetime import UTC, datetime
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from paygate.core.constants import PaymentMethod, PaymentStatus
from paygate.core.models import Base, Order, PaymentRecord
from paygate.core.settings import Settings
from paygate.db import build_session_factory
from paygate.providers import GatewayFactory

GCASH_SECRET = "gcash_whsec_test"
MAYA_SECRET = "maya_whsec_test"
STRIPE_SECRET = "whsec_test_secret"


class FakeProvider:
    """Scripted provider API behind httpx.MockTransport"""

    def __init__(self):
        self.routes: dict[tuple[str, str], tuple[int, object]] = {}
        self.requests: list[httpx.Request] = []
        self.raise_error: Exception | None = None

    def on(self, method: str, path: str, status: int = 200, json=None) -> "FakeProvider":
        self.routes[(method, path)] = (status, json)
        return self

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"message": f"no route {key}"})
        status, body = self.routes[key]
        return httpx.Response(status, json=body)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def last_json(self, method: str, path: str) -> dict:
        return json.loads(self.calls(method, path)[-1].content)


def sign(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def stripe_signature(secret: str, body: bytes, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    digest = hmac.new(
        secret.encode(), f"{ts}.{body.decode()}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        gcash_api_url="https://api.gcash.test/v1",
        gcash_api_key="gk_test",
        gcash_merchant_id="M-1001",
        gcash_webhook_secret=GCASH_SECRET,
        maya_api_url="https://pg-sandbox.maya.test",
        maya_public_key="pk-test",
        maya_secret_key="sk-test",
        maya_webhook_secret=MAYA_SECRET,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_SECRET,
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        paypal_webhook_id="WH-TEST-1",
        frontend_url="https://shop.test",
        app_url="https://api.shop.test",
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
async def http_client(provider):
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider.handler)) as client:
        yield client


@pytest.fixture
def factory(settings, http_client) -> GatewayFactory:
    return GatewayFactory(settings, http_client=http_client)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_order(session):
    async def _make(order_id: str = "O1", amount: str = "250.00", currency: str = "PHP") -> Order:
        order = Order(id=order_id, total_amount=Decimal(amount), currency=currency)
        session.add(order)
        await session.commit()
        return order

    return _make


@pytest.fixture
def make_record(session):
    async def _make(
        order_id: str = "O1",
        transaction_id: str = "T1",
        method: PaymentMethod = PaymentMethod.gcash,
        status: PaymentStatus = PaymentStatus.pending,
        amount: str = "250.00",
        currency: str = "PHP",
    ) -> PaymentRecord:
        record = PaymentRecord(
            order_id=order_id,
            amount=Decimal(amount),
            currency=currency,
            method=method,
            external_transaction_id=transaction_id,
            status=status,
            paid_at=datetime.now(UTC)
            if status in (PaymentStatus.completed, PaymentStatus.refunded)
            else None,
        )
        session.add(record)
        await session.commit()
        return record

    return _make
