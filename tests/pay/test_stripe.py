import json
import time
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import stripe

from paygate.core.constants import PaymentStatus, WebhookEventType
from paygate.core.exceptions import GatewayConfigurationError
from paygate.providers.stripe import StripeGateway, from_minor_units, to_minor_units
from paygate.schemas import GatewayCreateRequest

from conftest import STRIPE_SECRET, stripe_signature


def intent(**values) -> stripe.PaymentIntent:
    data = {"id": "pi_123", "object": "payment_intent", "currency": "php", "amount": 25000}
    data.update(values)
    return stripe.PaymentIntent.construct_from(data, "sk_test_123")


@pytest.fixture
def gateway(settings) -> StripeGateway:
    return StripeGateway(settings)


@pytest.fixture
def stripe_api(monkeypatch):
    mocks = {
        "create": AsyncMock(),
        "retrieve": AsyncMock(),
        "cancel": AsyncMock(),
        "refund": AsyncMock(),
    }
    monkeypatch.setattr(stripe.PaymentIntent, "create_async", mocks["create"])
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve_async", mocks["retrieve"])
    monkeypatch.setattr(stripe.PaymentIntent, "cancel_async", mocks["cancel"])
    monkeypatch.setattr(stripe.Refund, "create_async", mocks["refund"])
    return mocks


def test_minor_units():
    assert to_minor_units(Decimal("250.00"), "PHP") == 25000
    assert to_minor_units(Decimal("0.50"), "usd") == 50
    assert to_minor_units(Decimal("5000"), "JPY") == 5000
    assert from_minor_units(25000, "PHP") == Decimal("250.00")
    assert from_minor_units(5000, "jpy") == Decimal("5000.00")


async def test_create_payment(gateway, stripe_api):
    stripe_api["create"].return_value = intent(
        status="requires_payment_method", client_secret="pi_123_secret_abc"
    )

    result = await gateway.create_payment(
        GatewayCreateRequest(
            order_id="O1",
            amount=Decimal("250.00"),
            currency="PHP",
            customer_email="buyer@example.com",
            metadata={"cart": 42},
            idempotency_key="idem-xyz",
        )
    )

    assert result.success
    assert result.transaction_id == "pi_123"
    assert result.client_secret == "pi_123_secret_abc"
    assert result.status == PaymentStatus.pending

    kwargs = stripe_api["create"].await_args.kwargs
    assert kwargs["api_key"] == "sk_test_123"
    assert kwargs["amount"] == 25000
    assert kwargs["currency"] == "php"
    assert kwargs["idempotency_key"] == "idem-xyz"
    assert kwargs["receipt_email"] == "buyer@example.com"
    assert kwargs["metadata"] == {"cart": "42", "order_id": "O1"}


async def test_create_payment_below_minimum_never_calls_stripe(gateway, stripe_api):
    result = await gateway.create_payment(
        GatewayCreateRequest(order_id="O1", amount=Decimal("20.00"), currency="PHP")
    )

    assert not result.success
    assert "50.00" in result.message
    stripe_api["create"].assert_not_awaited()


async def test_create_payment_stripe_error(gateway, stripe_api):
    stripe_api["create"].side_effect = stripe.InvalidRequestError(
        "Invalid currency", param="currency"
    )

    result = await gateway.create_payment(
        GatewayCreateRequest(order_id="O1", amount=Decimal("100"), currency="USD")
    )

    assert not result.success
    assert "Invalid currency" in result.message


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("requires_action", PaymentStatus.pending),
        ("processing", PaymentStatus.pending),
        ("succeeded", PaymentStatus.completed),
        ("canceled", PaymentStatus.cancelled),
        ("some_future_status", PaymentStatus.pending),
    ],
)
async def test_verify_payment(gateway, stripe_api, raw, expected):
    stripe_api["retrieve"].return_value = intent(status=raw)

    result = await gateway.verify_payment("pi_123")

    assert result.success
    assert result.status == expected
    assert result.amount == Decimal("250.00")
    assert result.currency == "PHP"
    assert result.paid_at is None
    assert stripe_api["retrieve"].await_args.kwargs["expand"] == ["latest_charge"]


async def test_verify_payment_paid_at_comes_from_latest_charge(gateway, stripe_api):
    stripe_api["retrieve"].return_value = intent(
        status="succeeded",
        latest_charge={"id": "ch_1", "object": "charge", "created": 1714557600},
    )

    result = await gateway.verify_payment("pi_123")

    assert result.status == PaymentStatus.completed
    assert result.paid_at == datetime(2024, 5, 1, 10, 0, tzinfo=UTC)


async def test_verify_payment_without_charge_has_no_paid_at(gateway, stripe_api):
    stripe_api["retrieve"].return_value = intent(status="succeeded", latest_charge="ch_1")

    result = await gateway.verify_payment("pi_123")

    assert result.status == PaymentStatus.completed
    assert result.paid_at is None


async def test_partial_refund_converts_to_minor_units(gateway, stripe_api):
    stripe_api["retrieve"].return_value = intent(status="succeeded")
    stripe_api["refund"].return_value = stripe.Refund.construct_from(
        {"id": "re_1", "status": "succeeded", "amount": 10000, "currency": "php"}, "sk_test_123"
    )

    result = await gateway.refund_payment("pi_123", Decimal("100.00"), "damaged item")

    assert result.success
    assert result.refund_id == "re_1"
    assert result.status == PaymentStatus.refunded
    assert result.amount == Decimal("100.00")
    kwargs = stripe_api["refund"].await_args.kwargs
    assert kwargs["amount"] == 10000
    assert kwargs["payment_intent"] == "pi_123"
    assert kwargs["reason"] == "requested_by_customer"


async def test_full_refund_pending(gateway, stripe_api):
    stripe_api["refund"].return_value = stripe.Refund.construct_from(
        {"id": "re_2", "status": "pending", "amount": 25000, "currency": "php"}, "sk_test_123"
    )

    result = await gateway.refund_payment("pi_123")

    assert result.success
    assert result.status == PaymentStatus.pending
    assert "amount" not in stripe_api["refund"].await_args.kwargs
    stripe_api["retrieve"].assert_not_awaited()


async def test_cancel_refuses_succeeded_intent(gateway, stripe_api):
    stripe_api["retrieve"].return_value = intent(status="succeeded")

    result = await gateway.cancel_payment("pi_123")

    assert not result.success
    assert result.status == PaymentStatus.completed
    stripe_api["cancel"].assert_not_awaited()


async def test_cancel_pending_intent(gateway, stripe_api):
    stripe_api["retrieve"].return_value = intent(status="requires_payment_method")
    stripe_api["cancel"].return_value = intent(status="canceled")

    result = await gateway.cancel_payment("pi_123")

    assert result.success
    assert result.status == PaymentStatus.cancelled


def event_body(event_type: str, obj: dict) -> bytes:
    return json.dumps(
        {"id": "evt_1", "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode()


async def test_webhook_signature(gateway):
    body = event_body("payment_intent.succeeded", {"id": "pi_123"})

    assert await gateway.verify_webhook_signature(body, stripe_signature(STRIPE_SECRET, body))
    assert not await gateway.verify_webhook_signature(body, stripe_signature("whsec_other", body))
    assert not await gateway.verify_webhook_signature(body, "garbage")
    assert not await gateway.verify_webhook_signature(body, None)


async def test_webhook_signature_outside_tolerance(gateway):
    body = event_body("payment_intent.succeeded", {"id": "pi_123"})
    stale = stripe_signature(STRIPE_SECRET, body, timestamp=int(time.time()) - 3600)

    assert not await gateway.verify_webhook_signature(body, stale)


async def test_webhook_signature_fails_closed_without_secret(settings):
    gateway = StripeGateway(settings.model_copy(update={"stripe_webhook_secret": ""}))
    body = event_body("payment_intent.succeeded", {"id": "pi_123"})

    assert not await gateway.verify_webhook_signature(body, stripe_signature("", body))


@pytest.mark.parametrize(
    "event_type,expected",
    [
        ("payment_intent.succeeded", WebhookEventType.payment_completed),
        ("payment_intent.payment_failed", WebhookEventType.payment_failed),
        ("payment_intent.canceled", WebhookEventType.payment_cancelled),
        ("payment_intent.created", WebhookEventType.unknown),
        ("customer.created", WebhookEventType.unknown),
    ],
)
def test_parse_payment_intent_events(gateway, event_type, expected):
    event = gateway.parse_webhook(
        event_body(event_type, {"id": "pi_123", "amount": 25000, "currency": "php"})
    )

    assert event.event_type == expected
    assert event.transaction_id == "pi_123"
    assert event.amount == Decimal("250.00")
    assert event.currency == "PHP"


def test_parse_full_charge_refund(gateway):
    event = gateway.parse_webhook(
        event_body(
            "charge.refunded",
            {
                "id": "ch_1",
                "payment_intent": "pi_123",
                "amount_refunded": 25000,
                "currency": "php",
                "refunded": True,
            },
        )
    )

    assert event.event_type == WebhookEventType.refund_completed
    assert event.transaction_id == "pi_123"


def test_parse_partial_charge_refund_is_unknown(gateway):
    event = gateway.parse_webhook(
        event_body(
            "charge.refunded",
            {"id": "ch_1", "payment_intent": "pi_123", "amount_refunded": 100, "refunded": False},
        )
    )

    assert event.event_type == WebhookEventType.unknown


def test_requires_secret_key(settings):
    with pytest.raises(GatewayConfigurationError):
        StripeGateway(settings.model_copy(update={"stripe_secret_key": ""}))


def test_minimum_amounts(gateway):
    assert gateway.get_minimum_amount("PHP") == Decimal("50.00")
    assert gateway.get_minimum_amount("gbp") == Decimal("0.30")
    assert gateway.get_minimum_amount("JPY") == Decimal("50")
    assert gateway.get_minimum_amount("NZD") == Decimal("1.00")
    assert not gateway.supports_currency("NZD")
