from decimal import Decimal

import pytest

from paygate.core.constants import OrderPaymentStatus, PaymentMethod, PaymentStatus
from paygate.core.exceptions import (
    BadRequestException,
    ConflictException,
    NotFoundException,
    UnsupportedGatewayError,
)
from paygate.core.models import Order
from paygate.services.payments import PaymentService


@pytest.fixture
def service(session, factory) -> PaymentService:
    return PaymentService(session, factory)


def gcash_accepts(provider, transaction_id: str = "T1", status: str = "pending"):
    provider.on(
        "POST",
        "/v1/payments",
        json={
            "id": transaction_id,
            "status": status,
            "checkout_url": f"https://pay.gcash.test/{transaction_id}",
        },
    )


async def test_create_payment_stores_pending_record(service, provider, make_order):
    await make_order()
    gcash_accepts(provider)

    record, result = await service.create_payment("O1", "gcash", customer_email="a@b.test")

    assert result.success
    assert result.payment_url == "https://pay.gcash.test/T1"
    assert record.external_transaction_id == "T1"
    assert record.status == PaymentStatus.pending
    assert record.method == PaymentMethod.gcash
    assert record.amount == Decimal("250.00")
    assert record.paid_at is None


async def test_create_payment_picks_gateway_by_currency(service, provider, make_order):
    await make_order()
    provider.on(
        "POST",
        "/payby/v2/paymaya/payments",
        json={"paymentId": "pay-1", "redirectUrl": "https://payments.maya.test/pay-1"},
    )

    record, result = await service.create_payment("O1")

    assert result.success
    assert record.method == PaymentMethod.maya


async def test_second_pending_attempt_conflicts(service, provider, make_order):
    await make_order()
    gcash_accepts(provider)
    await service.create_payment("O1", "gcash")

    gcash_accepts(provider, "T2")
    with pytest.raises(ConflictException) as exc_info:
        await service.create_payment("O1", "gcash")

    assert exc_info.value.code == 4092
    assert exc_info.value.details["transaction_id"] == "T1"
    assert len(provider.calls("POST", "/v1/payments")) == 1


async def test_provider_failure_stores_nothing_and_retry_uses_new_key(
    service, provider, make_order
):
    await make_order()
    provider.on("POST", "/v1/payments", status=503, json={"message": "Try again later"})

    record, result = await service.create_payment("O1", "gcash")

    assert record is None
    assert not result.success
    assert result.message == "Try again later"

    gcash_accepts(provider)
    record, result = await service.create_payment("O1", "gcash")

    assert result.success
    assert record.status == PaymentStatus.pending
    first, second = provider.calls("POST", "/v1/payments")
    assert first.headers["idempotency-key"] != second.headers["idempotency-key"]


async def test_create_payment_already_completed_by_provider(
    service, provider, session, make_order
):
    await make_order()
    gcash_accepts(provider, status="paid")

    record, result = await service.create_payment("O1", "gcash")

    assert record.status == PaymentStatus.completed
    assert record.paid_at is not None
    order = await session.get(Order, "O1", populate_existing=True)
    assert order.payment_status == OrderPaymentStatus.paid


async def test_create_payment_unknown_order(service):
    with pytest.raises(NotFoundException) as exc_info:
        await service.create_payment("missing", "gcash")

    assert exc_info.value.code == 4041


async def test_create_payment_for_paid_order(service, session, make_order):
    order = await make_order()
    order.payment_status = OrderPaymentStatus.paid
    await session.commit()

    with pytest.raises(ConflictException) as exc_info:
        await service.create_payment("O1", "gcash")

    assert exc_info.value.code == 4091


async def test_create_payment_unsupported_gateway(service, make_order):
    await make_order()

    with pytest.raises(UnsupportedGatewayError):
        await service.create_payment("O1", "alipay")


async def test_verify_payment_reconciles(service, provider, session, make_order, make_record):
    await make_order()
    record = await make_record()
    provider.on(
        "GET",
        "/v1/payments/T1",
        json={"id": "T1", "status": "paid", "amount": "250.00", "currency": "PHP"},
    )

    result = await service.verify_payment("T1")

    assert result.status == PaymentStatus.completed
    await session.refresh(record)
    assert record.status == PaymentStatus.completed
    order = await session.get(Order, "O1", populate_existing=True)
    assert order.payment_status == OrderPaymentStatus.paid


async def test_verify_payment_still_pending(service, provider, session, make_order, make_record):
    await make_order()
    record = await make_record()
    provider.on("GET", "/v1/payments/T1", json={"id": "T1", "status": "processing"})

    result = await service.verify_payment("T1")

    assert result.status == PaymentStatus.pending
    await session.refresh(record)
    assert record.status == PaymentStatus.pending


async def test_verify_unknown_transaction(service):
    with pytest.raises(NotFoundException):
        await service.verify_payment("T-404")


async def test_cancel_payment(service, provider, session, make_order, make_record):
    await make_order()
    record = await make_record()
    provider.on("POST", "/v1/payments/T1/cancel", json={"id": "T1", "status": "cancelled"})

    result = await service.cancel_payment("T1")

    assert result.success
    await session.refresh(record)
    assert record.status == PaymentStatus.cancelled


async def test_cancel_rejected_by_provider_keeps_record(
    service, provider, session, make_order, make_record
):
    await make_order()
    record = await make_record()
    provider.on("POST", "/v1/payments/T1/cancel", json={"id": "T1", "status": "paid"})

    result = await service.cancel_payment("T1")

    assert not result.success
    await session.refresh(record)
    assert record.status == PaymentStatus.pending


async def test_cancel_completed_record_never_calls_provider(
    service, provider, make_order, make_record
):
    await make_order()
    await make_record(status=PaymentStatus.completed)

    result = await service.cancel_payment("T1")

    assert not result.success
    assert result.status == PaymentStatus.completed
    assert provider.requests == []


async def test_cash_payment_flow(service, session, make_order):
    await make_order()

    record = await service.record_cash_payment("O1")

    assert record.method == PaymentMethod.cash
    assert record.external_transaction_id.startswith("CASH-O1-")
    assert record.status == PaymentStatus.pending

    confirmed = await service.confirm_cash_payment(record.external_transaction_id)

    assert confirmed.status == PaymentStatus.completed
    assert confirmed.paid_at is not None
    order = await session.get(Order, "O1", populate_existing=True)
    assert order.payment_status == OrderPaymentStatus.paid


async def test_cash_payment_cancel_is_local(service, provider, make_order):
    await make_order()
    record = await service.record_cash_payment("O1")

    result = await service.cancel_payment(record.external_transaction_id)

    assert result.success
    assert record.status == PaymentStatus.cancelled
    assert provider.requests == []


async def test_confirm_rejects_gateway_payment(service, make_order, make_record):
    await make_order()
    await make_record()

    with pytest.raises(BadRequestException) as exc_info:
        await service.confirm_cash_payment("T1")

    assert exc_info.value.code == 4006
