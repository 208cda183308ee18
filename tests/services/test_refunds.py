from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from paygate.core.constants import PaymentMethod, PaymentStatus
from paygate.core.exceptions import NotFoundException
from paygate.core.models import RefundRecord
from paygate.providers import GatewayFactory
from paygate.services.refunds import RefundService


@pytest.fixture
def service(session, factory) -> RefundService:
    return RefundService(session, factory)


async def refunds(session) -> list[RefundRecord]:
    return list((await session.execute(select(RefundRecord))).scalars())


async def test_refund_above_payment_amount_fails(
    service, provider, session, make_order, make_record
):
    await make_order()
    record = await make_record(status=PaymentStatus.completed)

    result = await service.refund_payment("T1", Decimal("300.00"))

    assert not result.success
    assert result.message == "Refund amount 300.00 exceeds payment amount 250.00"
    await session.refresh(record)
    assert record.status == PaymentStatus.completed
    assert provider.requests == []
    assert await refunds(session) == []


async def test_full_refund_moves_record_to_refunded(
    service, provider, session, make_order, make_record
):
    await make_order()
    record = await make_record(status=PaymentStatus.completed)
    provider.on("POST", "/v1/refunds", json={"id": "R1", "status": "completed"})

    result = await service.refund_payment("T1", reason="duplicate order")

    assert result.success
    assert result.status == PaymentStatus.refunded
    await session.refresh(record)
    assert record.status == PaymentStatus.refunded
    assert record.paid_at is not None

    (refund,) = await refunds(session)
    assert refund.amount == Decimal("250.00")
    assert refund.status == PaymentStatus.refunded
    assert refund.provider_refund_id == "R1"
    assert refund.reason == "duplicate order"
    # full refund sends no amount
    assert "amount" not in provider.last_json("POST", "/v1/refunds")


async def test_partial_refunds_are_bounded_by_payment_amount(
    service, provider, session, make_order, make_record
):
    await make_order()
    record = await make_record(status=PaymentStatus.completed)
    provider.on("POST", "/v1/refunds", json={"id": "R1", "status": "completed"})

    first = await service.refund_payment("T1", Decimal("100.00"))
    second = await service.refund_payment("T1", Decimal("200.00"))

    assert first.success
    assert not second.success
    assert "would exceed" in second.message
    assert len(provider.calls("POST", "/v1/refunds")) == 1
    await session.refresh(record)
    assert record.status == PaymentStatus.completed

    third = await service.refund_payment("T1", Decimal("150.00"))

    assert third.success
    await session.refresh(record)
    assert record.status == PaymentStatus.refunded
    assert await service.refunded_total(record) == Decimal("250.00")


async def test_pending_refund_counts_toward_the_bound(
    service, provider, session, make_order, make_record
):
    await make_order()
    record = await make_record(status=PaymentStatus.completed)
    provider.on("POST", "/v1/refunds", json={"id": "R1", "status": "processing"})

    result = await service.refund_payment("T1")

    assert result.success
    assert result.status == PaymentStatus.pending
    await session.refresh(record)
    # not settled yet, the webhook finishes it
    assert record.status == PaymentStatus.completed

    again = await service.refund_payment("T1", Decimal("1.00"))
    assert not again.success


async def test_refund_rejected_by_provider(service, provider, session, make_order, make_record):
    await make_order()
    record = await make_record(status=PaymentStatus.completed)
    provider.on("POST", "/v1/refunds", status=400, json={"message": "Refund window closed"})

    result = await service.refund_payment("T1", Decimal("50.00"))

    assert not result.success
    assert result.message == "Refund window closed"
    (refund,) = await refunds(session)
    assert refund.status == PaymentStatus.failed
    assert await service.refunded_total(record) == Decimal("0")


@pytest.mark.parametrize(
    "status",
    [PaymentStatus.pending, PaymentStatus.failed, PaymentStatus.cancelled, PaymentStatus.refunded],
)
async def test_only_completed_payments_are_refundable(
    service, provider, make_order, make_record, status
):
    await make_order()
    await make_record(status=status)

    result = await service.refund_payment("T1")

    assert not result.success
    assert status.value in result.message
    assert provider.requests == []


async def test_non_positive_amount(service, make_order, make_record):
    await make_order()
    await make_record(status=PaymentStatus.completed)

    result = await service.refund_payment("T1", Decimal("0"))

    assert not result.success


async def test_unknown_transaction(service):
    with pytest.raises(NotFoundException):
        await service.refund_payment("T-404")


async def test_cash_refund_is_settled_locally(
    service, provider, session, make_order, make_record
):
    await make_order()
    record = await make_record(
        transaction_id="CASH-O1-ABCDEF01",
        method=PaymentMethod.cash,
        status=PaymentStatus.completed,
    )

    result = await service.refund_payment("CASH-O1-ABCDEF01")

    assert result.success
    assert provider.requests == []
    await session.refresh(record)
    assert record.status == PaymentStatus.refunded


async def test_overlapping_refunds_cannot_exceed_payment(
    settings, provider, session, session_factory, make_order, make_record
):
    await make_order()
    record = await make_record(status=PaymentStatus.completed)
    provider.on("POST", "/v1/refunds", json={"id": "R1", "status": "processing"})
    overlapping = []

    async def handler(request: httpx.Request) -> httpx.Response:
        # a second refund comes in while the first is still with GCash
        if not overlapping:
            async with session_factory() as other:
                overlapping.append(
                    await RefundService(other, gateways).refund_payment("T1", Decimal("200.00"))
                )
        return provider.handler(request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        gateways = GatewayFactory(settings, http_client=client)
        first = await RefundService(session, gateways).refund_payment("T1", Decimal("200.00"))

    assert first.success
    (second,) = overlapping
    assert not second.success
    assert "would exceed" in second.message
    assert len(provider.calls("POST", "/v1/refunds")) == 1
    (refund,) = await refunds(session)
    assert refund.amount == Decimal("200.00")
    assert refund.provider_refund_id == "R1"
    await session.refresh(record)
    assert record.status == PaymentStatus.completed
