"""
Refund service
"""

from decimal import Decimal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.constants import PaymentMethod, PaymentStatus
from paygate.core.exceptions import NotFoundException
from paygate.core.models import PaymentRecord, RefundRecord
from paygate.providers import GatewayFactory, get_gateway_factory
from paygate.schemas import GatewayRefundResult
from .reconciliation import ReconciliationService

logger = structlog.get_logger(__name__)


class RefundService:
    """Refunds against completed payments"""

    def __init__(self, session: AsyncSession, factory: GatewayFactory | None = None):
        self.session = session
        self.factory = factory or get_gateway_factory()
        self.reconciliation = ReconciliationService(session)

    async def refunded_total(
        self,
        record: PaymentRecord,
        statuses: tuple[PaymentStatus, ...] = (PaymentStatus.pending, PaymentStatus.refunded),
    ) -> Decimal:
        return await self.reconciliation.refunded_total(record, statuses)

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        """
        Refund a completed payment, fully (amount=None) or partially.

        Business rules:
        1. the payment must be completed
        2. the amount may not exceed the payment amount
        3. all pending and refunded refunds together may not exceed it either
        Rule violations return a failed result and leave the record unchanged.
        """
        log = logger.bind(transaction_id=transaction_id, amount=str(amount))
        log.info("refund_requested")

        record = await self.reconciliation.find_record(transaction_id, lock=True)
        if not record:
            raise NotFoundException(
                message="Payment not found",
                code=4042,
                details={"transaction_id": transaction_id},
            )

        if record.status != PaymentStatus.completed:
            log.warning("refund_payment_not_completed", status=record.status.value)
            return GatewayRefundResult(
                success=False,
                status=PaymentStatus.failed,
                message=f"Only completed payments can be refunded (status: {record.status.value})",
            )

        refund_amount = record.amount if amount is None else Decimal(amount)
        if refund_amount <= 0:
            return GatewayRefundResult(
                success=False,
                status=PaymentStatus.failed,
                message="Refund amount must be positive",
            )
        if refund_amount > record.amount:
            log.warning("refund_amount_exceeds_payment", payment_amount=str(record.amount))
            return GatewayRefundResult(
                success=False,
                status=PaymentStatus.failed,
                message=f"Refund amount {refund_amount} exceeds payment amount {record.amount}",
            )

        total_refunded = await self.refunded_total(record)
        if total_refunded + refund_amount > record.amount:
            log.warning(
                "refund_total_exceeds_payment",
                total_refunded=str(total_refunded),
                payment_amount=str(record.amount),
            )
            return GatewayRefundResult(
                success=False,
                status=PaymentStatus.failed,
                message=(
                    f"Total refunds {total_refunded + refund_amount} would exceed "
                    f"payment amount {record.amount}"
                ),
            )

        if record.method == PaymentMethod.cash:
            gateway = None
        else:
            gateway = self.factory.create(record.method.value)

        # reserve the amount before the provider call; the commit releases the row lock
        refund = RefundRecord(
            payment_record_id=record.id,
            amount=refund_amount,
            reason=reason,
            status=PaymentStatus.pending,
        )
        self.session.add(refund)
        await self.session.commit()

        if gateway is None:
            # handed back at the counter
            result = GatewayRefundResult(
                success=True,
                message="Cash refund recorded",
                status=PaymentStatus.refunded,
                amount=refund_amount,
            )
        else:
            result = await gateway.refund_payment(transaction_id, amount, reason)

        refund.extra_data = result.model_dump(mode="json")
        if not result.success:
            refund.status = PaymentStatus.failed
            await self.session.commit()
            log.warning("refund_rejected", message=result.message)
            return result

        refund_status = result.status
        if refund_status not in (PaymentStatus.pending, PaymentStatus.refunded):
            refund_status = PaymentStatus.pending
        refund.status = refund_status
        refund.provider_refund_id = result.refund_id
        await self.session.commit()
        log.info("refund_created", refund_id=result.refund_id, status=refund_status.value)

        if refund_status == PaymentStatus.refunded:
            await self.reconciliation.settle_refunds(record, source="refund")
        return result
