"""
Payment service (entry points for order-processing code)
"""

import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.constants import OrderPaymentStatus, PaymentMethod, PaymentStatus
from paygate.core.exceptions import (
    BadRequestException,
    ConflictException,
    NotFoundException,
)
from paygate.core.models import Order, PaymentRecord
from paygate.providers import GatewayFactory, get_gateway_factory
from paygate.schemas import (
    GatewayCancelResult,
    GatewayCreateRequest,
    GatewayCreateResult,
    GatewayVerifyResult,
)
from .orders import OrderStore
from .reconciliation import ReconciliationService

logger = structlog.get_logger(__name__)


class PaymentService:
    """Creates, polls and cancels payment attempts"""

    def __init__(self, session: AsyncSession, factory: GatewayFactory | None = None):
        self.session = session
        self.factory = factory or get_gateway_factory()
        self.orders = OrderStore(session)
        self.reconciliation = ReconciliationService(session, self.orders)

    async def _payable_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if not order:
            raise NotFoundException(
                message="Order not found", code=4041, details={"order_id": order_id}
            )
        if order.payment_status == OrderPaymentStatus.paid:
            raise ConflictException(
                message="Order is already paid", code=4091, details={"order_id": order_id}
            )

        stmt = select(PaymentRecord).where(
            PaymentRecord.order_id == order_id,
            PaymentRecord.status == PaymentStatus.pending,
        )
        pending = (await self.session.execute(stmt)).scalars().first()
        if pending:
            raise ConflictException(
                message="Order already has a pending payment",
                code=4092,
                details={
                    "order_id": order_id,
                    "transaction_id": pending.external_transaction_id,
                },
            )
        return order

    async def _save(self, record: PaymentRecord) -> PaymentRecord:
        self.session.add(record)
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictException(
                message="Order already has a pending payment",
                code=4092,
                details={"order_id": record.order_id},
            )
        await self.session.refresh(record)
        return record

    async def _get_record(self, transaction_id: str) -> PaymentRecord:
        record = await self.reconciliation.find_record(transaction_id)
        if not record:
            raise NotFoundException(
                message="Payment not found",
                code=4042,
                details={"transaction_id": transaction_id},
            )
        return record

    async def create_payment(
        self,
        order_id: str,
        gateway_name: str | None = None,
        *,
        customer_email: str | None = None,
        description: str | None = None,
        metadata: dict | None = None,
        return_url: str | None = None,
        cancel_url: str | None = None,
    ) -> tuple[PaymentRecord | None, GatewayCreateResult]:
        """
        Start a payment for an order.

        Without an explicit gateway the order currency picks one. A record is
        stored only when the provider accepted the payment; every call sends a
        new idempotency key, so a caller retrying after a failure starts a new
        attempt.
        """
        log = logger.bind(order_id=order_id, gateway=gateway_name)
        order = await self._payable_order(order_id)

        if gateway_name:
            gateway = self.factory.create(gateway_name)
        else:
            gateway = self.factory.for_currency(order.currency)
        log = log.bind(gateway=gateway.get_gateway_name())

        request = GatewayCreateRequest(
            order_id=order.id,
            amount=order.total_amount,
            currency=order.currency,
            customer_email=customer_email,
            description=description or f"Order {order.id}",
            metadata=metadata or {},
            return_url=return_url,
            cancel_url=cancel_url,
            idempotency_key=uuid.uuid4().hex,
        )
        result = await gateway.create_payment(request)
        if not result.success:
            log.warning("payment_create_rejected", message=result.message)
            return None, result

        record = await self._save(
            PaymentRecord(
                order_id=order.id,
                amount=order.total_amount,
                currency=order.currency,
                method=PaymentMethod(gateway.get_gateway_name()),
                external_transaction_id=result.transaction_id,
                status=PaymentStatus.pending,
            )
        )
        log.info("payment_created", transaction_id=result.transaction_id)

        if result.status != PaymentStatus.pending:
            await self.reconciliation.apply_status(record, result.status, source="create")
        return record, result

    async def verify_payment(self, transaction_id: str) -> GatewayVerifyResult:
        """Poll the provider and reconcile whatever it reports"""
        record = await self._get_record(transaction_id)
        if record.method == PaymentMethod.cash:
            return GatewayVerifyResult(
                success=True,
                transaction_id=transaction_id,
                status=record.status,
                amount=record.amount,
                currency=record.currency,
                paid_at=record.paid_at,
            )

        gateway = self.factory.create(record.method.value)
        result = await gateway.verify_payment(transaction_id)
        if result.success and result.status != PaymentStatus.pending:
            await self.reconciliation.apply_status(record, result.status, source="poll")
        return result

    async def cancel_payment(self, transaction_id: str) -> GatewayCancelResult:
        record = await self._get_record(transaction_id)
        if record.status != PaymentStatus.pending:
            return GatewayCancelResult(
                success=False,
                transaction_id=transaction_id,
                status=record.status,
                message=f"Payment is already {record.status.value}",
            )

        if record.method == PaymentMethod.cash:
            result = GatewayCancelResult(
                success=True,
                transaction_id=transaction_id,
                status=PaymentStatus.cancelled,
                message="Payment cancelled",
            )
        else:
            gateway = self.factory.create(record.method.value)
            result = await gateway.cancel_payment(transaction_id)

        if result.success:
            await self.reconciliation.apply_status(
                record, PaymentStatus.cancelled, source="cancel"
            )
        return result

    async def record_cash_payment(self, order_id: str) -> PaymentRecord:
        """Pending cash attempt, confirmed later by staff"""
        order = await self._payable_order(order_id)
        record = await self._save(
            PaymentRecord(
                order_id=order.id,
                amount=order.total_amount,
                currency=order.currency,
                method=PaymentMethod.cash,
                external_transaction_id=f"CASH-{order.id}-{uuid.uuid4().hex[:8].upper()}",
                status=PaymentStatus.pending,
            )
        )
        logger.info(
            "cash_payment_recorded",
            order_id=order_id,
            transaction_id=record.external_transaction_id,
        )
        return record

    async def confirm_cash_payment(self, transaction_id: str) -> PaymentRecord:
        record = await self._get_record(transaction_id)
        if record.method != PaymentMethod.cash:
            raise BadRequestException(
                message="Only cash payments can be confirmed manually",
                code=4006,
                details={"transaction_id": transaction_id, "method": record.method.value},
            )
        await self.reconciliation.apply_status(
            record, PaymentStatus.completed, source="cash"
        )
        return record
