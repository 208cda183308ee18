"""
Reconciliation (apply provider-reported status to the payment record store)

Webhooks may arrive twice, late, or out of order. Every status change goes
through a compare-and-set keyed on the record id, so a transition is applied
at most once and terminal states are never walked back.
"""

from datetime import UTC, datetime
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.constants import (
    ALLOWED_TRANSITIONS,
    PaymentMethod,
    PaymentStatus,
    ReconcileOutcome,
)
from paygate.core.models import PaymentRecord, RefundRecord
from paygate.schemas import WebhookEvent
from .orders import OrderStore

logger = structlog.get_logger(__name__)


class ReconciliationService:
    def __init__(self, session: AsyncSession, orders: OrderStore | None = None):
        self.session = session
        self.orders = orders or OrderStore(session)

    async def find_record(
        self,
        transaction_id: str,
        method: PaymentMethod | None = None,
        *,
        lock: bool = False,
    ) -> PaymentRecord | None:
        stmt = select(PaymentRecord).where(
            PaymentRecord.external_transaction_id == transaction_id
        )
        if method is not None:
            stmt = stmt.where(PaymentRecord.method == method)
        if lock:
            stmt = stmt.with_for_update()
        stmt = stmt.execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def apply_webhook_event(
        self, gateway_name: str, event: WebhookEvent
    ) -> ReconcileOutcome:
        """
        Apply a verified, parsed webhook event.

        Unknown events and unknown transaction ids are acknowledged without
        touching the store; records are never created from a webhook.
        """
        log = logger.bind(
            gateway=gateway_name,
            event_type=event.event_type.value,
            raw_event_type=event.raw_event_type,
            transaction_id=event.transaction_id,
        )

        target = event.target_status
        if target is None:
            log.info("webhook_event_ignored")
            return ReconcileOutcome.ignored

        if not event.transaction_id:
            log.warning("webhook_event_missing_transaction_id")
            return ReconcileOutcome.not_found

        record = await self.find_record(
            event.transaction_id, PaymentMethod(gateway_name), lock=True
        )
        if record is None:
            log.warning("webhook_payment_record_not_found")
            return ReconcileOutcome.not_found

        source = f"webhook:{gateway_name}"
        if target == PaymentStatus.refunded:
            applied = await self.apply_refund_event(record, event, source=source)
        else:
            applied = await self.apply_status(record, target, source=source)
        return ReconcileOutcome.applied if applied else ReconcileOutcome.no_op

    async def refunded_total(
        self,
        record: PaymentRecord,
        statuses: tuple[PaymentStatus, ...] = (PaymentStatus.pending, PaymentStatus.refunded),
    ) -> Decimal:
        """Sum of the record's refunds in the given statuses"""
        stmt = select(func.sum(RefundRecord.amount)).where(
            RefundRecord.payment_record_id == record.id,
            RefundRecord.status.in_(list(statuses)),
        )
        total = (await self.session.execute(stmt)).scalar()
        return Decimal(str(total)) if total is not None else Decimal("0")

    async def settle_refunds(self, record: PaymentRecord, *, source: str) -> bool:
        """Move the record to refunded once settled refunds cover its amount"""
        settled = await self.refunded_total(record, (PaymentStatus.refunded,))
        if settled < record.amount:
            return False
        return await self.apply_status(record, PaymentStatus.refunded, source=source)

    async def apply_refund_event(
        self, record: PaymentRecord, event: WebhookEvent, *, source: str
    ) -> bool:
        """
        Apply a provider refund notification.

        A refund id settles the matching RefundRecord, or records a refund
        made outside this service (e.g. from the provider dashboard). The
        payment itself only becomes refunded once settled refunds add up to
        its amount. Without a refund id the event stands for the whole
        payment only when it carries no amount or the full amount.
        """
        log = logger.bind(
            payment_record_id=str(record.id),
            refund_id=event.refund_id,
            amount=str(event.amount),
            source=source,
        )

        if not event.refund_id:
            if event.amount is not None and event.amount < record.amount:
                log.info("partial_refund_without_refund_id")
                return False
            if not await self.apply_status(record, PaymentStatus.refunded, source=source):
                return False
            # fully refunded, so anything still pending has gone through
            await self.session.execute(
                update(RefundRecord)
                .where(
                    RefundRecord.payment_record_id == record.id,
                    RefundRecord.status == PaymentStatus.pending,
                )
                .values(status=PaymentStatus.refunded)
                .execution_options(synchronize_session=False)
            )
            await self.session.commit()
            return True

        if record.status != PaymentStatus.completed:
            log.info("refund_event_no_op", current_status=record.status.value)
            return False

        refund = (
            await self.session.execute(
                select(RefundRecord).where(
                    RefundRecord.payment_record_id == record.id,
                    RefundRecord.provider_refund_id == event.refund_id,
                )
            )
        ).scalars().first()

        changed = False
        if refund is not None:
            result = await self.session.execute(
                update(RefundRecord)
                .where(
                    RefundRecord.id == refund.id,
                    RefundRecord.status == PaymentStatus.pending,
                )
                .values(status=PaymentStatus.refunded)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1
        else:
            amount = record.amount if event.amount is None else event.amount
            outstanding = record.amount - await self.refunded_total(record)
            if amount <= 0 or amount > outstanding:
                log.warning("refund_event_exceeds_payment", outstanding=str(outstanding))
                return False
            self.session.add(
                RefundRecord(
                    payment_record_id=record.id,
                    amount=amount,
                    status=PaymentStatus.refunded,
                    provider_refund_id=event.refund_id,
                    extra_data={"source": source, "raw_event_type": event.raw_event_type},
                )
            )
            changed = True

        if changed:
            await self.session.commit()
            log.info("refund_settled")

        fully_refunded = await self.settle_refunds(record, source=source)
        return changed or fully_refunded

    async def apply_status(
        self, record: PaymentRecord, target: PaymentStatus, *, source: str
    ) -> bool:
        """
        Move a record to ``target`` if the transition is allowed from its
        current status. Returns False (and changes nothing) otherwise.

        Reaching completed sets paid_at and marks the order paid in the same
        commit.
        """
        log = logger.bind(
            payment_record_id=str(record.id),
            transaction_id=record.external_transaction_id,
            target_status=target.value,
            source=source,
        )

        allowed_from = ALLOWED_TRANSITIONS.get(target)
        if not allowed_from:
            log.info("reconciliation_no_op", reason="no_transition_to_target")
            return False

        values: dict = {"status": target}
        if target == PaymentStatus.completed:
            values["paid_at"] = datetime.now(UTC)

        result = await self.session.execute(
            update(PaymentRecord)
            .where(
                PaymentRecord.id == record.id,
                PaymentRecord.status.in_(list(allowed_from)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await self.session.refresh(record)
            log.info("reconciliation_no_op", current_status=record.status.value)
            return False

        if target == PaymentStatus.completed:
            await self.orders.mark_paid(record.order_id)

        await self.session.commit()
        await self.session.refresh(record)
        log.info("reconciliation_applied")
        return True
