"""
Order collaborator (read the order, flip its payment status)
"""

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from paygate.core.constants import OrderPaymentStatus
from paygate.core.models import Order


class OrderStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: str) -> Order | None:
        return await self.session.get(Order, order_id, populate_existing=True)

    async def mark_paid(self, order_id: str) -> None:
        """Runs inside the caller's transaction; the caller commits"""
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_status=OrderPaymentStatus.paid)
            .execution_options(synchronize_session=False)
        )
