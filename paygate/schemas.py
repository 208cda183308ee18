"""
Gateway request/result schemas
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from paygate.core.constants import (
    EVENT_TARGET_STATUS,
    PaymentStatus,
    ReconcileOutcome,
    WebhookEventType,
)


# ===== create payment =====


class GatewayCreateRequest(BaseModel):
    """Input to PaymentGateway.create_payment"""

    order_id: str = Field(..., min_length=1, max_length=64, description="Order reference")
    amount: Decimal = Field(..., gt=0, description="Amount in major units")
    currency: str = Field(..., min_length=3, max_length=3, description="ISO 4217")
    customer_email: str | None = None
    description: str = Field("", max_length=500)
    metadata: dict[str, Any] = Field(default_factory=dict)
    return_url: str | None = Field(None, description="Overrides the default success URL")
    cancel_url: str | None = Field(None, description="Overrides the default cancel URL")
    idempotency_key: str | None = Field(
        None, description="Fresh per attempt; forwarded where the provider supports it"
    )

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


# ===== gateway results =====


class GatewayResult(BaseModel):
    """Every gateway operation reports success/failure instead of raising"""

    success: bool
    message: str = ""


class GatewayCreateResult(GatewayResult):
    transaction_id: str | None = None
    status: PaymentStatus = PaymentStatus.pending
    payment_url: str | None = None  # redirect flows
    client_secret: str | None = None  # client-confirmed flows
    amount: Decimal | None = None
    currency: str | None = None


class GatewayVerifyResult(GatewayResult):
    transaction_id: str | None = None
    status: PaymentStatus = PaymentStatus.pending
    amount: Decimal | None = None
    currency: str | None = None
    paid_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class GatewayRefundResult(GatewayResult):
    refund_id: str | None = None
    status: PaymentStatus = PaymentStatus.pending  # pending | refunded | failed
    amount: Decimal | None = None


class GatewayCancelResult(GatewayResult):
    transaction_id: str | None = None
    status: PaymentStatus = PaymentStatus.pending


# ===== webhooks =====


class WebhookEvent(BaseModel):
    """Normalized provider notification; built after signature validation"""

    event_type: WebhookEventType = WebhookEventType.unknown
    transaction_id: str | None = None
    # provider status carried in the body, when the provider sends one
    status: PaymentStatus | None = None
    # set on refund events; matched against RefundRecord.provider_refund_id
    refund_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    raw_event_type: str | None = None

    @property
    def target_status(self) -> PaymentStatus | None:
        return EVENT_TARGET_STATUS.get(self.event_type)


class WebhookAck(BaseModel):
    """Body returned to the provider"""

    gateway: str
    event_type: WebhookEventType
    transaction_id: str | None = None
    outcome: ReconcileOutcome
