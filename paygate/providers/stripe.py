"""
Stripe gateway (cards, PaymentIntent + client-side confirmation)

Uses the official SDK's async resource methods. The secret key is passed on
every call instead of being set on the stripe module.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any

import stripe
import structlog

from paygate.core.constants import GatewayName, PaymentStatus, WebhookEventType
from paygate.core.exceptions import GatewayConfigurationError
from paygate.core.settings import Settings
from paygate.schemas import (
    GatewayCancelResult,
    GatewayCreateRequest,
    GatewayCreateResult,
    GatewayRefundResult,
    GatewayVerifyResult,
    WebhookEvent,
)
from .base import PaymentGateway, SignatureMaterial, as_dict, as_str, load_json

logger = structlog.get_logger(__name__)

ZERO_DECIMAL_CURRENCIES = frozenset({"JPY", "KRW", "VND", "CLP"})

REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Decimal('250.00'), 'PHP' -> 25000; JPY has no minor unit"""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(Decimal(amount).quantize(Decimal("1")))
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(amount: Any, currency: str | None) -> Decimal | None:
    if amount is None:
        return None
    if (currency or "").upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(int(amount)).quantize(Decimal("0.01"))
    return (Decimal(int(amount)) / 100).quantize(Decimal("0.01"))


def charge_time(intent: Any) -> datetime | None:
    """Creation time of the intent's latest charge, when it was expanded"""
    charge = intent.get("latest_charge")
    # unexpanded, latest_charge is just the charge id
    if charge is None or isinstance(charge, str):
        return None
    created = charge.get("created")
    return datetime.fromtimestamp(created, UTC) if isinstance(created, int) else None


class StripeGateway(PaymentGateway):
    """Stripe PaymentIntents"""

    name = GatewayName.stripe
    supported_currencies = ("PHP", "USD", "EUR", "GBP", "JPY", "SGD", "HKD", "AUD", "CAD")
    minimum_amounts = MappingProxyType(
        {
            "PHP": Decimal("50.00"),
            "USD": Decimal("0.50"),
            "EUR": Decimal("0.50"),
            "GBP": Decimal("0.30"),
            "JPY": Decimal("50"),
            "SGD": Decimal("0.50"),
            "HKD": Decimal("4.00"),
            "AUD": Decimal("0.50"),
            "CAD": Decimal("0.50"),
        }
    )
    default_minimum_amount = Decimal("1.00")
    signature_header = "Stripe-Signature"

    _status_map = MappingProxyType(
        {
            "requires_payment_method": PaymentStatus.pending,
            "requires_confirmation": PaymentStatus.pending,
            "requires_action": PaymentStatus.pending,
            "requires_capture": PaymentStatus.pending,
            "processing": PaymentStatus.pending,
            "succeeded": PaymentStatus.completed,
            "canceled": PaymentStatus.cancelled,
            "failed": PaymentStatus.failed,
        }
    )
    _refund_status_map = MappingProxyType(
        {
            "succeeded": PaymentStatus.refunded,
            "failed": PaymentStatus.failed,
            "canceled": PaymentStatus.failed,
        }
    )
    _event_map = MappingProxyType(
        {
            "payment_intent.succeeded": WebhookEventType.payment_completed,
            "payment_intent.payment_failed": WebhookEventType.payment_failed,
            "payment_intent.canceled": WebhookEventType.payment_cancelled,
            "charge.refunded": WebhookEventType.refund_completed,
        }
    )

    def __init__(self, settings: Settings):
        if not settings.stripe_secret_key:
            raise GatewayConfigurationError("stripe", ["STRIPE_SECRET_KEY"])

        super().__init__(settings)
        self.secret_key = settings.stripe_secret_key
        self.webhook_secret = settings.stripe_webhook_secret
        self.webhook_tolerance = settings.stripe_webhook_tolerance

    def _error_message(self, exc: stripe.StripeError, default: str) -> str:
        return exc.user_message or str(exc) or default

    async def create_payment(self, request: GatewayCreateRequest) -> GatewayCreateResult:
        rejected = self.check_create_request(request)
        if rejected:
            return rejected

        log = logger.bind(gateway="stripe", order_id=request.order_id)
        params: dict[str, Any] = {
            "amount": to_minor_units(request.amount, request.currency),
            "currency": request.currency.lower(),
            "automatic_payment_methods": {"enabled": True},
            "description": request.description or f"Order {request.order_id}",
            "metadata": {
                **{key: str(value) for key, value in request.metadata.items()},
                "order_id": request.order_id,
            },
        }
        if request.customer_email:
            params["receipt_email"] = request.customer_email
        if request.idempotency_key:
            params["idempotency_key"] = request.idempotency_key

        try:
            intent = await stripe.PaymentIntent.create_async(api_key=self.secret_key, **params)
        except stripe.StripeError as exc:
            log.warning("stripe_create_payment_failed", error=str(exc))
            return GatewayCreateResult(
                success=False,
                message=self._error_message(exc, "Stripe payment creation failed"),
            )

        log.info("stripe_payment_created", transaction_id=intent.id)
        return GatewayCreateResult(
            success=True,
            message="Payment created",
            transaction_id=intent.id,
            status=self.map_status(intent.get("status")),
            client_secret=intent.get("client_secret"),
            amount=request.amount,
            currency=request.currency,
        )

    async def verify_payment(self, transaction_id: str) -> GatewayVerifyResult:
        try:
            intent = await stripe.PaymentIntent.retrieve_async(
                transaction_id, api_key=self.secret_key, expand=["latest_charge"]
            )
        except stripe.StripeError as exc:
            logger.warning(
                "stripe_verify_payment_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayVerifyResult(
                success=False,
                transaction_id=transaction_id,
                message=self._error_message(exc, "Stripe payment lookup failed"),
            )

        status = self.map_status(intent.get("status"))
        currency = (intent.get("currency") or "").upper() or None
        return GatewayVerifyResult(
            success=True,
            transaction_id=transaction_id,
            status=status,
            amount=from_minor_units(intent.get("amount"), currency),
            currency=currency,
            paid_at=charge_time(intent) if status == PaymentStatus.completed else None,
            metadata=dict(intent.get("metadata") or {}),
        )

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        params: dict[str, Any] = {"payment_intent": transaction_id}
        if amount is not None:
            # minor units need the intent's currency
            current = await self.verify_payment(transaction_id)
            if not current.success:
                return GatewayRefundResult(
                    success=False, status=PaymentStatus.failed, message=current.message
                )
            params["amount"] = to_minor_units(amount, current.currency or "PHP")
        if reason:
            params["reason"] = reason if reason in REFUND_REASONS else "requested_by_customer"
            params["metadata"] = {"reason": reason}

        try:
            refund = await stripe.Refund.create_async(api_key=self.secret_key, **params)
        except stripe.StripeError as exc:
            logger.warning(
                "stripe_refund_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayRefundResult(
                success=False,
                status=PaymentStatus.failed,
                message=self._error_message(exc, "Stripe refund failed"),
            )

        return GatewayRefundResult(
            success=True,
            message="Refund requested",
            refund_id=refund.id,
            status=self.map_refund_status(refund.get("status")),
            amount=from_minor_units(refund.get("amount"), refund.get("currency")),
        )

    async def cancel_payment(self, transaction_id: str) -> GatewayCancelResult:
        try:
            intent = await stripe.PaymentIntent.retrieve_async(
                transaction_id, api_key=self.secret_key
            )
            if self.map_status(intent.get("status")) == PaymentStatus.completed:
                return GatewayCancelResult(
                    success=False,
                    transaction_id=transaction_id,
                    status=PaymentStatus.completed,
                    message="Cannot cancel a completed payment",
                )
            intent = await stripe.PaymentIntent.cancel_async(
                transaction_id, api_key=self.secret_key
            )
        except stripe.StripeError as exc:
            logger.warning(
                "stripe_cancel_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayCancelResult(
                success=False,
                transaction_id=transaction_id,
                message=self._error_message(exc, "Stripe cancellation failed"),
            )

        return GatewayCancelResult(
            success=True,
            transaction_id=transaction_id,
            status=self.map_status(intent.get("status", "canceled")),
            message="Payment cancelled",
        )

    async def verify_webhook_signature(
        self, payload: bytes, signature: SignatureMaterial
    ) -> bool:
        log = logger.bind(gateway="stripe")
        if not self.webhook_secret:
            log.warning("webhook_secret_missing")
            return False
        if not isinstance(signature, str) or not signature:
            log.warning("webhook_signature_missing")
            return False

        try:
            return stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                self.webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            log.warning("stripe_signature_invalid", error=str(exc))
            return False

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        data = load_json(payload)
        if data is None:
            return WebhookEvent()

        raw_type = data.get("type")
        obj = as_dict(as_dict(data.get("data")).get("object"))
        currency = as_str(obj.get("currency"))
        currency = currency.upper() if currency else None

        if raw_type == "charge.refunded":
            # partial refunds leave refunded=false; only a full refund moves the record
            if not obj.get("refunded"):
                return WebhookEvent(raw_event_type=raw_type)
            transaction_id = as_str(obj.get("payment_intent"))
            minor = obj.get("amount_refunded")
        else:
            transaction_id = as_str(obj.get("id"))
            minor = obj.get("amount")

        try:
            amount = from_minor_units(minor, currency)
        except (TypeError, ValueError):
            amount = None

        return self.build_event(
            raw_type,
            transaction_id=transaction_id,
            amount=amount,
            currency=currency,
            metadata={**as_dict(obj.get("metadata")), "event_id": data.get("id")},
        )
