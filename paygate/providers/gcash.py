"""
GCash gateway (PHP mobile wallet, redirect flow)
"""

from __future__ import annotations

from decimal import Decimal
from types import MappingProxyType

import httpx
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
from .base import (
    PROVIDER_ERRORS,
    HttpGateway,
    SignatureMaterial,
    as_currency,
    as_dict,
    as_str,
    format_amount,
    load_json,
    parse_datetime,
    to_decimal,
)

logger = structlog.get_logger(__name__)


class GCashGateway(HttpGateway):
    """GCash REST API, bearer-token authenticated"""

    name = GatewayName.gcash
    supported_currencies = ("PHP",)
    default_minimum_amount = Decimal("1.00")
    signature_header = "X-GCash-Signature"

    _status_map = MappingProxyType(
        {
            "pending": PaymentStatus.pending,
            "processing": PaymentStatus.pending,
            "paid": PaymentStatus.completed,
            "success": PaymentStatus.completed,
            "completed": PaymentStatus.completed,
            "failed": PaymentStatus.failed,
            "error": PaymentStatus.failed,
            "expired": PaymentStatus.failed,
            "cancelled": PaymentStatus.cancelled,
            "canceled": PaymentStatus.cancelled,
            "refunded": PaymentStatus.refunded,
        }
    )
    _refund_status_map = MappingProxyType(
        {
            "success": PaymentStatus.refunded,
            "completed": PaymentStatus.refunded,
            "refunded": PaymentStatus.refunded,
            "failed": PaymentStatus.failed,
            "error": PaymentStatus.failed,
        }
    )
    _event_map = MappingProxyType(
        {
            "payment.success": WebhookEventType.payment_completed,
            "payment.paid": WebhookEventType.payment_completed,
            "payment.failed": WebhookEventType.payment_failed,
            "payment.expired": WebhookEventType.payment_failed,
            "payment.cancelled": WebhookEventType.payment_cancelled,
            "refund.success": WebhookEventType.refund_completed,
            "refund.completed": WebhookEventType.refund_completed,
        }
    )

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        missing = [
            env
            for env, value in (
                ("GCASH_API_KEY", settings.gcash_api_key),
                ("GCASH_MERCHANT_ID", settings.gcash_merchant_id),
            )
            if not value
        ]
        if missing:
            raise GatewayConfigurationError("gcash", missing)

        super().__init__(settings, http_client)
        self.api_url = settings.gcash_api_url.rstrip("/")
        self.api_key = settings.gcash_api_key
        self.merchant_id = settings.gcash_merchant_id
        self.webhook_secret = settings.gcash_webhook_secret

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def create_payment(self, request: GatewayCreateRequest) -> GatewayCreateResult:
        rejected = self.check_create_request(request)
        if rejected:
            return rejected

        log = logger.bind(gateway="gcash", order_id=request.order_id)
        body = {
            "merchant_id": self.merchant_id,
            "amount": format_amount(request.amount),
            "currency": request.currency,
            "description": request.description or f"Order {request.order_id}",
            "customer_email": request.customer_email,
            "reference_number": f"ORD-{request.order_id}",
            "redirect_url": self.success_url(request),
            "cancel_url": self.cancel_url(request),
            "webhook_url": self.webhook_url(),
            "metadata": {**request.metadata, "order_id": request.order_id},
        }

        try:
            data = await self._request(
                "POST",
                f"{self.api_url}/payments",
                json=body,
                headers=self._headers(request.idempotency_key),
            )
        except PROVIDER_ERRORS as exc:
            log.warning("gcash_create_payment_failed", error=str(exc))
            return GatewayCreateResult(
                success=False,
                message=self.error_message(exc, "GCash payment creation failed"),
            )

        transaction_id = as_str(data.get("id") or data.get("transaction_id"))
        if not transaction_id:
            log.warning("gcash_create_payment_missing_id", response=data)
            return GatewayCreateResult(
                success=False, message="GCash response did not include a transaction id"
            )

        log.info("gcash_payment_created", transaction_id=transaction_id)
        return GatewayCreateResult(
            success=True,
            message="Payment created",
            transaction_id=transaction_id,
            status=self.map_status(data.get("status", "pending")),
            payment_url=as_str(data.get("checkout_url") or data.get("payment_url")),
            amount=request.amount,
            currency=request.currency,
        )

    async def verify_payment(self, transaction_id: str) -> GatewayVerifyResult:
        try:
            data = await self._request(
                "GET", f"{self.api_url}/payments/{transaction_id}", headers=self._headers()
            )
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "gcash_verify_payment_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayVerifyResult(
                success=False,
                transaction_id=transaction_id,
                message=self.error_message(exc, "GCash payment lookup failed"),
            )

        status = self.map_status(data.get("status"))
        return GatewayVerifyResult(
            success=True,
            transaction_id=transaction_id,
            status=status,
            amount=to_decimal(data.get("amount")),
            currency=as_currency(data.get("currency")),
            paid_at=parse_datetime(data.get("paid_at")) if status == PaymentStatus.completed else None,
            metadata=as_dict(data.get("metadata")),
        )

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        body: dict = {
            "merchant_id": self.merchant_id,
            "payment_id": transaction_id,
            "reason": reason or "Customer request",
        }
        if amount is not None:
            body["amount"] = format_amount(amount)

        try:
            data = await self._request(
                "POST", f"{self.api_url}/refunds", json=body, headers=self._headers()
            )
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "gcash_refund_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayRefundResult(
                success=False,
                status=PaymentStatus.failed,
                message=self.error_message(exc, "GCash refund failed"),
            )

        return GatewayRefundResult(
            success=True,
            message="Refund requested",
            refund_id=as_str(data.get("id") or data.get("refund_id")),
            status=self.map_refund_status(data.get("status")),
            amount=to_decimal(data.get("amount")) or amount,
        )

    async def cancel_payment(self, transaction_id: str) -> GatewayCancelResult:
        try:
            data = await self._request(
                "POST",
                f"{self.api_url}/payments/{transaction_id}/cancel",
                headers=self._headers(),
            )
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "gcash_cancel_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayCancelResult(
                success=False,
                transaction_id=transaction_id,
                message=self.error_message(exc, "GCash cancellation failed"),
            )

        status = self.map_status(data.get("status", "cancelled"))
        if status in (PaymentStatus.completed, PaymentStatus.refunded):
            return GatewayCancelResult(
                success=False,
                transaction_id=transaction_id,
                status=status,
                message="Cannot cancel a completed payment",
            )
        return GatewayCancelResult(
            success=True,
            transaction_id=transaction_id,
            status=PaymentStatus.cancelled,
            message="Payment cancelled",
        )

    async def verify_webhook_signature(
        self, payload: bytes, signature: SignatureMaterial
    ) -> bool:
        return self.verify_hmac_signature(self.webhook_secret, payload, signature)

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        data = load_json(payload)
        if data is None:
            return WebhookEvent()

        payment = as_dict(data.get("payment"))
        refund = as_dict(data.get("refund"))
        raw_status = data.get("status") or payment.get("status")
        # refund events carry the refunded amount, not the payment amount
        amount = refund.get("amount", data.get("amount", payment.get("amount")))
        return self.build_event(
            data.get("event_type") or data.get("event") or data.get("type"),
            transaction_id=as_str(
                data.get("transaction_id") or payment.get("id") or refund.get("payment_id")
            ),
            status=self.map_status(raw_status) if raw_status else None,
            refund_id=as_str(data.get("refund_id") or refund.get("id")),
            amount=to_decimal(amount),
            currency=as_currency(data.get("currency") or payment.get("currency")),
            metadata=as_dict(data.get("metadata") or payment.get("metadata")),
        )
