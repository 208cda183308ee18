"""
Maya gateway (PHP wallet/cards, hosted checkout)

Checkout creation authenticates with the public key; lookups, refunds and
cancellation use the secret key. Both are HTTP basic with an empty password.
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


class MayaGateway(HttpGateway):
    """Maya (formerly PayMaya) payment API"""

    name = GatewayName.maya
    supported_currencies = ("PHP",)
    default_minimum_amount = Decimal("1.00")
    signature_header = "X-Maya-Signature"

    _status_map = MappingProxyType(
        {
            "pending": PaymentStatus.pending,
            "processing": PaymentStatus.pending,
            "pending_token": PaymentStatus.pending,
            "pending_payment": PaymentStatus.pending,
            "for_authentication": PaymentStatus.pending,
            "authenticating": PaymentStatus.pending,
            "payment_success": PaymentStatus.completed,
            "payment_completed": PaymentStatus.completed,
            "completed": PaymentStatus.completed,
            "payment_failed": PaymentStatus.failed,
            "failed": PaymentStatus.failed,
            "auth_failed": PaymentStatus.failed,
            "payment_expired": PaymentStatus.failed,
            "expired": PaymentStatus.failed,
            "payment_cancelled": PaymentStatus.cancelled,
            "cancelled": PaymentStatus.cancelled,
            "voided": PaymentStatus.cancelled,
            "refunded": PaymentStatus.refunded,
        }
    )
    _refund_status_map = MappingProxyType(
        {
            "success": PaymentStatus.refunded,
            "refunded": PaymentStatus.refunded,
            "completed": PaymentStatus.refunded,
            "failed": PaymentStatus.failed,
        }
    )
    # Maya webhooks carry the payment status rather than an event name
    _event_map = MappingProxyType(
        {
            "PAYMENT_SUCCESS": WebhookEventType.payment_completed,
            "PAYMENT_COMPLETED": WebhookEventType.payment_completed,
            "COMPLETED": WebhookEventType.payment_completed,
            "PAYMENT_FAILED": WebhookEventType.payment_failed,
            "AUTH_FAILED": WebhookEventType.payment_failed,
            "PAYMENT_EXPIRED": WebhookEventType.payment_failed,
            "PAYMENT_CANCELLED": WebhookEventType.payment_cancelled,
            "VOIDED": WebhookEventType.payment_cancelled,
            "REFUNDED": WebhookEventType.refund_completed,
        }
    )

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        missing = [
            env
            for env, value in (
                ("MAYA_PUBLIC_KEY", settings.maya_public_key),
                ("MAYA_SECRET_KEY", settings.maya_secret_key),
            )
            if not value
        ]
        if missing:
            raise GatewayConfigurationError("maya", missing)

        super().__init__(settings, http_client)
        self.api_url = settings.maya_api_url.rstrip("/")
        self.public_auth = (settings.maya_public_key, "")
        self.secret_auth = (settings.maya_secret_key, "")
        self.webhook_secret = settings.maya_webhook_secret

    def _payment_url(self, transaction_id: str, suffix: str = "") -> str:
        return f"{self.api_url}/payments/v1/payments/{transaction_id}{suffix}"

    async def create_payment(self, request: GatewayCreateRequest) -> GatewayCreateResult:
        rejected = self.check_create_request(request)
        if rejected:
            return rejected

        log = logger.bind(gateway="maya", order_id=request.order_id)
        body = {
            "totalAmount": {
                "value": float(format_amount(request.amount)),
                "currency": request.currency,
            },
            "redirectUrl": {
                "success": self.success_url(request),
                "failure": f"{self.settings.frontend_url}/orders/{request.order_id}/payment/failed",
                "cancel": self.cancel_url(request),
            },
            "requestReferenceNumber": f"ORD-{request.order_id}",
            "metadata": {**request.metadata, "order_id": request.order_id},
        }
        if request.customer_email:
            body["buyer"] = {"contact": {"email": request.customer_email}}

        try:
            data = await self._request(
                "POST",
                f"{self.api_url}/payby/v2/paymaya/payments",
                json=body,
                auth=self.public_auth,
            )
        except PROVIDER_ERRORS as exc:
            log.warning("maya_create_payment_failed", error=str(exc))
            return GatewayCreateResult(
                success=False,
                message=self.error_message(exc, "Maya payment creation failed"),
            )

        transaction_id = as_str(data.get("paymentId"))
        if not transaction_id:
            log.warning("maya_create_payment_missing_id", response=data)
            return GatewayCreateResult(
                success=False, message="Maya response did not include a payment id"
            )

        log.info("maya_payment_created", transaction_id=transaction_id)
        return GatewayCreateResult(
            success=True,
            message="Payment created",
            transaction_id=transaction_id,
            status=PaymentStatus.pending,
            payment_url=as_str(data.get("redirectUrl")),
            amount=request.amount,
            currency=request.currency,
        )

    async def verify_payment(self, transaction_id: str) -> GatewayVerifyResult:
        try:
            data = await self._request(
                "GET", self._payment_url(transaction_id), auth=self.secret_auth
            )
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "maya_verify_payment_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayVerifyResult(
                success=False,
                transaction_id=transaction_id,
                message=self.error_message(exc, "Maya payment lookup failed"),
            )

        status = self.map_status(data.get("status"))
        paid_at = None
        if status == PaymentStatus.completed:
            paid_at = parse_datetime(data.get("paymentAt") or data.get("updatedAt"))
        return GatewayVerifyResult(
            success=True,
            transaction_id=transaction_id,
            status=status,
            amount=to_decimal(data.get("amount")),
            currency=as_currency(data.get("currency")),
            paid_at=paid_at,
            metadata=as_dict(data.get("metadata")),
        )

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        currency = "PHP"
        if amount is None:
            # Maya has no implicit full refund; look the amount up first
            current = await self.verify_payment(transaction_id)
            if not current.success or current.amount is None:
                return GatewayRefundResult(
                    success=False,
                    status=PaymentStatus.failed,
                    message=current.message or "Could not determine the payment amount",
                )
            amount = current.amount
            currency = current.currency or currency

        body = {
            "totalAmount": {"amount": float(format_amount(amount)), "currency": currency},
            "reason": reason or "Customer request",
        }
        try:
            data = await self._request(
                "POST",
                self._payment_url(transaction_id, "/refunds"),
                json=body,
                auth=self.secret_auth,
            )
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "maya_refund_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayRefundResult(
                success=False,
                status=PaymentStatus.failed,
                message=self.error_message(exc, "Maya refund failed"),
            )

        return GatewayRefundResult(
            success=True,
            message="Refund requested",
            refund_id=as_str(data.get("id")),
            status=self.map_refund_status(data.get("status")),
            amount=amount,
        )

    async def cancel_payment(self, transaction_id: str) -> GatewayCancelResult:
        try:
            data = await self._request(
                "POST", self._payment_url(transaction_id, "/cancel"), auth=self.secret_auth
            )
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "maya_cancel_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayCancelResult(
                success=False,
                transaction_id=transaction_id,
                message=self.error_message(exc, "Maya cancellation failed"),
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

        amount = data.get("amount")
        currency = data.get("currency")
        total = as_dict(data.get("totalAmount"))
        if amount is None and total:
            amount = total.get("value", total.get("amount"))
            currency = currency or total.get("currency")

        raw_status = data.get("status") or data.get("paymentStatus")
        return self.build_event(
            raw_status,
            transaction_id=as_str(
                data.get("transactionId") or data.get("id") or data.get("paymentId")
            ),
            status=self.map_status(raw_status) if raw_status else None,
            refund_id=as_str(data.get("refundId")),
            amount=to_decimal(amount),
            currency=as_currency(currency),
            metadata={
                **as_dict(data.get("metadata")),
                "request_reference_number": data.get("requestReferenceNumber"),
            },
        )
