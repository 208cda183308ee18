"""
PayPal gateway (Orders v2, buyer approval redirect then capture)

Every operation fetches its own OAuth client-credentials token; nothing is
cached on the adapter.
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from types import MappingProxyType
from typing import Any

import httpx
import structlog

from paygate.core.constants import GatewayName, PaymentStatus, WebhookEventType
from paygate.core.exceptions import GatewayConfigurationError, PaymentProviderException
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

API_URLS = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

# webhook header -> field of the verify-webhook-signature request
SIGNATURE_HEADERS = {
    "paypal-auth-algo": "auth_algo",
    "paypal-cert-url": "cert_url",
    "paypal-transmission-id": "transmission_id",
    "paypal-transmission-sig": "transmission_sig",
    "paypal-transmission-time": "transmission_time",
}


def first_purchase_unit(data: dict[str, Any]) -> dict[str, Any]:
    units = data.get("purchase_units")
    if isinstance(units, list) and units:
        return as_dict(units[0])
    return {}


def first_capture(unit: dict[str, Any]) -> dict[str, Any]:
    captures = as_dict(unit.get("payments")).get("captures")
    if isinstance(captures, list) and captures:
        return as_dict(captures[0])
    return {}


class PayPalGateway(HttpGateway):
    """PayPal REST (Orders v2)"""

    name = GatewayName.paypal
    supported_currencies = (
        "PHP", "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "SGD", "HKD", "CNY",
    )
    minimum_amounts = MappingProxyType(
        {
            "PHP": Decimal("50.00"),
            "JPY": Decimal("100"),
            "HKD": Decimal("10.00"),
            "CNY": Decimal("10.00"),
        }
    )
    default_minimum_amount = Decimal("1.00")

    _status_map = MappingProxyType(
        {
            "created": PaymentStatus.pending,
            "saved": PaymentStatus.pending,
            "approved": PaymentStatus.pending,
            "payer_action_required": PaymentStatus.pending,
            "completed": PaymentStatus.completed,
            "voided": PaymentStatus.cancelled,
            "refunded": PaymentStatus.refunded,
            "partially_refunded": PaymentStatus.refunded,
        }
    )
    _refund_status_map = MappingProxyType(
        {
            "completed": PaymentStatus.refunded,
            "failed": PaymentStatus.failed,
            "cancelled": PaymentStatus.failed,
        }
    )
    _event_map = MappingProxyType(
        {
            "CHECKOUT.ORDER.COMPLETED": WebhookEventType.payment_completed,
            "PAYMENT.CAPTURE.COMPLETED": WebhookEventType.payment_completed,
            "PAYMENT.SALE.COMPLETED": WebhookEventType.payment_completed,
            "PAYMENT.CAPTURE.DENIED": WebhookEventType.payment_failed,
            "PAYMENT.SALE.DENIED": WebhookEventType.payment_failed,
            "CHECKOUT.ORDER.VOIDED": WebhookEventType.payment_cancelled,
            "PAYMENT.CAPTURE.REFUNDED": WebhookEventType.refund_completed,
            "PAYMENT.SALE.REFUNDED": WebhookEventType.refund_completed,
        }
    )

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        missing = [
            env
            for env, value in (
                ("PAYPAL_CLIENT_ID", settings.paypal_client_id),
                ("PAYPAL_CLIENT_SECRET", settings.paypal_client_secret),
            )
            if not value
        ]
        if missing:
            raise GatewayConfigurationError("paypal", missing)

        super().__init__(settings, http_client)
        self.api_url = API_URLS[settings.paypal_mode]
        self.client_auth = (settings.paypal_client_id, settings.paypal_client_secret)
        self.webhook_id = settings.paypal_webhook_id
        self.brand_name = settings.paypal_brand_name

    async def _access_token(self) -> str:
        data = await self._request(
            "POST",
            f"{self.api_url}/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
            auth=self.client_auth,
        )
        token = data.get("access_token")
        if not token:
            raise PaymentProviderException(message="PayPal did not return an access token")
        return token

    async def _headers(self, request_id: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/json",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    async def _get_order(self, order_id: str) -> dict[str, Any]:
        return await self._request(
            "GET",
            f"{self.api_url}/v2/checkout/orders/{order_id}",
            headers=await self._headers(),
        )

    def _order_result(self, transaction_id: str, data: dict[str, Any]) -> GatewayVerifyResult:
        status = self.map_status(data.get("status"))
        unit = first_purchase_unit(data)
        amount = as_dict(unit.get("amount"))
        paid_at = None
        if status == PaymentStatus.completed:
            paid_at = parse_datetime(first_capture(unit).get("create_time"))
        return GatewayVerifyResult(
            success=True,
            transaction_id=transaction_id,
            status=status,
            amount=to_decimal(amount.get("value")),
            currency=as_currency(amount.get("currency_code")),
            paid_at=paid_at,
            metadata={"reference_id": unit.get("reference_id")},
        )

    async def create_payment(self, request: GatewayCreateRequest) -> GatewayCreateResult:
        rejected = self.check_create_request(request)
        if rejected:
            return rejected

        log = logger.bind(gateway="paypal", order_id=request.order_id)
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": f"ORD-{request.order_id}",
                    "custom_id": request.order_id,
                    "description": request.description or f"Order {request.order_id}",
                    "amount": {
                        "currency_code": request.currency,
                        "value": format_amount(request.amount),
                    },
                }
            ],
            "application_context": {
                "return_url": self.success_url(request),
                "cancel_url": self.cancel_url(request),
                "brand_name": self.brand_name,
                "landing_page": "BILLING",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
            },
        }

        try:
            data = await self._request(
                "POST",
                f"{self.api_url}/v2/checkout/orders",
                json=body,
                headers=await self._headers(request.idempotency_key),
            )
        except PROVIDER_ERRORS as exc:
            log.warning("paypal_create_payment_failed", error=str(exc))
            return GatewayCreateResult(
                success=False,
                message=self.error_message(exc, "PayPal order creation failed"),
            )

        transaction_id = as_str(data.get("id"))
        if not transaction_id:
            return GatewayCreateResult(
                success=False, message="PayPal response did not include an order id"
            )

        approve_url = None
        for link in data.get("links") or []:
            link = as_dict(link)
            if link.get("rel") in ("approve", "payer-action"):
                approve_url = as_str(link.get("href"))
                break

        log.info("paypal_order_created", transaction_id=transaction_id)
        return GatewayCreateResult(
            success=True,
            message="Payment created",
            transaction_id=transaction_id,
            status=self.map_status(data.get("status")),
            payment_url=approve_url,
            amount=request.amount,
            currency=request.currency,
        )

    async def verify_payment(self, transaction_id: str) -> GatewayVerifyResult:
        try:
            data = await self._get_order(transaction_id)
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "paypal_verify_payment_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayVerifyResult(
                success=False,
                transaction_id=transaction_id,
                message=self.error_message(exc, "PayPal order lookup failed"),
            )
        return self._order_result(transaction_id, data)

    async def capture_payment(self, transaction_id: str) -> GatewayVerifyResult:
        """Capture an order the buyer has approved"""
        try:
            data = await self._request(
                "POST",
                f"{self.api_url}/v2/checkout/orders/{transaction_id}/capture",
                json={},
                headers=await self._headers(),
            )
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "paypal_capture_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayVerifyResult(
                success=False,
                transaction_id=transaction_id,
                message=self.error_message(exc, "PayPal capture failed"),
            )

        logger.info("paypal_order_captured", transaction_id=transaction_id)
        return self._order_result(transaction_id, data)

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        log = logger.bind(gateway="paypal", transaction_id=transaction_id)
        try:
            order = await self._get_order(transaction_id)
            unit = first_purchase_unit(order)
            capture_id = as_str(first_capture(unit).get("id"))
            if not capture_id:
                return GatewayRefundResult(
                    success=False,
                    status=PaymentStatus.failed,
                    message="No capture found for this order",
                )

            body: dict[str, Any] = {}
            if amount is not None:
                body["amount"] = {
                    "value": format_amount(amount),
                    "currency_code": as_dict(unit.get("amount")).get("currency_code", "PHP"),
                }
            if reason:
                body["note_to_payer"] = reason[:255]

            data = await self._request(
                "POST",
                f"{self.api_url}/v2/payments/captures/{capture_id}/refund",
                json=body,
                headers=await self._headers(),
            )
        except PROVIDER_ERRORS as exc:
            log.warning("paypal_refund_failed", error=str(exc))
            return GatewayRefundResult(
                success=False,
                status=PaymentStatus.failed,
                message=self.error_message(exc, "PayPal refund failed"),
            )

        return GatewayRefundResult(
            success=True,
            message="Refund requested",
            refund_id=as_str(data.get("id")),
            status=self.map_refund_status(data.get("status")),
            amount=to_decimal(as_dict(data.get("amount")).get("value")) or amount,
        )

    async def cancel_payment(self, transaction_id: str) -> GatewayCancelResult:
        """
        PayPal has no cancel call for an uncaptured order. Only the status is
        checked: orders that are approved or completed cannot be cancelled,
        anything else is reported cancelled and left to expire on PayPal's side.
        """
        try:
            data = await self._get_order(transaction_id)
        except PROVIDER_ERRORS as exc:
            logger.warning(
                "paypal_cancel_failed", transaction_id=transaction_id, error=str(exc)
            )
            return GatewayCancelResult(
                success=False,
                transaction_id=transaction_id,
                message=self.error_message(exc, "PayPal order lookup failed"),
            )

        raw_status = str(data.get("status") or "").upper()
        if raw_status in ("COMPLETED", "APPROVED"):
            return GatewayCancelResult(
                success=False,
                transaction_id=transaction_id,
                status=self.map_status(raw_status),
                message="Cannot cancel an approved or completed payment",
            )
        return GatewayCancelResult(
            success=True,
            transaction_id=transaction_id,
            status=PaymentStatus.cancelled,
            message="Payment cancelled",
        )

    def signature_from_headers(self, headers: Mapping[str, str]) -> SignatureMaterial:
        lowered = {key.lower(): value for key, value in headers.items()}
        return {
            header: lowered[header] for header in SIGNATURE_HEADERS if header in lowered
        }

    async def verify_webhook_signature(
        self, payload: bytes, signature: SignatureMaterial
    ) -> bool:
        log = logger.bind(gateway="paypal")
        if not self.webhook_id:
            log.warning("webhook_secret_missing")
            return False
        if not isinstance(signature, Mapping):
            log.warning("webhook_signature_missing")
            return False
        missing = [header for header in SIGNATURE_HEADERS if not signature.get(header)]
        if missing:
            log.warning("webhook_signature_missing", missing=missing)
            return False

        event = load_json(payload)
        if event is None:
            return False

        body = {field: signature[header] for header, field in SIGNATURE_HEADERS.items()}
        body["webhook_id"] = self.webhook_id
        body["webhook_event"] = event

        try:
            data = await self._request(
                "POST",
                f"{self.api_url}/v1/notifications/verify-webhook-signature",
                json=body,
                headers=await self._headers(),
            )
        except PROVIDER_ERRORS as exc:
            log.error("paypal_signature_check_failed", error=str(exc))
            return False

        return data.get("verification_status") == "SUCCESS"

    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        data = load_json(payload)
        if data is None:
            return WebhookEvent()

        raw_type = data.get("event_type")
        resource = as_dict(data.get("resource"))
        related = as_dict(as_dict(resource.get("supplementary_data")).get("related_ids"))

        if isinstance(raw_type, str) and raw_type.startswith("CHECKOUT.ORDER."):
            transaction_id = resource.get("id")
        elif isinstance(raw_type, str) and raw_type.startswith("PAYMENT.SALE."):
            transaction_id = resource.get("parent_payment") or resource.get("id")
        else:
            # captures and refunds point back at the order they belong to
            transaction_id = related.get("order_id") or resource.get("id")

        amount = as_dict(resource.get("amount"))
        if not amount:
            unit = first_purchase_unit(resource)
            amount = as_dict(unit.get("amount"))

        # on refund events the resource is the refund itself
        refund_id = None
        if isinstance(raw_type, str) and raw_type.endswith(".REFUNDED"):
            refund_id = resource.get("id")

        return self.build_event(
            raw_type,
            transaction_id=as_str(transaction_id),
            refund_id=as_str(refund_id),
            amount=to_decimal(amount.get("value", amount.get("total"))),
            currency=as_currency(amount.get("currency_code") or amount.get("currency")),
            metadata={
                "event_id": data.get("id"),
                "resource_id": resource.get("id"),
                "custom_id": resource.get("custom_id"),
            },
        )
