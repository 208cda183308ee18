"""
Gateway base classes (the contract every payment provider implements)
"""

from __future__ import annotations

import hmac
import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from paygate.core.constants import GatewayName, PaymentStatus, WebhookEventType
from paygate.core.exceptions import PaymentProviderException
from paygate.core.settings import Settings
from paygate.schemas import (
    GatewayCancelResult,
    GatewayCreateRequest,
    GatewayCreateResult,
    GatewayRefundResult,
    GatewayVerifyResult,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")

# failures an adapter turns into a failed result instead of raising
PROVIDER_ERRORS = (httpx.HTTPError, PaymentProviderException, ValueError, KeyError)

SignatureMaterial = str | Mapping[str, str] | None


def to_decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(CENT)
    except (InvalidOperation, ValueError):
        return None


def as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def as_currency(value: Any) -> str | None:
    """ISO code in upper case; providers are not consistent about casing"""
    code = as_str(value)
    return code.upper() if code else None


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def format_amount(amount: Decimal) -> str:
    """Two-decimal string, e.g. Decimal('250') -> '250.00'"""
    return str(Decimal(amount).quantize(CENT))


def parse_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def load_json(payload: bytes | str) -> dict[str, Any] | None:
    """Decode a webhook body; None for anything that is not a JSON object"""
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def hmac_sha256_matches(secret: str, payload: bytes, signature: str) -> bool:
    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class PaymentGateway(ABC):
    """
    Payment gateway contract.

    Operations never raise past this boundary: provider rejections, network
    errors and malformed responses come back as results with success=False.
    Provider-native statuses are translated through read-only maps that fall
    back to pending for anything unrecognized.
    """

    name: GatewayName
    supported_currencies: tuple[str, ...] = ()
    minimum_amounts: Mapping[str, Decimal] = MappingProxyType({})
    default_minimum_amount: Decimal = Decimal("1.00")
    signature_header: str | None = None

    # provider status (lower case) -> standardized status
    _status_map: Mapping[str, PaymentStatus] = MappingProxyType({})
    # provider refund status (lower case) -> standardized status
    _refund_status_map: Mapping[str, PaymentStatus] = MappingProxyType({})
    # provider event type -> webhook event type
    _event_map: Mapping[str, WebhookEventType] = MappingProxyType({})

    def __init__(self, settings: Settings):
        self.settings = settings

    # ===== contract =====

    @abstractmethod
    async def create_payment(self, request: GatewayCreateRequest) -> GatewayCreateResult:
        """Start a payment; returns the provider transaction id on success"""

    @abstractmethod
    async def verify_payment(self, transaction_id: str) -> GatewayVerifyResult:
        """Poll the provider for the current status"""

    @abstractmethod
    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
    ) -> GatewayRefundResult:
        """Refund fully (amount=None) or partially"""

    @abstractmethod
    async def cancel_payment(self, transaction_id: str) -> GatewayCancelResult:
        """Cancel an unfinished payment; fails once the provider reports it completed"""

    @abstractmethod
    async def verify_webhook_signature(
        self, payload: bytes, signature: SignatureMaterial
    ) -> bool:
        """Authenticate the exact raw webhook body; missing secrets reject"""

    @abstractmethod
    def parse_webhook(self, payload: bytes) -> WebhookEvent:
        """Normalize a verified webhook body; never raises"""

    # ===== static capabilities =====

    def get_gateway_name(self) -> str:
        return self.name.value

    def get_supported_currencies(self) -> list[str]:
        return list(self.supported_currencies)

    def supports_currency(self, currency: str) -> bool:
        return currency.upper() in self.supported_currencies

    def get_minimum_amount(self, currency: str) -> Decimal:
        return self.minimum_amounts.get(currency.upper(), self.default_minimum_amount)

    def signature_from_headers(self, headers: Mapping[str, str]) -> SignatureMaterial:
        """Pick this gateway's signature material out of the webhook headers"""
        if not self.signature_header:
            return None
        wanted = self.signature_header.lower()
        for key, value in headers.items():
            if key.lower() == wanted:
                return value
        return None

    # ===== helpers =====

    def map_status(self, raw: Any) -> PaymentStatus:
        return self._status_map.get(str(raw or "").strip().lower(), PaymentStatus.pending)

    def map_refund_status(self, raw: Any) -> PaymentStatus:
        return self._refund_status_map.get(
            str(raw or "").strip().lower(), PaymentStatus.pending
        )

    def map_event(self, raw: Any) -> WebhookEventType:
        if not isinstance(raw, str):
            return WebhookEventType.unknown
        return self._event_map.get(raw, WebhookEventType.unknown)

    def build_event(self, raw_type: Any, **fields: Any) -> WebhookEvent:
        """WebhookEvent for a provider event type; unusable fields yield unknown"""
        raw = raw_type if isinstance(raw_type, str) else None
        try:
            return WebhookEvent(
                event_type=self.map_event(raw), raw_event_type=raw, **fields
            )
        except ValidationError:
            logger.warning(
                "webhook_payload_unusable", gateway=self.get_gateway_name(), event=raw
            )
            return WebhookEvent(raw_event_type=raw)

    def check_create_request(
        self, request: GatewayCreateRequest
    ) -> GatewayCreateResult | None:
        """Failed result for requests the provider would reject outright"""
        if not self.supports_currency(request.currency):
            return GatewayCreateResult(
                success=False,
                message=f"Currency {request.currency} is not supported by {self.get_gateway_name()}",
                currency=request.currency,
                amount=request.amount,
            )
        minimum = self.get_minimum_amount(request.currency)
        if request.amount < minimum:
            return GatewayCreateResult(
                success=False,
                message=f"Minimum amount for {request.currency} is {format_amount(minimum)}",
                currency=request.currency,
                amount=request.amount,
            )
        return None

    def verify_hmac_signature(self, secret: str, payload: bytes, signature: SignatureMaterial) -> bool:
        log = logger.bind(gateway=self.get_gateway_name())
        if not secret:
            log.warning("webhook_secret_missing")
            return False
        if not isinstance(signature, str) or not signature:
            log.warning("webhook_signature_missing")
            return False
        return hmac_sha256_matches(secret, payload, signature)

    def success_url(self, request: GatewayCreateRequest) -> str:
        return request.return_url or (
            f"{self.settings.frontend_url}/orders/{request.order_id}/payment/success"
        )

    def cancel_url(self, request: GatewayCreateRequest) -> str:
        return request.cancel_url or (
            f"{self.settings.frontend_url}/orders/{request.order_id}/payment/cancel"
        )

    def webhook_url(self) -> str:
        return f"{self.settings.app_url}/v1/webhooks/{self.get_gateway_name()}"


class HttpGateway(PaymentGateway):
    """Gateway spoken to over plain JSON/REST with httpx"""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        super().__init__(settings)
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(
            timeout=settings.http_timeout_seconds
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        data: Any = None,
        headers: dict[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> dict[str, Any]:
        """Single attempt, no retries; raises httpx errors on non-2xx"""
        response = await self.http.request(
            method, url, json=json, data=data, headers=headers, auth=auth
        )
        response.raise_for_status()
        if not response.content:
            return {}
        body = response.json()
        if not isinstance(body, dict):
            raise PaymentProviderException(
                message="Unexpected response body",
                details={"gateway": self.get_gateway_name(), "url": url},
            )
        return body

    def error_message(self, exc: Exception, default: str) -> str:
        """Best-effort provider error text for a failed call"""
        if isinstance(exc, httpx.HTTPStatusError):
            try:
                body = exc.response.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("error_description")
                if not message and isinstance(body.get("error"), dict):
                    message = body["error"].get("message")
                if not message and isinstance(body.get("error"), str):
                    message = body["error"]
                if message:
                    return str(message)
            return f"{default} (HTTP {exc.response.status_code})"
        if isinstance(exc, httpx.TimeoutException):
            return f"{default}: request timed out"
        if isinstance(exc, PaymentProviderException):
            return f"{default}: {exc.message}"
        return f"{default}: {exc}"
