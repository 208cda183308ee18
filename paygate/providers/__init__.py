"""
Gateway factory (resolves a gateway by name or by currency)
"""

from __future__ import annotations

from functools import lru_cache

import httpx
import structlog

from paygate.core.constants import DEFAULT_GATEWAY, GatewayName
from paygate.core.exceptions import UnsupportedGatewayError
from paygate.core.settings import Settings, get_settings
from .base import PaymentGateway
from .gcash import GCashGateway
from .maya import MayaGateway
from .paypal import PayPalGateway
from .stripe import StripeGateway

__all__ = [
    "PaymentGateway",
    "GCashGateway",
    "MayaGateway",
    "StripeGateway",
    "PayPalGateway",
    "GatewayFactory",
    "get_gateway_factory",
]

logger = structlog.get_logger(__name__)

# currency served by the local wallet gateway; everything else goes to stripe
WALLET_CURRENCY = "PHP"


class GatewayFactory:
    """
    Builds gateway adapters on demand.

    Adapters are created per call, so only the gateway actually requested
    needs credentials. HTTP-based adapters share one httpx client.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds
        )

    def create(self, name: str | GatewayName) -> PaymentGateway:
        key = name.value if isinstance(name, GatewayName) else str(name).strip().lower()

        if key == GatewayName.gcash.value:
            return GCashGateway(self.settings, http_client=self.http)
        elif key == GatewayName.maya.value:
            return MayaGateway(self.settings, http_client=self.http)
        elif key == GatewayName.stripe.value:
            return StripeGateway(self.settings)
        elif key == GatewayName.paypal.value:
            return PayPalGateway(self.settings, http_client=self.http)
        else:
            logger.warning("unsupported_gateway_requested", gateway=str(name))
            raise UnsupportedGatewayError(str(name))

    def for_currency(self, currency: str) -> PaymentGateway:
        """PHP goes to maya, anything else to stripe (support is not checked)"""
        if currency.upper() == WALLET_CURRENCY:
            return self.create(GatewayName.maya)
        return self.create(GatewayName.stripe)

    def default(self) -> PaymentGateway:
        return self.create(self.settings.payment_default_gateway or DEFAULT_GATEWAY)

    def available(self) -> list[str]:
        return [gateway.value for gateway in GatewayName]

    def is_available(self, name: str) -> bool:
        return str(name).strip().lower() in self.available()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()


@lru_cache
def get_gateway_factory() -> GatewayFactory:
    """Process-wide factory built from the cached settings"""
    return GatewayFactory(get_settings())
