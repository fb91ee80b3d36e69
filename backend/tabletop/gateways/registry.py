"""
Gateway registry.

Resolves the ``GatewayClient`` for a (provider, hotel) pair. Hotels that
bring their own merchant account register their credentials; everyone else
gets the platform default for the provider.
"""

from typing import Optional

import httpx
import structlog

from tabletop.config import GatewaySettings, gateway_settings
from tabletop.errors import UnsupportedProvider
from tabletop.gateways.base import GatewayClient, GatewayCredentials
from tabletop.gateways.paytm import PaytmGateway
from tabletop.gateways.phonepe import PhonePeGateway
from tabletop.gateways.razorpay import RazorpayGateway
from tabletop.gateways.stripe_gateway import StripeGateway

logger = structlog.get_logger().bind(component="gateway_registry")

ADAPTERS: dict[str, type[GatewayClient]] = {
    RazorpayGateway.provider: RazorpayGateway,
    PhonePeGateway.provider: PhonePeGateway,
    PaytmGateway.provider: PaytmGateway,
    StripeGateway.provider: StripeGateway,
}


class GatewayRegistry:

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        self._http_client = http_client
        self._clients: dict[tuple[str, Optional[str]], GatewayClient] = {}

    def register(self, credentials: GatewayCredentials, hotel_id: Optional[str] = None) -> GatewayClient:
        adapter = ADAPTERS.get(credentials.provider)
        if adapter is None:
            raise UnsupportedProvider(credentials.provider)
        client = adapter(credentials, http_client=self._http_client)
        self._clients[(credentials.provider, hotel_id)] = client
        logger.info("gateway_registered", provider=credentials.provider, hotel_id=hotel_id)
        return client

    def register_client(self, client: GatewayClient, hotel_id: Optional[str] = None) -> GatewayClient:
        self._clients[(client.provider, hotel_id)] = client
        return client

    def get(self, provider: str, hotel_id: Optional[str] = None) -> GatewayClient:
        provider = (provider or "").lower()
        client = self._clients.get((provider, hotel_id)) or self._clients.get((provider, None))
        if client is None:
            raise UnsupportedProvider(provider)
        return client

    @property
    def providers(self) -> list[str]:
        return sorted({provider for provider, _ in self._clients})

    async def close(self):
        for client in self._clients.values():
            await client.close()


def default_credentials(config: GatewaySettings = gateway_settings) -> list[GatewayCredentials]:
    """Platform credentials for every provider that is configured."""
    credentials = []
    if config.RAZORPAY_KEY_ID:
        credentials.append(GatewayCredentials(
            provider="razorpay",
            key_id=config.RAZORPAY_KEY_ID,
            secret=config.RAZORPAY_KEY_SECRET,
            webhook_secret=config.RAZORPAY_WEBHOOK_SECRET,
            extra={"api_url": config.RAZORPAY_API_URL},
        ))
    if config.PHONEPE_MERCHANT_ID:
        credentials.append(GatewayCredentials(
            provider="phonepe",
            merchant_id=config.PHONEPE_MERCHANT_ID,
            secret=config.PHONEPE_SALT_KEY,
            salt_index=config.PHONEPE_SALT_INDEX,
            production=config.PHONEPE_PRODUCTION,
        ))
    if config.PAYTM_MERCHANT_ID:
        credentials.append(GatewayCredentials(
            provider="paytm",
            merchant_id=config.PAYTM_MERCHANT_ID,
            secret=config.PAYTM_MERCHANT_KEY,
            production=config.PAYTM_PRODUCTION,
        ))
    if config.STRIPE_SECRET_KEY:
        credentials.append(GatewayCredentials(
            provider="stripe",
            secret=config.STRIPE_SECRET_KEY,
            webhook_secret=config.STRIPE_WEBHOOK_SECRET,
            extra={"frontend_url": config.FRONTEND_URL},
        ))
    return credentials
