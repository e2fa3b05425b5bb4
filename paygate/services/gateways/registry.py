"""
Gateway Registry - maps gateway names to configured adapters.
"""

import httpx

from paygate.config import Settings
from paygate.exceptions import GatewayNotConfiguredError
from paygate.models.api import GatewayName
from paygate.observability.logging import get_logger
from paygate.services.gateways.base import GatewayAdapter
from paygate.services.gateways.mobile_money import MpesaExpressAdapter
from paygate.services.gateways.order_signature import OrderSignatureAdapter
from paygate.services.gateways.stripe_checkout import StripeCheckoutAdapter

logger = get_logger(__name__)


class GatewayRegistry:
    """Lookup of adapters by gateway name."""

    def __init__(self, adapters: list[GatewayAdapter] | None = None) -> None:
        self._adapters: dict[GatewayName, GatewayAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: GatewayAdapter) -> None:
        self._adapters[adapter.gateway] = adapter

    def get(self, gateway: GatewayName) -> GatewayAdapter:
        """Return the adapter or raise GatewayNotConfiguredError."""
        adapter = self._adapters.get(gateway)
        if adapter is None:
            raise GatewayNotConfiguredError(gateway.value)
        return adapter

    @property
    def gateways(self) -> list[GatewayName]:
        return sorted(self._adapters, key=lambda g: g.value)


def build_gateway_registry(settings: Settings, client: httpx.AsyncClient) -> GatewayRegistry:
    """Register an adapter for every gateway that has credentials."""
    registry = GatewayRegistry()

    if settings.card_hosted_configured:
        registry.register(
            StripeCheckoutAdapter(
                api_key=settings.stripe_api_key,
                webhook_secret=settings.stripe_webhook_secret,
                success_url=settings.stripe_success_url,
                cancel_url=settings.stripe_cancel_url,
            )
        )

    if settings.order_signature_configured:
        registry.register(
            OrderSignatureAdapter(
                client=client,
                base_url=settings.order_gateway_base_url,
                key_id=settings.order_gateway_key_id,
                key_secret=settings.order_gateway_key_secret,
                webhook_secret=settings.order_gateway_webhook_secret,
            )
        )

    if settings.mobile_money_configured:
        registry.register(
            MpesaExpressAdapter(
                client=client,
                base_url=settings.mpesa_base_url,
                consumer_key=settings.mpesa_consumer_key,
                consumer_secret=settings.mpesa_consumer_secret,
                shortcode=settings.mpesa_shortcode,
                passkey=settings.mpesa_passkey,
                callback_url=settings.mpesa_callback_url,
                callback_token=settings.mpesa_callback_token,
                currency=settings.mpesa_currency,
                initiator_name=settings.mpesa_initiator_name,
                security_credential=settings.mpesa_security_credential,
                reversal_result_url=settings.mpesa_reversal_result_url,
            )
        )

    logger.info("gateways_registered", gateways=[g.value for g in registry.gateways])
    return registry
