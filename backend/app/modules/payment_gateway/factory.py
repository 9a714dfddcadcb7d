"""Gateway client construction from application settings."""

from typing import Optional, Type

from app.core.config import Settings, settings
from app.core.errors import GatewayNotFound
from app.modules.payment_gateway.gateways import MidtransGateway, XenditGateway
from app.modules.payment_gateway.interface import (
    GatewayConfig,
    GatewayProvider,
    PaymentGatewayClient,
)


def config_from_settings(provider: str, app_settings: Settings = settings) -> GatewayConfig:
    """Build the gateway configuration for ``provider`` from settings."""
    if provider == GatewayProvider.MIDTRANS.value:
        server_key, callback_token = app_settings.MIDTRANS_SERVER_KEY, ""
        sandbox = app_settings.MIDTRANS_SANDBOX
    elif provider == GatewayProvider.XENDIT.value:
        server_key, callback_token = app_settings.XENDIT_SECRET_KEY, app_settings.XENDIT_CALLBACK_TOKEN
        sandbox = False
    else:
        raise GatewayNotFound(provider=provider)

    return GatewayConfig(
        provider=provider,
        server_key=server_key,
        callback_token=callback_token,
        sandbox=sandbox,
        timeout_seconds=app_settings.GATEWAY_TIMEOUT_SECONDS,
        success_url=app_settings.PAYMENT_SUCCESS_URL,
    )


class PaymentGatewayFactory:
    """Factory for creating payment gateway clients."""

    _gateways: dict[str, Type[PaymentGatewayClient]] = {
        GatewayProvider.MIDTRANS.value: MidtransGateway,
        GatewayProvider.XENDIT.value: XenditGateway,
    }

    def __init__(self, app_settings: Settings = settings):
        self.settings = app_settings

    @property
    def default_provider(self) -> str:
        return self.settings.DEFAULT_GATEWAY

    def is_supported(self, provider: str) -> bool:
        return provider in self._gateways

    def create(self, provider: Optional[str] = None) -> PaymentGatewayClient:
        """Create a gateway client.

        Args:
            provider: Provider name, defaults to DEFAULT_GATEWAY

        Returns:
            Configured gateway client

        Raises:
            GatewayNotFound: If the provider is not supported
        """
        provider = provider or self.default_provider
        gateway_class = self._gateways.get(provider)
        if gateway_class is None:
            raise GatewayNotFound(provider=provider)
        return gateway_class(config_from_settings(provider, self.settings))

    @classmethod
    def get_supported_providers(cls) -> list[str]:
        return list(cls._gateways.keys())


def get_gateway_factory() -> PaymentGatewayFactory:
    """FastAPI dependency returning the gateway factory."""
    return PaymentGatewayFactory()
