"""Tests for gateway client construction from settings."""

import pytest

from app.core.config import settings
from app.core.errors import GatewayNotFound
from app.modules.payment_gateway.factory import PaymentGatewayFactory, config_from_settings
from app.modules.payment_gateway.gateways.midtrans import MidtransGateway
from app.modules.payment_gateway.gateways.xendit import XenditGateway


class TestFactory:

    def test_creates_configured_clients(self) -> None:
        factory = PaymentGatewayFactory(settings)

        assert isinstance(factory.create("midtrans"), MidtransGateway)
        xendit = factory.create("xendit")
        assert isinstance(xendit, XenditGateway)
        assert xendit.config.callback_token == settings.XENDIT_CALLBACK_TOKEN
        assert xendit.config.timeout_seconds == settings.GATEWAY_TIMEOUT_SECONDS

    def test_default_provider(self) -> None:
        factory = PaymentGatewayFactory(settings.model_copy(update={"DEFAULT_GATEWAY": "xendit"}))

        assert factory.create().provider == "xendit"

    def test_unknown_provider(self) -> None:
        factory = PaymentGatewayFactory(settings)

        assert not factory.is_supported("paypal")
        with pytest.raises(GatewayNotFound):
            factory.create("paypal")
        assert sorted(PaymentGatewayFactory.get_supported_providers()) == ["midtrans", "xendit"]

    def test_config_for_unknown_provider(self) -> None:
        with pytest.raises(GatewayNotFound):
            config_from_settings("stripe", settings)
