"""Payment Gateway Module.

Gateway client contract plus Midtrans and Xendit adapters.
"""

from app.modules.payment_gateway.factory import PaymentGatewayFactory, get_gateway_factory
from app.modules.payment_gateway.gateways import MidtransGateway, XenditGateway
from app.modules.payment_gateway.interface import (
    ChargeSession,
    GatewayConfig,
    GatewayNotification,
    GatewayPaymentStatus,
    GatewayProvider,
    PaymentGatewayClient,
)

__all__ = [
    "ChargeSession",
    "GatewayConfig",
    "GatewayNotification",
    "GatewayPaymentStatus",
    "GatewayProvider",
    "PaymentGatewayClient",
    "PaymentGatewayFactory",
    "get_gateway_factory",
    "MidtransGateway",
    "XenditGateway",
]
