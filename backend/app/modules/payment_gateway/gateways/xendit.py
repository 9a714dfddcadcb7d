"""Xendit Invoice gateway.

Callbacks carry no body signature; Xendit authenticates them with the
``X-Callback-Token`` header configured in the dashboard.
"""

import hmac
import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from app.core.errors import GatewayError, InvalidWebhookPayload
from app.modules.payment_gateway.interface import (
    ChargeSession,
    GatewayNotification,
    GatewayPaymentStatus,
    HttpGatewayClient,
)

logger = logging.getLogger(__name__)

CALLBACK_TOKEN_HEADER = "x-callback-token"


class XenditGateway(HttpGatewayClient):
    """Xendit payment gateway for Southeast Asia.

    Supports OVO, DANA, LinkAja, ShopeePay, bank transfer, card and QR code
    payments through the hosted invoice page.
    """

    BASE_URL = "https://api.xendit.co"

    STATUS_MAP = {
        "PENDING": GatewayPaymentStatus.PENDING,
        "PAID": GatewayPaymentStatus.PAID,
        "SETTLED": GatewayPaymentStatus.PAID,
        "EXPIRED": GatewayPaymentStatus.EXPIRED,
        "FAILED": GatewayPaymentStatus.FAILED,
    }

    async def create_charge_session(
        self,
        invoice_id: uuid.UUID,
        order_id: str,
        amount: Decimal,
        currency: str,
        tenant_id: uuid.UUID,
    ) -> ChargeSession:
        """Create a Xendit invoice for a billing invoice."""
        invoice_data: dict[str, Any] = {
            "external_id": order_id,
            "amount": float(amount),
            "currency": currency.upper(),
            "description": f"Invoice {order_id}",
            "metadata": {"tenant_id": str(tenant_id), "invoice_id": str(invoice_id)},
        }
        if self.config.success_url:
            invoice_data["success_redirect_url"] = self.config.success_url

        response = await self._request(
            "create_charge_session", "POST", f"{self.BASE_URL}/v2/invoices", invoice_data
        )

        xendit_id = response.get("id")
        if not xendit_id:
            raise GatewayError("Xendit returned no invoice id", order_id=order_id)

        return ChargeSession(
            session_token=xendit_id,
            redirect_url=response.get("invoice_url"),
            gateway_reference=xendit_id,
        )

    def extract_callback_token(
        self, payload: Mapping[str, Any], headers: Mapping[str, str]
    ) -> Optional[str]:
        for key, value in headers.items():
            if key.lower() == CALLBACK_TOKEN_HEADER:
                return value
        return None

    async def verify_signature(self, payload: Mapping[str, Any], token: Optional[str]) -> bool:
        expected = self.config.callback_token
        if not token or not expected:
            return False
        return hmac.compare_digest(token.encode(), expected.encode())

    def extract_external_id(self, payload: Mapping[str, Any]) -> Optional[str]:
        external_id = payload.get("external_id")
        return str(external_id) if external_id else None

    def parse_notification(self, payload: Mapping[str, Any]) -> GatewayNotification:
        external_id = payload.get("external_id")
        status = payload.get("status")
        if not external_id or not status:
            raise InvalidWebhookPayload("Xendit callback missing external_id or status")

        amount = payload.get("paid_amount", payload.get("amount"))
        try:
            gross_amount = Decimal(str(amount)) if amount is not None else None
        except InvalidOperation:
            raise InvalidWebhookPayload(f"Unparseable amount: {amount!r}")

        return GatewayNotification(
            external_id=str(external_id),
            status=self.STATUS_MAP.get(str(status).upper(), GatewayPaymentStatus.PENDING),
            gross_amount=gross_amount,
            transaction_id=payload.get("id"),
            payment_type=payload.get("payment_method") or payload.get("payment_channel"),
            raw_status=str(status),
        )
