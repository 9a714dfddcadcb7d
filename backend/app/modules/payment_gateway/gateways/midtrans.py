"""Midtrans Snap gateway.

Charge sessions are Snap transactions. Notifications are authenticated by
``signature_key = SHA512(order_id + status_code + gross_amount + server_key)``.
"""

import hashlib
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
    ZERO_DECIMAL_CURRENCIES,
)

logger = logging.getLogger(__name__)


class MidtransGateway(HttpGatewayClient):
    """Midtrans payment gateway for Indonesia.

    Supports GoPay, ShopeePay, bank transfer virtual accounts, credit card
    and QRIS through the Snap hosted checkout.
    """

    SUPPORTED_METHODS = [
        "gopay", "shopeepay", "bank_transfer", "credit_card", "qris",
    ]

    SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1"
    SNAP_PRODUCTION_URL = "https://app.midtrans.com/snap/v1"

    STATUS_MAP = {
        "settlement": GatewayPaymentStatus.PAID,
        "pending": GatewayPaymentStatus.PENDING,
        "authorize": GatewayPaymentStatus.PENDING,
        "deny": GatewayPaymentStatus.FAILED,
        "cancel": GatewayPaymentStatus.FAILED,
        "failure": GatewayPaymentStatus.FAILED,
        "expire": GatewayPaymentStatus.EXPIRED,
    }

    @property
    def snap_url(self) -> str:
        return self.SNAP_SANDBOX_URL if self.is_sandbox else self.SNAP_PRODUCTION_URL

    async def create_charge_session(
        self,
        invoice_id: uuid.UUID,
        order_id: str,
        amount: Decimal,
        currency: str,
        tenant_id: uuid.UUID,
    ) -> ChargeSession:
        """Create a Snap transaction for an invoice."""
        gross_amount: Any = int(amount) if currency.upper() in ZERO_DECIMAL_CURRENCIES else str(amount)
        transaction_data: dict[str, Any] = {
            "transaction_details": {
                "order_id": order_id,
                "gross_amount": gross_amount,
            },
            "enabled_payments": self.SUPPORTED_METHODS,
            "custom_field1": str(tenant_id),
            "custom_field2": str(invoice_id),
        }
        if self.config.success_url:
            transaction_data["callbacks"] = {"finish": self.config.success_url}

        response = await self._request(
            "create_charge_session", "POST", f"{self.snap_url}/transactions", transaction_data
        )

        token = response.get("token")
        if not token:
            raise GatewayError("Midtrans returned no Snap token", order_id=order_id)

        return ChargeSession(
            session_token=token,
            redirect_url=response.get("redirect_url"),
            gateway_reference=order_id,
        )

    def expected_signature(self, payload: Mapping[str, Any]) -> str:
        raw = (
            f"{payload.get('order_id', '')}"
            f"{payload.get('status_code', '')}"
            f"{payload.get('gross_amount', '')}"
            f"{self.config.server_key}"
        )
        return hashlib.sha512(raw.encode()).hexdigest()

    async def verify_signature(self, payload: Mapping[str, Any], token: Optional[str]) -> bool:
        signature = payload.get("signature_key")
        if not signature or not isinstance(signature, str) or not self.config.server_key:
            return False
        return hmac.compare_digest(signature, self.expected_signature(payload))

    def extract_external_id(self, payload: Mapping[str, Any]) -> Optional[str]:
        order_id = payload.get("order_id")
        return str(order_id) if order_id else None

    def parse_notification(self, payload: Mapping[str, Any]) -> GatewayNotification:
        order_id = payload.get("order_id")
        transaction_status = payload.get("transaction_status")
        if not order_id or not transaction_status:
            raise InvalidWebhookPayload("Midtrans notification missing order_id or transaction_status")

        fraud_status = payload.get("fraud_status") or "accept"
        if transaction_status == "capture":
            # Card captures settle only when the fraud check accepted them
            status = (
                GatewayPaymentStatus.PAID if fraud_status == "accept"
                else GatewayPaymentStatus.FAILED
            )
        else:
            status = self.STATUS_MAP.get(transaction_status, GatewayPaymentStatus.PENDING)

        return GatewayNotification(
            external_id=str(order_id),
            status=status,
            gross_amount=_parse_amount(payload.get("gross_amount")),
            transaction_id=payload.get("transaction_id"),
            payment_type=payload.get("payment_type"),
            raw_status=transaction_status,
            extra={"fraud_status": fraud_status},
        )


def _parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise InvalidWebhookPayload(f"Unparseable gross_amount: {value!r}")
