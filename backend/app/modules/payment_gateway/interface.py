"""Payment gateway client contract.

Every gateway adapter turns an invoice into a hosted checkout session and
interprets the notifications the gateway later posts back.
"""

import base64
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_CEILING, Decimal
from enum import Enum
from typing import Any, Mapping, Optional

import httpx
from opentelemetry import trace

from app.core.errors import GatewayError, GatewayTimeout
from app.core.metrics import GATEWAY_REQUEST_DURATION_SECONDS, GATEWAY_REQUESTS_TOTAL
from app.core.tracing import create_span, record_exception

logger = logging.getLogger(__name__)

# Currencies gateways charge in whole units only
ZERO_DECIMAL_CURRENCIES = frozenset({"IDR", "JPY", "KRW", "VND"})


def chargeable_amount(amount: Decimal, currency: str) -> Decimal:
    """Round an amount up to the smallest unit the currency can be charged in.

    Invoices are issued for this amount so the figure a gateway reports back
    on settlement matches the invoice exactly.
    """
    unit = Decimal("1") if currency.upper() in ZERO_DECIMAL_CURRENCIES else Decimal("0.01")
    return Decimal(amount).quantize(unit, rounding=ROUND_CEILING).quantize(Decimal("0.01"))


class GatewayProvider(str, Enum):
    MIDTRANS = "midtrans"
    XENDIT = "xendit"


class GatewayPaymentStatus(str, Enum):
    """Normalized payment status carried by a notification."""
    PAID = "paid"
    PENDING = "pending"
    EXPIRED = "expired"
    FAILED = "failed"


@dataclass
class GatewayConfig:
    """Credentials and endpoints for one gateway."""
    provider: str
    server_key: str = ""
    callback_token: str = ""
    sandbox: bool = True
    timeout_seconds: float = 10.0
    success_url: Optional[str] = None


@dataclass
class ChargeSession:
    """Hosted checkout session the tenant completes at the gateway."""
    session_token: str
    redirect_url: Optional[str] = None
    gateway_reference: Optional[str] = None


@dataclass
class GatewayNotification:
    """Gateway notification reduced to what settlement needs."""
    external_id: str
    status: GatewayPaymentStatus
    gross_amount: Optional[Decimal] = None
    transaction_id: Optional[str] = None
    payment_type: Optional[str] = None
    raw_status: Optional[str] = None
    extra: dict = field(default_factory=dict)


class PaymentGatewayClient(ABC):
    """Abstract interface for all payment gateway implementations.

    Adapters raise ``GatewayTimeout`` when the gateway does not answer
    within the configured timeout and ``GatewayError`` for any other failure.
    """

    def __init__(self, config: GatewayConfig):
        self.config = config

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def is_sandbox(self) -> bool:
        return self.config.sandbox

    @abstractmethod
    async def create_charge_session(
        self,
        invoice_id: uuid.UUID,
        order_id: str,
        amount: Decimal,
        currency: str,
        tenant_id: uuid.UUID,
    ) -> ChargeSession:
        """Open a hosted checkout session for an invoice.

        Args:
            invoice_id: Invoice being charged
            order_id: Reference the gateway echoes back in notifications
            amount: Amount to charge
            currency: ISO currency code
            tenant_id: Paying tenant

        Returns:
            ChargeSession with token and redirect URL
        """

    @abstractmethod
    async def verify_signature(self, payload: Mapping[str, Any], token: Optional[str]) -> bool:
        """Check that a notification really comes from the gateway.

        Args:
            payload: Parsed notification body
            token: Callback token taken from the request, for gateways using one

        Returns:
            True if authentic
        """

    @abstractmethod
    def parse_notification(self, payload: Mapping[str, Any]) -> GatewayNotification:
        """Normalize a verified notification.

        Raises:
            InvalidWebhookPayload: If required fields are missing
        """

    @abstractmethod
    def extract_external_id(self, payload: Mapping[str, Any]) -> Optional[str]:
        """Best-effort invoice reference, read before verification for the audit trail."""

    def extract_callback_token(
        self, payload: Mapping[str, Any], headers: Mapping[str, str]
    ) -> Optional[str]:
        """Token material the gateway sends alongside the body, if any."""
        return None


class HttpGatewayClient(PaymentGatewayClient):
    """Base for adapters that talk JSON over HTTPS with basic auth."""

    def _auth_header(self) -> str:
        auth = base64.b64encode(f"{self.config.server_key}:".encode()).decode()
        return f"Basic {auth}"

    async def _request(
        self,
        operation: str,
        method: str,
        url: str,
        data: Optional[dict] = None,
    ) -> dict:
        """Make an authenticated request bounded by the gateway timeout.

        Args:
            operation: Operation name for metrics and tracing
            method: HTTP method
            url: Full API URL
            data: JSON body

        Returns:
            Response JSON

        Raises:
            GatewayTimeout: If the gateway does not answer in time
            GatewayError: On transport errors or non-2xx answers
        """
        start_time = time.perf_counter()
        status = "error"
        with create_span(
            f"gateway.{self.provider}.{operation}",
            attributes={"gateway.provider": self.provider, "gateway.operation": operation},
            kind=trace.SpanKind.CLIENT,
        ):
            try:
                async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers={
                            "Authorization": self._auth_header(),
                            "Content-Type": "application/json",
                            "Accept": "application/json",
                        },
                        json=data,
                    )
                    response.raise_for_status()
                    status = "success"
                    return response.json() if response.content else {}
            except httpx.TimeoutException as e:
                status = "timeout"
                record_exception(e)
                raise GatewayTimeout(provider=self.provider, operation=operation) from e
            except httpx.HTTPStatusError as e:
                record_exception(e)
                logger.error(
                    f"{self.provider} {operation} rejected",
                    extra={"status_code": e.response.status_code, "body": e.response.text[:500]},
                )
                raise GatewayError(
                    f"Payment gateway rejected the request ({e.response.status_code})",
                    provider=self.provider,
                    operation=operation,
                ) from e
            except httpx.HTTPError as e:
                record_exception(e)
                raise GatewayError(provider=self.provider, operation=operation) from e
            finally:
                GATEWAY_REQUESTS_TOTAL.labels(
                    gateway=self.provider, operation=operation, status=status
                ).inc()
                GATEWAY_REQUEST_DURATION_SECONDS.labels(
                    gateway=self.provider, operation=operation
                ).observe(time.perf_counter() - start_time)
