"""Tenant wallet: balance, history and top-up intents.

The balance is always the sum of the ledger; nothing stores it.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings
from app.core.errors import GatewayError, GatewayTimeout, InvalidAmount
from app.core.logging import log_error, log_info, log_warning
from app.modules.billing.models import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    WalletTransaction,
    generate_invoice_number,
    utcnow,
)
from app.modules.billing.proration import quantize_money
from app.modules.billing.repository import InvoiceRepository, WalletRepository
from app.modules.payment_gateway.interface import PaymentGatewayClient, chargeable_amount

logger = logging.getLogger(__name__)

TOPUP_INVOICE_PREFIX = "TOP"


@dataclass
class TopupIntent:
    invoice: Invoice
    session_token: str
    redirect_url: Optional[str]


class WalletService:
    """Read the wallet ledger and start top-ups."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: Optional[PaymentGatewayClient] = None,
        app_settings: Settings = settings,
    ):
        self.session = session
        self.gateway = gateway
        self.settings = app_settings
        self.wallet_repo = WalletRepository(session)
        self.invoice_repo = InvoiceRepository(session)

    async def get_balance(self, tenant_id: uuid.UUID) -> Decimal:
        """Sum of all wallet transactions of a tenant, 0.00 when there are none."""
        return quantize_money(await self.wallet_repo.get_balance(tenant_id))

    async def list_transactions(
        self, tenant_id: uuid.UUID, limit: int = 20, offset: int = 0
    ) -> tuple[list[WalletTransaction], int]:
        """Wallet history newest first, with the total count."""
        return await self.wallet_repo.list_for_tenant(tenant_id, limit=limit, offset=offset)

    async def create_topup(
        self,
        tenant_id: uuid.UUID,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> TopupIntent:
        """Issue a pending top-up invoice and open a checkout session for it.

        The wallet is credited later, when the settlement webhook reports
        the invoice paid.

        Args:
            tenant_id: Tenant topping up
            amount: Amount to add to the wallet
            now: Issue instant, defaults to the current UTC time

        Returns:
            TopupIntent with the invoice and checkout details

        Raises:
            InvalidAmount: If amount is outside the configured bounds
            GatewayError: If the gateway rejected the session (invoice marked failed)
            GatewayTimeout: If the gateway did not answer (invoice left pending)
        """
        if self.gateway is None:
            raise GatewayError("No payment gateway configured")

        now = now or utcnow()
        amount = quantize_money(amount)
        if amount < self.settings.TOPUP_MIN_AMOUNT or amount > self.settings.TOPUP_MAX_AMOUNT:
            raise InvalidAmount(
                f"Top-up amount must be between {self.settings.TOPUP_MIN_AMOUNT} "
                f"and {self.settings.TOPUP_MAX_AMOUNT}",
                amount=str(amount),
            )
        amount = chargeable_amount(amount, self.settings.BILLING_CURRENCY)

        invoice_number = generate_invoice_number(TOPUP_INVOICE_PREFIX, now)
        invoice = await self.invoice_repo.create(
            tenant_id=tenant_id,
            type=InvoiceType.TOPUP.value,
            invoice_number=invoice_number,
            gateway=self.gateway.provider,
            external_id=invoice_number,
            amount=amount,
            currency=self.settings.BILLING_CURRENCY,
            status=InvoiceStatus.PENDING.value,
            issued_at=now,
        )
        await self.session.commit()

        try:
            charge = await asyncio.wait_for(
                self.gateway.create_charge_session(
                    invoice_id=invoice.id,
                    order_id=invoice_number,
                    amount=amount,
                    currency=invoice.currency,
                    tenant_id=tenant_id,
                ),
                timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            log_warning(logger, "Gateway timed out opening top-up checkout", invoice_number=invoice_number)
            raise GatewayTimeout(invoice_id=str(invoice.id)) from e
        except GatewayTimeout:
            log_warning(logger, "Gateway timed out opening top-up checkout", invoice_number=invoice_number)
            raise
        except GatewayError as e:
            invoice.status = InvoiceStatus.FAILED.value
            invoice.failure_reason = e.message
            invoice.settled_at = now
            await self.session.commit()
            log_error(logger, "Gateway rejected top-up checkout", exception=e, invoice_number=invoice_number)
            raise

        invoice.gateway_session_token = charge.session_token
        invoice.gateway_redirect_url = charge.redirect_url
        await self.session.commit()

        log_info(logger, "Top-up invoice issued", tenant_id=str(tenant_id), amount=str(amount))
        return TopupIntent(
            invoice=invoice,
            session_token=charge.session_token,
            redirect_url=charge.redirect_url,
        )
