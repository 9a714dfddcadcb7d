"""Webhook settlement.

Every gateway notification is stored before anything else happens, then
verified, then applied to the invoice it references. Replays of the same
notification find the invoice already terminal and change nothing.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import Settings, settings
from app.core.errors import (
    AmountMismatch,
    BillingError,
    ConcurrencyConflict,
    GatewayTimeout,
    InvoiceNotFound,
    WebhookNotRecorded,
)
from app.core.logging import log_error, log_info, log_warning
from app.core.metrics import WALLET_CREDITS_TOTAL, WEBHOOK_EVENTS_TOTAL
from app.modules.billing.models import (
    Invoice,
    InvoiceStatus,
    InvoiceType,
    PlanChangeStatus,
    WalletTransactionReason,
    WebhookEventStatus,
    utcnow,
)
from app.modules.billing.repository import (
    InvoiceRepository,
    PlanChangeRepository,
    SubscriptionRepository,
    WalletRepository,
    WebhookEventRepository,
)
from app.modules.payment_gateway.interface import (
    GatewayNotification,
    GatewayPaymentStatus,
    PaymentGatewayClient,
)

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    """What happened to one notification.

    ``success`` is False only for notifications rejected before any ledger
    change (bad signature). ``idempotent`` marks replays of an already
    settled invoice.
    """
    success: bool
    message: str
    event_id: uuid.UUID
    idempotent: bool = False
    invoice_id: Optional[uuid.UUID] = None
    invoice_status: Optional[str] = None

    def as_dict(self) -> dict:
        data = asdict(self)
        data["event_id"] = str(self.event_id)
        data["invoice_id"] = str(self.invoice_id) if self.invoice_id else None
        return data


class SettlementService:
    """Applies verified gateway notifications to the billing ledger."""

    # One retry after losing an optimistic version race
    MAX_ATTEMPTS = 2

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGatewayClient,
        app_settings: Settings = settings,
    ):
        self.session = session
        self.gateway = gateway
        self.settings = app_settings
        self.event_repo = WebhookEventRepository(session)
        self.invoice_repo = InvoiceRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.wallet_repo = WalletRepository(session)
        self.change_repo = PlanChangeRepository(session)

    async def handle_event(
        self,
        raw_payload: str,
        payload: Mapping[str, Any],
        headers: Mapping[str, str],
        source_ip: Optional[str] = None,
        callback_token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> SettlementResult:
        """Record, verify and apply one notification.

        Args:
            raw_payload: Request body exactly as received
            payload: Parsed JSON body
            headers: Request headers exactly as received
            source_ip: Caller address
            callback_token: Token sent alongside the body; read from headers when omitted
            now: Settlement instant, defaults to the current UTC time

        Returns:
            SettlementResult

        Raises:
            WebhookNotRecorded: If the audit record could not be stored
            GatewayTimeout: If signature verification did not finish in time
            BillingError: If the notification could not be applied; the
                audit record is marked failed first
        """
        now = now or utcnow()
        provider = self.gateway.provider

        # Audit record is committed before verification
        try:
            event = await self.event_repo.create(
                gateway=provider,
                external_id=self.gateway.extract_external_id(payload),
                raw_payload=raw_payload,
                headers=[[name, value] for name, value in headers.items()],
                source_ip=source_ip,
                status=WebhookEventStatus.RECEIVED.value,
                received_at=now,
            )
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            WEBHOOK_EVENTS_TOTAL.labels(gateway=provider, outcome="not_recorded").inc()
            raise WebhookNotRecorded(gateway=provider) from e
        event_id = event.id

        if callback_token is None:
            callback_token = self.gateway.extract_callback_token(payload, headers)

        try:
            signature_valid = await asyncio.wait_for(
                self.gateway.verify_signature(payload, callback_token),
                timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            )
        except (asyncio.TimeoutError, GatewayTimeout) as e:
            await self._mark_failed(event_id, "Signature verification timed out", now)
            WEBHOOK_EVENTS_TOTAL.labels(gateway=provider, outcome="verification_timeout").inc()
            raise GatewayTimeout("Signature verification timed out", event_id=str(event_id)) from e

        if not signature_valid:
            result = SettlementResult(success=False, message="Invalid signature", event_id=event_id)
            event.signature_valid = False
            event.status = WebhookEventStatus.FAILED.value
            event.error_message = result.message
            event.result = result.as_dict()
            event.processed_at = now
            await self.session.commit()
            WEBHOOK_EVENTS_TOTAL.labels(gateway=provider, outcome="invalid_signature").inc()
            log_warning(
                logger,
                "Webhook rejected: invalid signature",
                gateway=provider,
                external_id=event.external_id,
                source_ip=source_ip,
            )
            return result

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                result = await self._settle(event_id, payload, now)
            except (StaleDataError, IntegrityError) as e:
                await self.session.rollback()
                if attempt < self.MAX_ATTEMPTS:
                    log_warning(logger, "Settlement lost a concurrent update, retrying", event_id=str(event_id))
                    continue
                await self._mark_failed(event_id, f"Concurrent update: {e}", now, signature_valid=True)
                WEBHOOK_EVENTS_TOTAL.labels(gateway=provider, outcome="conflict").inc()
                raise ConcurrencyConflict(event_id=str(event_id)) from e
            except BillingError as e:
                await self.session.rollback()
                await self._mark_failed(event_id, e.message, now, signature_valid=True)
                WEBHOOK_EVENTS_TOTAL.labels(gateway=provider, outcome=e.kind.value).inc()
                log_warning(logger, f"Webhook not applied: {e.message}", gateway=provider, event_id=str(event_id))
                raise
            except Exception as e:
                await self.session.rollback()
                await self._mark_failed(event_id, str(e), now, signature_valid=True)
                WEBHOOK_EVENTS_TOTAL.labels(gateway=provider, outcome="error").inc()
                log_error(logger, "Webhook settlement failed", exception=e, gateway=provider, event_id=str(event_id))
                raise

            outcome = "idempotent" if result.idempotent else "processed"
            WEBHOOK_EVENTS_TOTAL.labels(gateway=provider, outcome=outcome).inc()
            return result

        raise ConcurrencyConflict(event_id=str(event_id))

    async def _settle(
        self,
        event_id: uuid.UUID,
        payload: Mapping[str, Any],
        now: datetime,
    ) -> SettlementResult:
        """Apply the notification and mark the event processed in one transaction."""
        event = await self.event_repo.get_by_id(event_id)
        event.signature_valid = True

        notification = self.gateway.parse_notification(payload)
        invoice = await self.invoice_repo.get_by_external_id(
            self.gateway.provider, notification.external_id, for_update=True
        )
        if invoice is None:
            raise InvoiceNotFound(
                f"No invoice for {self.gateway.provider} reference {notification.external_id}",
                external_id=notification.external_id,
            )
        event.invoice_id = invoice.id
        credited: Optional[WalletTransactionReason] = None

        if invoice.is_terminal:
            result = SettlementResult(
                success=True,
                idempotent=True,
                message="Already processed",
                event_id=event_id,
                invoice_id=invoice.id,
                invoice_status=invoice.status,
            )
            log_info(logger, "Duplicate notification ignored", invoice_number=invoice.invoice_number)
        elif notification.status == GatewayPaymentStatus.PAID:
            message, credited = await self._apply_paid(invoice, notification, payload, now)
            result = self._result(event_id, invoice, message)
        elif notification.status == GatewayPaymentStatus.EXPIRED:
            await self._close_unpaid(
                invoice, InvoiceStatus.EXPIRED, PlanChangeStatus.CANCELLED, notification, payload, now
            )
            result = self._result(event_id, invoice, "Invoice expired")
        elif notification.status == GatewayPaymentStatus.FAILED:
            await self._close_unpaid(
                invoice, InvoiceStatus.FAILED, PlanChangeStatus.FAILED, notification, payload, now
            )
            result = self._result(event_id, invoice, "Payment failed")
        else:
            result = self._result(event_id, invoice, f"Payment {notification.raw_status or 'pending'}, no change")

        event.status = WebhookEventStatus.PROCESSED.value
        event.result = result.as_dict()
        event.processed_at = now
        await self.session.commit()
        if credited is not None:
            WALLET_CREDITS_TOTAL.labels(reason=credited.value).inc()
        return result

    async def _apply_paid(
        self,
        invoice: Invoice,
        notification: GatewayNotification,
        payload: Mapping[str, Any],
        now: datetime,
    ) -> tuple[str, Optional[WalletTransactionReason]]:
        """Settle a paid invoice; returns the message and the wallet credit reason, if any."""
        if notification.gross_amount is not None and notification.gross_amount < invoice.amount:
            raise AmountMismatch(
                f"Paid {notification.gross_amount}, invoice {invoice.invoice_number} is {invoice.amount}",
                invoice_id=str(invoice.id),
            )

        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_at = now
        invoice.settled_at = now
        invoice.gateway_payload = dict(payload)

        if invoice.type == InvoiceType.TOPUP.value:
            await self._credit(invoice, WalletTransactionReason.TOPUP, "Wallet top-up", now)
            log_info(logger, "Wallet top-up settled", tenant_id=str(invoice.tenant_id), amount=str(invoice.amount))
            return "Wallet topped up", WalletTransactionReason.TOPUP

        change = await self.change_repo.get_by_invoice(invoice.id)
        subscription = await self.subscription_repo.get_by_tenant(invoice.tenant_id, for_update=True)

        baseline_intact = (
            change is not None
            and subscription is not None
            and subscription.is_active
            and subscription.plan_code == change.from_plan_code
        )
        if not baseline_intact:
            # Priced against a plan the tenant is no longer on
            await self._credit(
                invoice,
                WalletTransactionReason.PLAN_CHANGE_REFUND,
                f"Refund of {invoice.invoice_number}: subscription changed before payment",
                now,
            )
            if change is not None:
                change.status = PlanChangeStatus.CANCELLED.value
                change.completed_at = now
            log_warning(
                logger,
                "Paid plan change no longer applicable, amount credited to wallet",
                tenant_id=str(invoice.tenant_id),
                invoice_number=invoice.invoice_number,
            )
            return (
                "Subscription changed before payment; amount credited to wallet",
                WalletTransactionReason.PLAN_CHANGE_REFUND,
            )

        subscription.plan_code = invoice.target_plan_code
        change.status = PlanChangeStatus.PAID.value
        change.completed_at = now
        log_info(
            logger,
            "Plan upgrade settled",
            tenant_id=str(invoice.tenant_id),
            from_plan=change.from_plan_code,
            to_plan=invoice.target_plan_code,
        )
        return f"Plan changed to {invoice.target_plan_code}", None

    async def _close_unpaid(
        self,
        invoice: Invoice,
        invoice_status: InvoiceStatus,
        change_status: PlanChangeStatus,
        notification: GatewayNotification,
        payload: Mapping[str, Any],
        now: datetime,
    ) -> None:
        invoice.status = invoice_status.value
        invoice.settled_at = now
        invoice.failure_reason = f"Gateway reported {notification.raw_status or invoice_status.value}"
        invoice.gateway_payload = dict(payload)

        if invoice.type == InvoiceType.PLAN_CHANGE.value:
            change = await self.change_repo.get_by_invoice(invoice.id)
            if change is not None:
                change.status = change_status.value
                change.completed_at = now

    async def _credit(
        self,
        invoice: Invoice,
        reason: WalletTransactionReason,
        description: str,
        now: datetime,
    ) -> None:
        await self.wallet_repo.append(
            tenant_id=invoice.tenant_id,
            amount=invoice.amount,
            reason=reason.value,
            reference_type="invoice",
            reference_id=str(invoice.id),
            invoice_id=invoice.id,
            description=description,
            created_at=now,
        )

    async def _mark_failed(
        self,
        event_id: uuid.UUID,
        error: str,
        now: datetime,
        signature_valid: Optional[bool] = None,
    ) -> None:
        """Record the failure on the audit row in its own transaction."""
        event = await self.event_repo.get_by_id(event_id)
        if signature_valid is not None:
            event.signature_valid = signature_valid
        event.status = WebhookEventStatus.FAILED.value
        event.error_message = error[:2000]
        event.processed_at = now
        await self.session.commit()

    @staticmethod
    def _result(event_id: uuid.UUID, invoice: Invoice, message: str) -> SettlementResult:
        return SettlementResult(
            success=True,
            message=message,
            event_id=event_id,
            invoice_id=invoice.id,
            invoice_status=invoice.status,
        )
