"""Plan change orchestration.

Upgrades create a pending invoice and a gateway checkout session; the plan
switches only when the settlement webhook reports the invoice paid.
Downgrades apply immediately and credit the unused value to the wallet.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import Settings, settings
from app.core.errors import (
    BillingError,
    ConcurrencyConflict,
    GatewayError,
    GatewayTimeout,
    PlanChangeLimitExceeded,
    PlanChangePending,
    PlanNotFound,
    SubscriptionNotActive,
    SubscriptionNotFound,
)
from app.core.logging import log_error, log_info, log_warning
from app.core.metrics import PLAN_CHANGES_TOTAL, WALLET_CREDITS_TOTAL
from app.modules.billing import proration
from app.modules.billing.models import (
    ChangeDirection,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Plan,
    PlanChangeStatus,
    Subscription,
    WalletTransactionReason,
    generate_invoice_number,
    utcnow,
)
from app.modules.billing.repository import (
    InvoiceRepository,
    PlanChangeRepository,
    PlanRepository,
    SubscriptionRepository,
    WalletRepository,
)
from app.modules.payment_gateway.interface import PaymentGatewayClient, chargeable_amount

logger = logging.getLogger(__name__)

PLAN_CHANGE_INVOICE_PREFIX = "PLC"


@dataclass
class PlanChangePreview:
    """Priced plan change, nothing persisted."""
    current_plan: Plan
    target_plan: Plan
    cycle_start: datetime
    cycle_end: datetime
    result: proration.ProrationResult
    # amount_due rounded up to what the gateway can charge
    amount_payable: Decimal


@dataclass
class PlanChangeOutcome:
    """Committed plan change.

    For upgrades ``status`` is pending and the tenant completes payment at
    ``redirect_url``. For downgrades ``status`` is applied and
    ``credit_amount`` has already been added to the wallet.
    """
    plan_change_id: uuid.UUID
    direction: ChangeDirection
    status: PlanChangeStatus
    from_plan_code: str
    to_plan_code: str
    amount_due: Decimal
    credit_amount: Decimal
    invoice_id: Optional[uuid.UUID] = None
    session_token: Optional[str] = None
    redirect_url: Optional[str] = None


class PlanChangeService:
    """Previews and executes plan changes for one tenant at a time."""

    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGatewayClient,
        app_settings: Settings = settings,
    ):
        self.session = session
        self.gateway = gateway
        self.settings = app_settings
        self.plan_repo = PlanRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.invoice_repo = InvoiceRepository(session)
        self.wallet_repo = WalletRepository(session)
        self.change_repo = PlanChangeRepository(session)

    # ==================== Preview ====================

    async def preview(
        self,
        tenant_id: uuid.UUID,
        target_plan_code: str,
        now: Optional[datetime] = None,
    ) -> PlanChangePreview:
        """Price a plan change without persisting anything.

        Raises:
            SubscriptionNotFound: If the tenant has no subscription
            PlanNotFound: If the target plan is unknown or inactive
            InvalidPlanTransition: If the target is the current plan
        """
        now = now or utcnow()
        subscription = await self._get_subscription(tenant_id)
        return await self._price(subscription, target_plan_code, now)

    # ==================== Execute ====================

    async def execute(
        self,
        tenant_id: uuid.UUID,
        target_plan_code: str,
        now: Optional[datetime] = None,
    ) -> PlanChangeOutcome:
        """Commit a plan change.

        Args:
            tenant_id: Tenant requesting the change
            target_plan_code: Plan to switch to
            now: Pricing instant, defaults to the current UTC time

        Returns:
            PlanChangeOutcome

        Raises:
            BillingError: Business rule violations, gateway failures, or
                ConcurrencyConflict when another request changed the
                subscription first
        """
        now = now or utcnow()
        direction = "unknown"
        try:
            subscription = await self._get_subscription(tenant_id, for_update=True)
            if not subscription.is_active:
                raise SubscriptionNotActive(tenant_id=str(tenant_id), status=subscription.status)

            priced = await self._price(subscription, target_plan_code, now)
            direction = priced.result.direction.value

            await self._ensure_no_pending_change(tenant_id, now)
            await self._enforce_change_limits(subscription, now)

            if priced.result.is_upgrade and priced.amount_payable > 0:
                outcome = await self._start_upgrade(subscription, priced, now)
            else:
                outcome = await self._apply_immediately(subscription, priced, now)
        except StaleDataError as e:
            await self.session.rollback()
            PLAN_CHANGES_TOTAL.labels(direction=direction, outcome="conflict").inc()
            log_warning(logger, "Plan change lost a concurrent update", tenant_id=str(tenant_id))
            raise ConcurrencyConflict(tenant_id=str(tenant_id)) from e
        except BillingError as e:
            await self.session.rollback()
            PLAN_CHANGES_TOTAL.labels(direction=direction, outcome=e.kind.value).inc()
            raise
        except Exception as e:
            await self.session.rollback()
            PLAN_CHANGES_TOTAL.labels(direction=direction, outcome="error").inc()
            log_error(
                logger,
                "Unexpected plan change failure",
                exception=e,
                tenant_id=str(tenant_id),
                target_plan_code=target_plan_code,
            )
            raise

        PLAN_CHANGES_TOTAL.labels(direction=direction, outcome=outcome.status.value).inc()
        return outcome

    async def _start_upgrade(
        self,
        subscription: Subscription,
        priced: PlanChangePreview,
        now: datetime,
    ) -> PlanChangeOutcome:
        """Commit the pending invoice, then open the gateway checkout session."""
        result = priced.result
        invoice_number = generate_invoice_number(PLAN_CHANGE_INVOICE_PREFIX, now)
        invoice = await self.invoice_repo.create(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            type=InvoiceType.PLAN_CHANGE.value,
            invoice_number=invoice_number,
            gateway=self.gateway.provider,
            external_id=invoice_number,
            amount=priced.amount_payable,
            currency=self.settings.BILLING_CURRENCY,
            status=InvoiceStatus.PENDING.value,
            target_plan_code=priced.target_plan.code,
            issued_at=now,
        )
        change = await self.change_repo.create(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            from_plan_code=priced.current_plan.code,
            to_plan_code=priced.target_plan.code,
            direction=result.direction.value,
            elapsed_fraction=float(result.elapsed_fraction),
            amount_due=invoice.amount,
            credit_amount=result.credit_amount,
            status=PlanChangeStatus.PENDING.value,
            invoice_id=invoice.id,
            created_at=now,
        )
        await self.session.commit()

        log_info(
            logger,
            "Plan upgrade invoice issued",
            tenant_id=str(subscription.tenant_id),
            invoice_number=invoice_number,
            amount_due=str(invoice.amount),
            to_plan=priced.target_plan.code,
        )

        try:
            charge = await asyncio.wait_for(
                self.gateway.create_charge_session(
                    invoice_id=invoice.id,
                    order_id=invoice.invoice_number,
                    amount=invoice.amount,
                    currency=invoice.currency,
                    tenant_id=subscription.tenant_id,
                ),
                timeout=self.settings.GATEWAY_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError as e:
            log_warning(logger, "Gateway timed out opening checkout", invoice_number=invoice_number)
            raise GatewayTimeout(invoice_id=str(invoice.id)) from e
        except GatewayTimeout:
            # Outcome unknown at the gateway; leave the invoice pending without a token
            log_warning(logger, "Gateway timed out opening checkout", invoice_number=invoice_number)
            raise
        except GatewayError as e:
            invoice.status = InvoiceStatus.FAILED.value
            invoice.failure_reason = e.message
            invoice.settled_at = now
            change.status = PlanChangeStatus.FAILED.value
            change.completed_at = now
            await self.session.commit()
            log_error(logger, "Gateway rejected checkout session", exception=e, invoice_number=invoice_number)
            raise

        invoice.gateway_session_token = charge.session_token
        invoice.gateway_redirect_url = charge.redirect_url
        await self.session.commit()

        return PlanChangeOutcome(
            plan_change_id=change.id,
            direction=result.direction,
            status=PlanChangeStatus.PENDING,
            from_plan_code=change.from_plan_code,
            to_plan_code=change.to_plan_code,
            amount_due=invoice.amount,
            credit_amount=result.credit_amount,
            invoice_id=invoice.id,
            session_token=charge.session_token,
            redirect_url=charge.redirect_url,
        )

    async def _apply_immediately(
        self,
        subscription: Subscription,
        priced: PlanChangePreview,
        now: datetime,
    ) -> PlanChangeOutcome:
        """Switch plans and credit the wallet in one transaction."""
        result = priced.result
        subscription.plan_code = priced.target_plan.code

        change = await self.change_repo.create(
            id=uuid.uuid4(),
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            from_plan_code=priced.current_plan.code,
            to_plan_code=priced.target_plan.code,
            direction=result.direction.value,
            elapsed_fraction=float(result.elapsed_fraction),
            amount_due=result.amount_due,
            credit_amount=result.credit_amount,
            status=PlanChangeStatus.APPLIED.value,
            created_at=now,
            completed_at=now,
        )

        if result.credit_amount > 0:
            wallet_tx = await self.wallet_repo.append(
                tenant_id=subscription.tenant_id,
                amount=result.credit_amount,
                reason=WalletTransactionReason.PLAN_DOWNGRADE.value,
                reference_type="plan_change",
                reference_id=str(change.id),
                description=f"Unused value of {priced.current_plan.code} on switch to {priced.target_plan.code}",
                created_at=now,
            )
            change.wallet_transaction_id = wallet_tx.id

        await self.session.commit()

        if result.credit_amount > 0:
            WALLET_CREDITS_TOTAL.labels(reason=WalletTransactionReason.PLAN_DOWNGRADE.value).inc()
        log_info(
            logger,
            "Plan change applied",
            tenant_id=str(subscription.tenant_id),
            from_plan=change.from_plan_code,
            to_plan=change.to_plan_code,
            credit_amount=str(result.credit_amount),
        )

        return PlanChangeOutcome(
            plan_change_id=change.id,
            direction=result.direction,
            status=PlanChangeStatus.APPLIED,
            from_plan_code=change.from_plan_code,
            to_plan_code=change.to_plan_code,
            amount_due=result.amount_due,
            credit_amount=result.credit_amount,
        )

    # ==================== Guards ====================

    async def _ensure_no_pending_change(self, tenant_id: uuid.UUID, now: datetime) -> None:
        """Reject while a payable upgrade invoice is younger than the pending TTL."""
        pending: Optional[Invoice] = await self.invoice_repo.get_latest_pending_plan_change(tenant_id)
        if pending is None:
            return
        ttl = timedelta(minutes=self.settings.PLAN_CHANGE_PENDING_TTL_MINUTES)
        if now - pending.issued_at < ttl:
            raise PlanChangePending(
                invoice_id=str(pending.id),
                redirect_url=pending.gateway_redirect_url,
            )

    async def _enforce_change_limits(self, subscription: Subscription, now: datetime) -> None:
        """At most N completed changes per cycle, and a cooldown between them."""
        completed = await self.change_repo.count_completed_since(
            subscription.tenant_id, subscription.current_period_start
        )
        if completed >= self.settings.PLAN_CHANGE_MAX_PER_CYCLE:
            raise PlanChangeLimitExceeded(
                f"At most {self.settings.PLAN_CHANGE_MAX_PER_CYCLE} plan changes per billing cycle",
                tenant_id=str(subscription.tenant_id),
            )

        last = await self.change_repo.get_last_completed(subscription.tenant_id)
        if last is not None and last.completed_at is not None:
            cooldown = timedelta(hours=self.settings.PLAN_CHANGE_COOLDOWN_HOURS)
            if now - last.completed_at < cooldown:
                raise PlanChangeLimitExceeded(
                    f"Plan can be changed again after {(last.completed_at + cooldown).isoformat()}Z",
                    tenant_id=str(subscription.tenant_id),
                )

    # ==================== Helpers ====================

    async def _get_subscription(
        self, tenant_id: uuid.UUID, for_update: bool = False
    ) -> Subscription:
        subscription = await self.subscription_repo.get_by_tenant(tenant_id, for_update=for_update)
        if subscription is None:
            raise SubscriptionNotFound(tenant_id=str(tenant_id))
        return subscription

    async def _get_plan(self, code: str, require_active: bool = True) -> Plan:
        plan = await self.plan_repo.get_by_code(code)
        if plan is None or (require_active and not plan.is_active):
            raise PlanNotFound(f"Plan '{code}' not found", plan_code=code)
        return plan

    async def _price(
        self, subscription: Subscription, target_plan_code: str, now: datetime
    ) -> PlanChangePreview:
        current_plan = await self._get_plan(subscription.plan_code, require_active=False)
        target_plan = await self._get_plan(target_plan_code)
        result = proration.calculate(
            current_plan,
            target_plan,
            subscription.current_period_start,
            subscription.current_period_end,
            now,
        )
        return PlanChangePreview(
            current_plan=current_plan,
            target_plan=target_plan,
            cycle_start=subscription.current_period_start,
            cycle_end=subscription.current_period_end,
            result=result,
            amount_payable=chargeable_amount(result.amount_due, self.settings.BILLING_CURRENCY),
        )
