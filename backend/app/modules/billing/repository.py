"""Repositories for the billing ledger.

Repositories only add and flush. Transaction boundaries belong to the
services, which commit once per atomic step.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.models import (
    COMPLETED_PLAN_CHANGE_STATUSES,
    Invoice,
    InvoiceStatus,
    InvoiceType,
    Plan,
    PlanChange,
    Subscription,
    WalletTransaction,
    WebhookEvent,
)


class PlanRepository:
    """Read access to the plan catalog."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_all_active(self) -> list[Plan]:
        """Get all active plans ordered by sort_order."""
        result = await self.session.execute(
            select(Plan)
            .where(Plan.is_active == True)  # noqa: E712
            .order_by(Plan.sort_order, Plan.price)
        )
        return list(result.scalars().all())

    async def get_by_code(self, code: str) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(Plan.code == code)
        )
        return result.scalar_one_or_none()


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        tenant_id: uuid.UUID,
        plan_code: str,
        current_period_start: datetime,
        current_period_end: datetime,
    ) -> Subscription:
        subscription = Subscription(
            tenant_id=tenant_id,
            plan_code=plan_code,
            current_period_start=current_period_start,
            current_period_end=current_period_end,
        )
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def get_by_tenant(
        self, tenant_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Subscription]:
        """Get the tenant's subscription.

        Args:
            tenant_id: Tenant ID
            for_update: Take a row lock held until the transaction ends

        Returns:
            Subscription or None
        """
        query = select(Subscription).where(Subscription.tenant_id == tenant_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_id(
        self, subscription_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Subscription]:
        query = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()


class InvoiceRepository:
    """Repository for invoice operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Invoice:
        invoice = Invoice(**kwargs)
        self.session.add(invoice)
        await self.session.flush()
        return invoice

    async def get_by_id(
        self, invoice_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Invoice]:
        query = select(Invoice).where(Invoice.id == invoice_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_for_tenant(
        self, tenant_id: uuid.UUID, invoice_id: uuid.UUID
    ) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice).where(
                Invoice.id == invoice_id,
                Invoice.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_by_external_id(
        self, gateway: str, external_id: str, for_update: bool = False
    ) -> Optional[Invoice]:
        """Resolve an invoice from a gateway notification reference.

        Args:
            gateway: Gateway provider name
            external_id: Reference the gateway echoes back (our order id)
            for_update: Take a row lock held until the transaction ends

        Returns:
            Invoice or None
        """
        query = select(Invoice).where(
            Invoice.gateway == gateway,
            Invoice.external_id == external_id,
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_for_tenant(
        self,
        tenant_id: uuid.UUID,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Invoice], int]:
        """List a tenant's invoices newest first.

        Returns:
            Tuple of (invoices, total count)
        """
        conditions = [Invoice.tenant_id == tenant_id]
        if status:
            conditions.append(Invoice.status == status)

        count_result = await self.session.execute(
            select(func.count(Invoice.id)).where(*conditions)
        )
        total = count_result.scalar() or 0

        result = await self.session.execute(
            select(Invoice)
            .where(*conditions)
            .order_by(Invoice.issued_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def get_latest_pending_plan_change(
        self, tenant_id: uuid.UUID
    ) -> Optional[Invoice]:
        result = await self.session.execute(
            select(Invoice)
            .where(
                Invoice.tenant_id == tenant_id,
                Invoice.type == InvoiceType.PLAN_CHANGE.value,
                Invoice.status == InvoiceStatus.PENDING.value,
                Invoice.gateway_session_token.is_not(None),
            )
            .order_by(Invoice.issued_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


class WalletRepository:
    """Append-only access to the wallet ledger. There is no update or delete."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(
        self,
        tenant_id: uuid.UUID,
        amount: Decimal,
        reason: str,
        reference_type: str,
        reference_id: str,
        invoice_id: Optional[uuid.UUID] = None,
        description: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> WalletTransaction:
        transaction = WalletTransaction(
            tenant_id=tenant_id,
            amount=amount,
            reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
            invoice_id=invoice_id,
            description=description,
        )
        if created_at is not None:
            transaction.created_at = created_at
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def get_balance(self, tenant_id: uuid.UUID) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0))
            .where(WalletTransaction.tenant_id == tenant_id)
        )
        return Decimal(str(result.scalar() or 0))

    async def list_for_tenant(
        self, tenant_id: uuid.UUID, limit: int = 20, offset: int = 0
    ) -> tuple[list[WalletTransaction], int]:
        count_result = await self.session.execute(
            select(func.count(WalletTransaction.id))
            .where(WalletTransaction.tenant_id == tenant_id)
        )
        total = count_result.scalar() or 0

        result = await self.session.execute(
            select(WalletTransaction)
            .where(WalletTransaction.tenant_id == tenant_id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total


class WebhookEventRepository:
    """Repository for the webhook audit trail. Events are never deleted."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> WebhookEvent:
        event = WebhookEvent(**kwargs)
        self.session.add(event)
        await self.session.flush()
        return event

    async def get_by_id(self, event_id: uuid.UUID) -> Optional[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEvent).where(WebhookEvent.id == event_id)
        )
        return result.scalar_one_or_none()

    async def list_by_external_id(self, gateway: str, external_id: str) -> list[WebhookEvent]:
        result = await self.session.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.gateway == gateway,
                WebhookEvent.external_id == external_id,
            )
            .order_by(WebhookEvent.received_at)
        )
        return list(result.scalars().all())


class PlanChangeRepository:
    """Repository for plan change attempts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> PlanChange:
        change = PlanChange(**kwargs)
        self.session.add(change)
        await self.session.flush()
        return change

    async def get_by_invoice(self, invoice_id: uuid.UUID) -> Optional[PlanChange]:
        result = await self.session.execute(
            select(PlanChange).where(PlanChange.invoice_id == invoice_id)
        )
        return result.scalar_one_or_none()

    async def count_completed_since(self, tenant_id: uuid.UUID, since: datetime) -> int:
        """Count applied or paid plan changes completed at or after ``since``."""
        result = await self.session.execute(
            select(func.count(PlanChange.id)).where(
                PlanChange.tenant_id == tenant_id,
                PlanChange.status.in_(COMPLETED_PLAN_CHANGE_STATUSES),
                PlanChange.completed_at >= since,
            )
        )
        return result.scalar() or 0

    async def get_last_completed(self, tenant_id: uuid.UUID) -> Optional[PlanChange]:
        result = await self.session.execute(
            select(PlanChange)
            .where(
                PlanChange.tenant_id == tenant_id,
                PlanChange.status.in_(COMPLETED_PLAN_CHANGE_STATUSES),
            )
            .order_by(PlanChange.completed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
