"""Billing ledger models.

Plans, one subscription per tenant, invoices, the append-only wallet ledger,
the webhook audit trail and one record per plan change attempt.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from app.core.database import Base
from app.core.errors import InvalidInvoiceTransition, InvalidSubscriptionUpdate

MONEY = Numeric(12, 2)


def utcnow() -> datetime:
    """Naive UTC timestamp; all ledger columns store UTC without tzinfo."""
    return datetime.utcnow()


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PENDING_CHANGE = "pending_change"
    CANCELED = "canceled"


class InvoiceType(str, Enum):
    PLAN_CHANGE = "plan_change"
    TOPUP = "topup"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle. PENDING is the only non-terminal state."""
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"


TERMINAL_INVOICE_STATUSES = frozenset({
    InvoiceStatus.PAID.value,
    InvoiceStatus.EXPIRED.value,
    InvoiceStatus.FAILED.value,
})


class WalletTransactionReason(str, Enum):
    PLAN_DOWNGRADE = "plan_downgrade"
    TOPUP = "topup"
    PLAN_CHANGE_REFUND = "plan_change_refund"
    ADJUSTMENT = "adjustment"


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"


class ChangeDirection(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"


class PlanChangeStatus(str, Enum):
    PENDING = "pending"
    APPLIED = "applied"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Statuses that count toward the per-cycle limit and cooldown
COMPLETED_PLAN_CHANGE_STATUSES = (PlanChangeStatus.APPLIED.value, PlanChangeStatus.PAID.value)


class Plan(Base):
    """Catalog entry. The billing core only reads plans."""

    __tablename__ = "billing_plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Price per billing interval
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    billing_interval: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BillingInterval.MONTHLY.value
    )
    interval_days: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    limits: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    features: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<Plan(code={self.code}, price={self.price})>"


class Subscription(Base):
    """Active plan of one tenant.

    ``version`` is the optimistic concurrency counter; a flush against a row
    someone else updated first raises ``StaleDataError``.
    """

    __tablename__ = "billing_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False, index=True)
    plan_code: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True
    )

    # Cycle anchor and end
    current_period_start: Mapped[datetime] = mapped_column(DateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(), nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )

    __mapper_args__ = {"version_id_col": version}

    @validates("current_period_start")
    def _validate_anchor(self, key: str, value: datetime) -> datetime:
        current = self.current_period_start
        if current is not None and value is not None and value < current:
            raise InvalidSubscriptionUpdate(
                tenant_id=str(self.tenant_id), current=current.isoformat(), proposed=value.isoformat()
            )
        return value

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE.value

    def __repr__(self) -> str:
        return f"<Subscription(tenant={self.tenant_id}, plan={self.plan_code}, status={self.status})>"


class Invoice(Base):
    """Billing intent settled asynchronously by a gateway notification."""

    __tablename__ = "billing_invoices"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("billing_subscriptions.id"), nullable=True
    )

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Sent to the gateway as the order id
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway: Mapped[str] = mapped_column(String(50), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.PENDING.value, index=True
    )

    gateway_session_token: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_redirect_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    target_plan_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    gateway_payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    issued_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("gateway", "external_id", name="uq_billing_invoices_gateway_external_id"),
        Index("ix_billing_invoices_tenant_type_status", "tenant_id", "type", "status"),
    )

    @validates("status")
    def _validate_status(self, key: str, value: str) -> str:
        current = self.status
        if current in TERMINAL_INVOICE_STATUSES and value != current:
            raise InvalidInvoiceTransition(
                invoice_id=str(self.id), current=current, proposed=value
            )
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INVOICE_STATUSES

    @property
    def is_payable(self) -> bool:
        """Pending with a live checkout session the tenant can still pay."""
        return self.status == InvoiceStatus.PENDING.value and bool(self.gateway_session_token)

    def __repr__(self) -> str:
        return f"<Invoice(number={self.invoice_number}, status={self.status}, amount={self.amount})>"


class WalletTransaction(Base):
    """Append-only signed ledger entry. Balance is the sum per tenant."""

    __tablename__ = "billing_wallet_transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    reason: Mapped[str] = mapped_column(String(30), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(30), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("billing_invoices.id"), nullable=True
    )
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "reason", "reference_id",
            name="uq_billing_wallet_transactions_tenant_reason_reference",
        ),
    )

    def __repr__(self) -> str:
        return f"<WalletTransaction(tenant={self.tenant_id}, amount={self.amount}, reason={self.reason})>"


class WebhookEvent(Base):
    """Verbatim record of one inbound gateway notification."""

    __tablename__ = "billing_webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    gateway: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    # [name, value] pairs in arrival order, repeated headers kept
    headers: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    source_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # None until verification has run
    signature_valid: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=WebhookEventStatus.RECEIVED.value, index=True
    )
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    received_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<WebhookEvent(gateway={self.gateway}, external_id={self.external_id}, status={self.status})>"


class PlanChange(Base):
    """One committed plan change attempt and its outcome."""

    __tablename__ = "billing_plan_changes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("billing_subscriptions.id"), nullable=False
    )
    from_plan_code: Mapped[str] = mapped_column(String(50), nullable=False)
    to_plan_code: Mapped[str] = mapped_column(String(50), nullable=False)
    direction: Mapped[str] = mapped_column(String(20), nullable=False)
    elapsed_fraction: Mapped[float] = mapped_column(Float, nullable=False)
    amount_due: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    credit_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0.00"))
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    invoice_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("billing_invoices.id"), nullable=True, index=True
    )
    wallet_transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(), default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(), nullable=True)

    __table_args__ = (
        Index("ix_billing_plan_changes_tenant_status_completed", "tenant_id", "status", "completed_at"),
    )

    def __repr__(self) -> str:
        return f"<PlanChange({self.from_plan_code}->{self.to_plan_code}, status={self.status})>"


def generate_invoice_number(prefix: str, now: datetime) -> str:
    """Human readable unique invoice number, e.g. ``PLC-20240115093000-1A2B3C4D``."""
    return f"{prefix}-{now.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8].upper()}"
