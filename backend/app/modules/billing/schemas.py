"""Pydantic schemas for the billing API."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


# ==================== Plans & Subscription ====================

class PlanResponse(BaseModel):
    """Catalog entry."""
    code: str
    name: str
    description: Optional[str] = None
    price: Decimal
    currency: str
    billing_interval: str
    interval_days: int
    limits: Optional[dict] = None
    features: Optional[list] = None
    sort_order: int

    class Config:
        from_attributes = True


class PlanListResponse(BaseModel):
    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    """Response schema for subscription."""
    id: uuid.UUID
    tenant_id: uuid.UUID
    plan_code: str
    status: str
    current_period_start: datetime
    current_period_end: datetime
    version: int
    updated_at: datetime

    class Config:
        from_attributes = True


# ==================== Plan Change ====================

class PlanChangeRequest(BaseModel):
    target_plan_code: str = Field(..., min_length=1, max_length=50)


class PlanChangePreviewResponse(BaseModel):
    """Priced plan change; nothing has been persisted."""
    current_plan_code: str
    target_plan_code: str
    direction: str
    amount_due: Decimal
    amount_payable: Decimal
    credit_amount: Decimal
    elapsed_fraction: float
    unused_value: Decimal
    target_remaining_cost: Decimal
    cycle_start: datetime
    cycle_end: datetime
    currency: str


class PlanChangeResponse(BaseModel):
    """Committed plan change.

    Upgrades come back ``pending`` with a checkout ``redirect_url``; the plan
    switches once payment settles. Downgrades come back ``applied``.
    """
    plan_change_id: uuid.UUID
    direction: str
    status: str
    from_plan_code: str
    to_plan_code: str
    amount_due: Decimal
    credit_amount: Decimal
    invoice_id: Optional[uuid.UUID] = None
    session_token: Optional[str] = None
    redirect_url: Optional[str] = None


# ==================== Wallet ====================

class WalletBalanceResponse(BaseModel):
    tenant_id: uuid.UUID
    balance: Decimal
    currency: str


class WalletTransactionResponse(BaseModel):
    id: uuid.UUID
    amount: Decimal
    reason: str
    reference_type: str
    reference_id: str
    invoice_id: Optional[uuid.UUID] = None
    description: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class WalletTransactionListResponse(BaseModel):
    """Paginated wallet history."""
    transactions: list[WalletTransactionResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class TopupRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)


class TopupResponse(BaseModel):
    invoice_id: uuid.UUID
    invoice_number: str
    amount: Decimal
    currency: str
    status: str
    session_token: str
    redirect_url: Optional[str] = None


# ==================== Invoices ====================

class InvoiceResponse(BaseModel):
    """Response schema for invoice."""
    id: uuid.UUID
    tenant_id: uuid.UUID
    subscription_id: Optional[uuid.UUID] = None
    type: str
    invoice_number: str
    gateway: str
    amount: Decimal
    currency: str
    status: str
    target_plan_code: Optional[str] = None
    gateway_redirect_url: Optional[str] = None
    failure_reason: Optional[str] = None
    issued_at: datetime
    paid_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InvoiceListResponse(BaseModel):
    """Paginated invoice list."""
    invoices: list[InvoiceResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


# ==================== Webhooks ====================

class WebhookAckResponse(BaseModel):
    """Body returned to the gateway."""
    success: bool
    message: str
    idempotent: bool = False
    event_id: Optional[uuid.UUID] = None
    error_kind: Optional[str] = None


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error_kind: str
