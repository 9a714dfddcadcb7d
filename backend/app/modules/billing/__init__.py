"""Billing module.

Plan changes with proration, gateway webhook settlement and the tenant
wallet ledger.
"""

from app.modules.billing.router import router
from app.modules.billing.plan_change import PlanChangeService
from app.modules.billing.settlement import SettlementService
from app.modules.billing.wallet import WalletService
from app.modules.billing.models import (
    Invoice,
    InvoiceStatus,
    Plan,
    PlanChange,
    Subscription,
    SubscriptionStatus,
    WalletTransaction,
    WebhookEvent,
)

__all__ = [
    "router",
    "PlanChangeService",
    "SettlementService",
    "WalletService",
    "Invoice",
    "InvoiceStatus",
    "Plan",
    "PlanChange",
    "Subscription",
    "SubscriptionStatus",
    "WalletTransaction",
    "WebhookEvent",
]
