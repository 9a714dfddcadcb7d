"""Tenant Billing Backend Application.

Billing reconciliation for a multi-tenant SaaS: prorated plan changes,
gateway-settled invoices and an append-only wallet ledger.

Modules:
    - core: Configuration, database, errors, logging, metrics, tracing
    - modules.billing: Plans, plan changes, settlement and wallet
    - modules.payment_gateway: Midtrans and Xendit checkout clients
"""

__version__ = "0.1.0"
