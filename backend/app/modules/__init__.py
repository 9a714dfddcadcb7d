"""Application modules.

- billing: Plan changes, webhook settlement and the tenant wallet
- payment_gateway: Gateway clients and the provider factory
"""
