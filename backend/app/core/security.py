"""Caller principal and capability checks.

Authentication happens upstream; the gateway in front of this service sets
``X-Tenant-ID`` and ``X-Tenant-Role`` on every authenticated request. Routes
declare the capability they need with ``require_capability`` and receive the
resolved ``Principal``.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Depends, Header

from app.core.errors import AuthenticationRequired, CapabilityDenied


class Capability(str, Enum):
    BILLING_READ = "billing:read"
    BILLING_MANAGE = "billing:manage"


class TenantRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


ROLE_CAPABILITIES: dict[TenantRole, frozenset[Capability]] = {
    TenantRole.OWNER: frozenset({Capability.BILLING_READ, Capability.BILLING_MANAGE}),
    TenantRole.ADMIN: frozenset({Capability.BILLING_READ, Capability.BILLING_MANAGE}),
    TenantRole.MEMBER: frozenset({Capability.BILLING_READ}),
    TenantRole.VIEWER: frozenset({Capability.BILLING_READ}),
}


@dataclass(frozen=True)
class Principal:
    """Authenticated caller acting on behalf of one tenant."""
    tenant_id: uuid.UUID
    role: TenantRole

    def has_capability(self, capability: Capability) -> bool:
        return capability in ROLE_CAPABILITIES.get(self.role, frozenset())


async def get_principal(
    x_tenant_id: Optional[str] = Header(None),
    x_tenant_role: Optional[str] = Header(None),
) -> Principal:
    """Resolve the caller from the upstream auth headers.

    Raises:
        AuthenticationRequired: If either header is missing or malformed
    """
    if not x_tenant_id or not x_tenant_role:
        raise AuthenticationRequired()
    try:
        tenant_id = uuid.UUID(x_tenant_id)
        role = TenantRole(x_tenant_role.lower())
    except ValueError:
        raise AuthenticationRequired("Invalid tenant credentials")
    return Principal(tenant_id=tenant_id, role=role)


def require_capability(capability: Capability):
    """Dependency factory for routes needing one billing capability.

    Args:
        capability: Capability the caller's role must grant

    Returns:
        Dependency returning the verified Principal
    """
    async def verify_capability(
        principal: Principal = Depends(get_principal),
    ) -> Principal:
        if not principal.has_capability(capability):
            raise CapabilityDenied(
                f"Capability '{capability.value}' required",
                capability=capability.value,
                role=principal.role.value,
            )
        return principal

    return verify_capability
