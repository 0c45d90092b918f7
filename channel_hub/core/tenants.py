# PUBLIC_INTERFACE
"""
Tenant/auth boundary: resolve the organization id and the caller's role from request headers.

Organization and role resolution proper happens upstream; this service only trusts the
headers set by the gateway in front of it.
"""
from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Request
from pydantic import BaseModel, Field

from .errors import Forbidden, Unauthorized
from .settings import get_settings

ROLE_RANK = {"viewer": 0, "member": 1, "admin": 2, "owner": 3}


# PUBLIC_INTERFACE
class TenantContext(BaseModel):
    """Represents the request's tenant context."""
    organization_id: str = Field(..., description="Opaque organization id")
    role: str = Field(default="member", description="Caller role inside the organization")


def _header(request: Request, name: str) -> Optional[str]:
    value = request.headers.get(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


# PUBLIC_INTERFACE
def get_current_organization_id(request: Request) -> Optional[str]:
    """Return the organization id for the request, or None when absent."""
    return _header(request, get_settings().tenant.TENANT_HEADER_NAME)


# PUBLIC_INTERFACE
def tenant_dep(request: Request) -> TenantContext:
    """FastAPI dependency that rejects requests without an organization."""
    settings = get_settings()
    org_id = get_current_organization_id(request)
    if not org_id:
        raise Unauthorized(f"Missing or empty {settings.tenant.TENANT_HEADER_NAME} header")
    role = (_header(request, settings.tenant.ROLE_HEADER_NAME) or "member").lower()
    return TenantContext(organization_id=org_id, role=role)


# PUBLIC_INTERFACE
def check_role(tenant: TenantContext, role: str) -> None:
    """Raise Forbidden unless the tenant's role ranks at least `role`."""
    if ROLE_RANK.get(tenant.role, -1) < ROLE_RANK[role]:
        raise Forbidden(f"Role '{role}' required")


# PUBLIC_INTERFACE
def require_role(role: str) -> Callable[..., TenantContext]:
    """Dependency factory enforcing a minimum organization role."""
    if role not in ROLE_RANK:
        raise ValueError(f"Unknown role '{role}'")

    def _dep(tenant: TenantContext = Depends(tenant_dep)) -> TenantContext:
        check_role(tenant, role)
        return tenant

    return _dep
