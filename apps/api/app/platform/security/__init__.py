from app.platform.security.context import TenantContext
from app.platform.security.repository import BaseRepository
from app.platform.security.rls import apply_tenant_filter, bind_tenant, bound_tenant, unbind_tenant

__all__ = [
    "TenantContext",
    "BaseRepository",
    "apply_tenant_filter",
    "bind_tenant",
    "bound_tenant",
    "unbind_tenant",
]
