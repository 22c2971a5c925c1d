from app.platform.security import (
    BaseRepository,
    TenantContext,
    apply_tenant_filter,
    bind_tenant,
    bound_tenant,
    unbind_tenant,
)

__all__ = [
    "BaseRepository",
    "TenantContext",
    "apply_tenant_filter",
    "bind_tenant",
    "bound_tenant",
    "unbind_tenant",
]
