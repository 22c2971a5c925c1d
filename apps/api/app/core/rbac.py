from collections.abc import Callable

from fastapi import Depends

from app.core.auth import get_tenant_context
from app.core.errors import ForbiddenError
from app.platform.security.context import TenantContext


def require_roles(*roles: str) -> Callable[[TenantContext], TenantContext]:
    def checker(ctx: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if ctx.role not in roles:
            raise ForbiddenError(f"Requires role: {' or '.join(roles)}")
        return ctx

    return checker
