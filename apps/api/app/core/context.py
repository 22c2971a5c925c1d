from __future__ import annotations

from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.platform.security.context import TenantContext


@dataclass
class RequestContext:
    """Per-request facts the middlewares report on after the route has run."""

    correlation_id: str
    tenant_id: str | None = None
    user_id: str | None = None
    role: str | None = None

    def attach(self, ctx: TenantContext) -> None:
        self.tenant_id = str(ctx.tenant_id)
        self.user_id = str(ctx.user_id)
        self.role = ctx.role


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        context = RequestContext(correlation_id=getattr(request.state, "correlation_id", None) or "")
        request.state.context = context
        response = await call_next(request)
        response.headers["x-request-id"] = context.correlation_id
        return response
