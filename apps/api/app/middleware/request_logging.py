from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("app.request")


def _request_fields(request: Request, status_code: int, elapsed: float) -> dict[str, Any]:
    # the route template is only known after dispatch
    path = resolve_http_path_label(request)
    observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
    context = getattr(request.state, "context", None)
    return {
        "method": request.method,
        "path": path,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
        "tenant_id": getattr(context, "tenant_id", None),
        "user_id": getattr(context, "user_id", None),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line and one metrics sample per request, labelled by route template."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "http.error",
                exc_info=True,
                extra=_request_fields(request, 500, time.perf_counter() - started),
            )
            raise

        logger.info(
            "http.request",
            extra=_request_fields(request, response.status_code, time.perf_counter() - started),
        )
        return response
