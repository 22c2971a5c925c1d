from __future__ import annotations

import logging
from typing import Any, Generic, TypeVar

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.context import get_correlation_id
from app.core.errors import CRMError


logger = logging.getLogger("app.errors")

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str = "Success"
    data: T | None = None


def ok(data: Any = None, message: str = "Success") -> dict[str, Any]:
    return {"success": True, "message": message, "data": data}


def error_response(
    request: Request,
    *,
    status_code: int,
    message: str,
    errors: Any = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    # the catch-all handler runs outside the correlation scope
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = {
        "success": False,
        "message": message,
        "errors": errors,
        "correlation_id": correlation_id,
    }
    return JSONResponse(status_code=status_code, content=payload, headers=headers)


def _field_name(loc: tuple[Any, ...]) -> str:
    parts = [str(item) for item in loc if item not in {"body", "query", "path", "header"}]
    return ".".join(parts) or "request"


async def _handle_crm_error(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        message=exc.message,
        errors=exc.errors,
        headers=exc.headers,
    )


async def _handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        message=str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def _handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": _field_name(tuple(item.get("loc", ()))), "message": item.get("msg", "invalid value")}
        for item in exc.errors()
    ]
    return error_response(
        request,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        message="Validation failed",
        errors=errors,
    )


async def _handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("unhandled_error", exc_info=exc, extra={"path": request.url.path, "error": str(exc)})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message="Internal server error",
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CRMError, _handle_crm_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _handle_http_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _handle_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _handle_unexpected_error)
