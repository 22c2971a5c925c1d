from __future__ import annotations

from typing import Any

from fastapi import HTTPException, status


FieldErrors = list[dict[str, Any]]


class CRMError(HTTPException):
    """Base error rendered through the `{success, message, errors}` envelope."""

    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        errors: FieldErrors | None = None,
        *,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(status_code=self.default_status, detail=message, headers=headers)
        self.message = message
        self.errors = errors


class AuthenticationError(CRMError):
    """Missing, invalid or expired credential, or a credential for another tenant."""

    default_status = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str, *, reason: str = "invalid") -> None:
        super().__init__(message, headers={"WWW-Authenticate": "Bearer"})
        self.reason = reason


class ForbiddenError(CRMError):
    default_status = status.HTTP_403_FORBIDDEN


class ValidationFailure(CRMError):
    default_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    @classmethod
    def for_field(cls, field: str, message: str, summary: str | None = None) -> ValidationFailure:
        return cls(summary or message, errors=[{"field": field, "message": message}])


class NotFoundError(CRMError):
    default_status = status.HTTP_404_NOT_FOUND


class ConflictError(CRMError):
    """Duplicate of a soft-unique value; the conflicting field is named in `errors`."""

    default_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, field: str) -> None:
        super().__init__(message, errors=[{"field": field, "message": message}])
        self.field = field


class TransactionFailure(CRMError):
    """A multi-step write failed and was rolled back; details stay in the logs."""

    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
