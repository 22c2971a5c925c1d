from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import bcrypt
from fastapi import Depends
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy import func, select
from sqlalchemy.orm import Session
from starlette.requests import Request

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import AuthenticationError
from app.crm.models import Tenant, User
from app.metrics import observe_auth_failure
from app.platform.security.context import TenantContext
from app.platform.security.rls import bind_tenant


logger = logging.getLogger("app.auth")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str | None) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_access_token(user: User) -> tuple[str, int]:
    """Sign a credential for `user`; returns the token and its lifetime in seconds."""

    settings = get_settings()
    issued_at = datetime.now(timezone.utc)
    ttl = timedelta(hours=settings.access_token_ttl_hours)
    claims = {
        "sub": str(user.id),
        "tenant_id": str(user.tenant_id),
        "email": user.email,
        "role": user.role,
        "iat": issued_at,
        "exp": issued_at + ttl,
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, int(ttl.total_seconds())


def _reject(message: str, reason: str) -> AuthenticationError:
    observe_auth_failure(reason)
    logger.info("auth.rejected", extra={"reason": reason})
    return AuthenticationError(message, reason=reason)


def _decode(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError as exc:
        raise _reject("Token expired", "expired") from exc
    except JWTError as exc:
        raise _reject("Invalid token", "invalid_signature") from exc


def _claim_uuid(claims: dict[str, Any], key: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(claims.get(key)))
    except ValueError as exc:
        raise _reject("Invalid token", "malformed_claims") from exc


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def authenticate_user(session: Session, username: str, password: str, tenant_id: uuid.UUID) -> tuple[User, str]:
    """Check login credentials within one tenant; returns the user and tenant name."""

    row = session.execute(
        select(User, Tenant.name)
        .join(Tenant, Tenant.id == User.tenant_id)
        .where(
            User.tenant_id == tenant_id,
            func.lower(User.email) == username.strip().lower(),
            User.is_active.is_(True),
        )
    ).first()
    if row is None or not verify_password(password, row[0].password_hash):
        raise _reject("Invalid credentials", "bad_credentials")
    return row[0], row[1]


def get_tenant_context(request: Request, db: Session = Depends(get_db)) -> TenantContext:
    """Resolve the bearer credential to a live user and bind its tenant to `db`."""

    token = _bearer_token(request)
    if not token:
        raise _reject("Access token required", "missing")

    claims = _decode(token)
    user_id = _claim_uuid(claims, "sub")
    token_tenant_id = _claim_uuid(claims, "tenant_id")

    row = db.execute(
        select(User, Tenant.name)
        .join(Tenant, Tenant.id == User.tenant_id)
        .where(User.id == user_id, User.is_active.is_(True))
    ).first()
    if row is None:
        raise _reject("Invalid or inactive user", "inactive_user")
    user, tenant_name = row
    if user.tenant_id != token_tenant_id:
        raise _reject("Token tenant mismatch", "tenant_mismatch")

    bind_tenant(db, user.tenant_id, source="credential")
    ctx = TenantContext(
        user_id=user.id,
        tenant_id=user.tenant_id,
        email=user.email,
        name=user.name,
        role=user.role,
        tenant_name=tenant_name,
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )

    request_context = getattr(request.state, "context", None)
    if request_context is not None:
        request_context.attach(ctx)
    return ctx
