from __future__ import annotations

import uuid
from typing import Any, Generic, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import Select

from app.platform.security.context import TenantContext
from app.platform.security.rls import apply_tenant_filter


ModelT = TypeVar("ModelT")


class BaseRepository(Generic[ModelT]):
    """Tenant-scoped access to one mapped model; nothing here reads across tenants."""

    model: type[ModelT]

    def apply_scope_query(self, query: Select[Any], tenant_id: uuid.UUID) -> Select[Any]:
        return apply_tenant_filter(query, self.model, tenant_id)

    def scoped_select(self, tenant_id: uuid.UUID) -> Select[Any]:
        return self.apply_scope_query(select(self.model), tenant_id)

    def get(self, session: Session, ctx: TenantContext, entity_id: uuid.UUID) -> ModelT | None:
        return self.get_in_tenant(session, ctx.tenant_id, entity_id)

    def get_in_tenant(self, session: Session, tenant_id: uuid.UUID, entity_id: uuid.UUID) -> ModelT | None:
        stmt = self.scoped_select(tenant_id).where(self.model.id == entity_id)  # type: ignore[attr-defined]
        return session.scalar(stmt)

    def exists(self, session: Session, tenant_id: uuid.UUID, entity_id: uuid.UUID) -> bool:
        return self.get_in_tenant(session, tenant_id, entity_id) is not None

    def delete(self, session: Session, ctx: TenantContext, entity_id: uuid.UUID) -> bool:
        result = session.execute(
            delete(self.model).where(
                self.model.id == entity_id,  # type: ignore[attr-defined]
                self.model.tenant_id == ctx.tenant_id,  # type: ignore[attr-defined]
            )
        )
        return (result.rowcount or 0) > 0
