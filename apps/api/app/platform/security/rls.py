from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.orm import Session, SessionTransaction
from sqlalchemy.sql import Select

from app.metrics import observe_tenant_binding


TENANT_INFO_KEY = "tenant_id"

# is_local=true scopes the setting to the current transaction
_SET_TENANT_SQL = text("SELECT set_config('app.tenant_id', :tenant_id, true)")


def _uses_session_settings(connection: Connection | Any) -> bool:
    return connection.dialect.name == "postgresql"


@event.listens_for(Session, "after_begin")
def _apply_tenant_setting(session: Session, transaction: SessionTransaction, connection: Connection) -> None:
    tenant_id = session.info.get(TENANT_INFO_KEY)
    if tenant_id is None or not _uses_session_settings(connection):
        return
    connection.execute(_SET_TENANT_SQL, {"tenant_id": str(tenant_id)})


def bind_tenant(session: Session, tenant_id: uuid.UUID, *, source: str) -> None:
    """Bind the store-level isolation variable for this session's units of work.

    Transactions begun later pick the value up from the `after_begin` hook; a
    transaction already holding a connection is updated in place.
    """

    session.info[TENANT_INFO_KEY] = tenant_id
    if session.in_transaction() and _uses_session_settings(session.get_bind()):
        session.execute(_SET_TENANT_SQL, {"tenant_id": str(tenant_id)})
    observe_tenant_binding(source)


def unbind_tenant(session: Session) -> None:
    session.info.pop(TENANT_INFO_KEY, None)


def bound_tenant(session: Session) -> uuid.UUID | None:
    return session.info.get(TENANT_INFO_KEY)


def apply_tenant_filter(query: Select[Any], model: Any, tenant_id: uuid.UUID) -> Select[Any]:
    """Restrict `query` to rows of `model` owned by `tenant_id`."""

    return query.where(model.tenant_id == tenant_id)
