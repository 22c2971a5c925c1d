import uuid
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.activity_log import ActivityLog


def record_activity(
    db: Session,
    *,
    tenant_id: uuid.UUID,
    entity: str,
    entity_id: uuid.UUID,
    action: str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    actor_user_id: uuid.UUID | None = None,
    occurred_at: datetime | None = None,
) -> ActivityLog:
    """Append an entry inside the caller's unit of work; the caller commits."""

    entry = ActivityLog(
        tenant_id=tenant_id,
        entity=entity,
        entity_id=entity_id,
        action=action,
        before_data=before,
        after_data=after,
        actor_user_id=actor_user_id,
        correlation_id=get_correlation_id(),
    )
    if occurred_at is not None:
        entry.occurred_at = occurred_at
    db.add(entry)
    db.flush()
    return entry
