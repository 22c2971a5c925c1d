"""Contact deduplication and idempotent tag linking.

Both paths run inside the caller's transaction: nothing here commits.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date
from typing import Any

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.crm.models import Contact, LeadTag, Tag, utcnow


logger = logging.getLogger("app.crm.dedup")

_BACKFILL_FIELDS = ("first_name", "last_name", "kf_visitor_id")

_UPSERT_INSERTS: dict[str, Callable[..., Any]] = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class IncomingContact:
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    dob: date | None = None
    kf_visitor_id: str | None = None
    company_id: uuid.UUID | None = None

    @property
    def has_match_keys(self) -> bool:
        return bool(self.email or self.phone)


def find_by_email_or_phone(
    session: Session,
    tenant_id: uuid.UUID,
    email: str | None,
    phone: str | None,
) -> Contact | None:
    """Earliest contact in the tenant whose email or phone matches."""

    conditions = []
    if email:
        conditions.append(func.lower(Contact.email) == email.strip().lower())
    if phone:
        conditions.append(Contact.phone == phone.strip())
    if not conditions:
        return None

    stmt = (
        select(Contact)
        .where(Contact.tenant_id == tenant_id, or_(*conditions))
        .order_by(Contact.created_at.asc(), Contact.id.asc())
        .limit(1)
    )
    return session.scalar(stmt)


def resolve_contact(
    session: Session,
    tenant_id: uuid.UUID,
    incoming: IncomingContact,
    *,
    source: str = "manual",
) -> tuple[Contact, bool]:
    """Reuse a matching contact or create one; returns `(contact, created)`.

    A match only gains values for fields that are still empty on it.
    """

    existing = find_by_email_or_phone(session, tenant_id, incoming.email, incoming.phone)
    if existing is not None:
        backfilled = []
        for field_name in _BACKFILL_FIELDS:
            value = getattr(incoming, field_name)
            if value and not getattr(existing, field_name):
                setattr(existing, field_name, value)
                backfilled.append(field_name)
        if backfilled:
            existing.updated_at = utcnow()
            session.flush()
        logger.info(
            "contact.dedup_matched",
            extra={"tenant_id": str(tenant_id), "contact_id": str(existing.id), "entity": "contact"},
        )
        return existing, False

    contact = Contact(
        tenant_id=tenant_id,
        first_name=incoming.first_name,
        last_name=incoming.last_name,
        email=incoming.email.strip() if incoming.email else None,
        phone=incoming.phone.strip() if incoming.phone else None,
        dob=incoming.dob,
        kf_visitor_id=incoming.kf_visitor_id,
        company_id=incoming.company_id,
        source=source,
    )
    session.add(contact)
    session.flush()
    return contact, True


def _conflict_free_insert(session: Session) -> Callable[..., Any] | None:
    return _UPSERT_INSERTS.get(session.get_bind().dialect.name)


def upsert_tag(session: Session, tenant_id: uuid.UUID, name: str) -> Tag:
    """Insert-or-fetch keyed on `(tenant_id, name)`; a concurrent insert is not an error."""

    tag_name = name.strip()
    insert_fn = _conflict_free_insert(session)
    if insert_fn is not None:
        stmt = (
            insert_fn(Tag.__table__)
            .values(id=uuid.uuid4(), tenant_id=tenant_id, name=tag_name, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["tenant_id", "name"])
        )
        session.execute(stmt)
    else:
        try:
            with session.begin_nested():
                session.add(Tag(tenant_id=tenant_id, name=tag_name))
        except IntegrityError:
            logger.info("tag.upsert_conflict", extra={"tenant_id": str(tenant_id), "entity": "tag"})

    tag = session.scalar(select(Tag).where(Tag.tenant_id == tenant_id, Tag.name == tag_name))
    if tag is None:
        raise RuntimeError(f"tag '{tag_name}' missing after upsert")
    return tag


def link_tag(session: Session, tenant_id: uuid.UUID, lead_id: uuid.UUID, tag_id: uuid.UUID) -> bool:
    """Link a tag to a lead; returns False when the link already existed."""

    insert_fn = _conflict_free_insert(session)
    if insert_fn is not None:
        stmt = (
            insert_fn(LeadTag.__table__)
            .values(lead_id=lead_id, tag_id=tag_id, tenant_id=tenant_id, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["lead_id", "tag_id"])
        )
        return (session.execute(stmt).rowcount or 0) > 0

    existing = session.get(LeadTag, (lead_id, tag_id))
    if existing is not None:
        return False
    session.add(LeadTag(lead_id=lead_id, tag_id=tag_id, tenant_id=tenant_id))
    session.flush()
    return True


def apply_tags(session: Session, tenant_id: uuid.UUID, lead_id: uuid.UUID, names: Iterable[str]) -> list[str]:
    """Upsert and link every distinct name; returns the names that were linked."""

    applied: list[str] = []
    for name in dict.fromkeys(item.strip() for item in names if item and item.strip()):
        tag = upsert_tag(session, tenant_id, name)
        link_tag(session, tenant_id, lead_id, tag.id)
        applied.append(tag.name)
    return applied


def unlink_tag(session: Session, tenant_id: uuid.UUID, lead_id: uuid.UUID, name: str) -> bool:
    tag_ids = select(Tag.id).where(Tag.tenant_id == tenant_id, Tag.name == name.strip())
    result = session.execute(
        delete(LeadTag).where(
            LeadTag.lead_id == lead_id,
            LeadTag.tenant_id == tenant_id,
            LeadTag.tag_id.in_(tag_ids),
        ).execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


def lead_tag_names(session: Session, tenant_id: uuid.UUID, lead_id: uuid.UUID) -> list[str]:
    stmt = (
        select(Tag.name)
        .join(LeadTag, (LeadTag.tag_id == Tag.id) & (LeadTag.tenant_id == Tag.tenant_id))
        .where(LeadTag.lead_id == lead_id, Tag.tenant_id == tenant_id)
        .order_by(Tag.name.asc())
    )
    return list(session.scalars(stmt).all())
