from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from pydantic import BaseModel
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.crm.models import Lead, Task, Tenant
from app.crm.query import ListSpec, Page, apply_sort, build_list_query, paginate, task_order
from app.crm.schemas import LeadListParams


SPEC = ListSpec(
    equality={"status": Lead.status},
    ranges={"min_score": (Lead.score, "gte")},
    search=(Lead.title, Lead.notes),
    sort={"created_at": Lead.created_at, "score": Lead.score},
)


class DemoParams(BaseModel):
    status: str | None = None
    min_score: int | None = None
    q: str | None = None
    sort: str | None = None
    order: str | None = None


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def tenant_id(db_session: Session) -> uuid.UUID:
    tenant = Tenant(name="Acme Fairs")
    db_session.add(tenant)
    db_session.flush()
    for index, (title, status) in enumerate((("Solar", "new"), ("Wind", "working"), ("Solar roof", "new"), ("Hydro", "new"))):
        db_session.add(Lead(tenant_id=tenant.id, title=title, status=status, score=index * 10))
    db_session.flush()
    return tenant.id


def test_search_term_travels_as_bound_parameter() -> None:
    stmt = build_list_query(select(Lead), SPEC, DemoParams(q="x' OR 1=1 --"))
    compiled = stmt.compile()

    assert "x' OR 1=1" not in str(compiled)
    assert compiled.params["search_pattern"] == "%x' OR 1=1 --%"


def test_unset_options_add_no_conditions() -> None:
    stmt = build_list_query(select(Lead), SPEC, DemoParams())
    assert "WHERE" not in str(stmt)


def test_unknown_sort_falls_back_to_default() -> None:
    stmt = apply_sort(select(Lead), SPEC, "title; DROP TABLE leads", "asc")
    sql = str(stmt)
    assert "ORDER BY leads.created_at ASC" in sql
    assert "DROP" not in sql


def test_default_order_is_descending() -> None:
    sql = str(apply_sort(select(Lead), SPEC, "score", None))
    assert "ORDER BY leads.score DESC" in sql


def test_fixed_order_ignores_requested_sort() -> None:
    spec = ListSpec(sort={"created_at": Task.created_at}, fixed_order=task_order())
    sql = str(apply_sort(select(Task), spec, "created_at", "asc"))
    assert "CASE" in sql
    assert "tasks.due_at ASC NULLS LAST" in sql


def test_filters_and_search_against_rows(db_session: Session, tenant_id: uuid.UUID) -> None:
    base = select(Lead).where(Lead.tenant_id == tenant_id)

    solar = db_session.scalars(build_list_query(base, SPEC, DemoParams(q="  solar ", sort="score", order="asc"))).all()
    assert [lead.title for lead in solar] == ["Solar", "Solar roof"]

    filtered = db_session.scalars(build_list_query(base, SPEC, DemoParams(status="new", min_score=20))).all()
    assert {lead.title for lead in filtered} == {"Solar roof", "Hydro"}


def test_paginate_reports_totals_and_empty_pages(db_session: Session, tenant_id: uuid.UUID) -> None:
    stmt = build_list_query(select(Lead).where(Lead.tenant_id == tenant_id), SPEC, DemoParams(sort="score", order="asc"))

    first = paginate(db_session, stmt, page=1, limit=3)
    assert [row[0].title for row in first.items] == ["Solar", "Wind", "Solar roof"]
    assert first.pagination() == {"page": 1, "limit": 3, "total": 4, "pages": 2}

    beyond = paginate(db_session, stmt, page=5, limit=3)
    assert beyond.items == []
    assert beyond.total == 4


def test_page_count_rounds_up() -> None:
    assert Page(items=[], total=0, page=1, limit=20).pages == 0
    assert Page(items=[], total=21, page=1, limit=20).pages == 2


def test_list_params_reject_limits_outside_range() -> None:
    with pytest.raises(ValueError):
        LeadListParams(limit=101)
    with pytest.raises(ValueError):
        LeadListParams(page=0)
    assert LeadListParams().limit == 20
