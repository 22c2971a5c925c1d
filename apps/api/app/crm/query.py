"""Filter, sort and pagination assembly shared by every list endpoint.

Only columns registered on a :class:`ListSpec` can shape a statement. Option
values always travel as bound parameters.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel
from sqlalchemy import Row, bindparam, case, func, or_, select
from sqlalchemy.orm import Session
from sqlalchemy.sql import ColumnElement, Select

from app.crm.models import Task


T = TypeVar("T")

RangeOp = Literal["gte", "lte"]

TASK_PRIORITY_RANK = {"urgent": 1, "high": 2, "normal": 3, "low": 4}


@dataclass(frozen=True)
class ListSpec:
    """Closed mapping from logical list options to columns for one entity."""

    equality: Mapping[str, ColumnElement[Any]] = field(default_factory=dict)
    ranges: Mapping[str, tuple[ColumnElement[Any], RangeOp]] = field(default_factory=dict)
    search: Sequence[ColumnElement[Any]] = ()
    search_option: str = "q"
    sort: Mapping[str, ColumnElement[Any]] = field(default_factory=dict)
    default_sort: str = "created_at"
    fixed_order: Sequence[ColumnElement[Any]] = ()


@dataclass
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def pagination(self) -> dict[str, int]:
        return {"page": self.page, "limit": self.limit, "total": self.total, "pages": self.pages}


def apply_filters(stmt: Select[Any], spec: ListSpec, params: BaseModel) -> Select[Any]:
    for option, column in spec.equality.items():
        value = getattr(params, option, None)
        if value is not None:
            stmt = stmt.where(column == value)

    for option, (column, op) in spec.ranges.items():
        value = getattr(params, option, None)
        if value is None:
            continue
        stmt = stmt.where(column >= value if op == "gte" else column <= value)

    term = getattr(params, spec.search_option, None)
    if isinstance(term, str) and term.strip() and spec.search:
        pattern = bindparam("search_pattern", f"%{term.strip()}%")
        stmt = stmt.where(or_(*(column.ilike(pattern) for column in spec.search)))

    return stmt


def apply_sort(stmt: Select[Any], spec: ListSpec, sort: str | None, order: str | None) -> Select[Any]:
    if spec.fixed_order:
        return stmt.order_by(*spec.fixed_order)

    column = spec.sort.get(sort) if sort else None
    if column is None:
        column = spec.sort.get(spec.default_sort)
    if column is None:
        return stmt
    return stmt.order_by(column.asc() if order == "asc" else column.desc())


def build_list_query(stmt: Select[Any], spec: ListSpec, params: BaseModel) -> Select[Any]:
    stmt = apply_filters(stmt, spec, params)
    return apply_sort(stmt, spec, getattr(params, "sort", None), getattr(params, "order", None))


def count_rows(session: Session, stmt: Select[Any]) -> int:
    counted = select(func.count()).select_from(stmt.order_by(None).subquery())
    return int(session.scalar(counted) or 0)


def paginate(session: Session, stmt: Select[Any], page: int, limit: int) -> Page[Row[Any]]:
    """Run `stmt` for one page; pages past the end come back empty."""

    total = count_rows(session, stmt)
    offset = (page - 1) * limit
    rows = list(session.execute(stmt.offset(offset).limit(limit)).all()) if offset < total else []
    return Page(items=rows, total=total, page=page, limit=limit)


def task_order() -> tuple[ColumnElement[Any], ...]:
    priority_rank = case(TASK_PRIORITY_RANK, value=Task.priority, else_=len(TASK_PRIORITY_RANK) + 1)
    return (
        priority_rank.asc(),
        Task.due_at.asc().nulls_last(),
        Task.created_at.desc(),
    )
