"""Correlation id shared by log records, spans, error bodies and activity rows."""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

MAX_CORRELATION_ID_LENGTH = 128

_correlation_id: ContextVar[str | None] = ContextVar("crm_correlation_id", default=None)


def accept_correlation_id(raw: str | None) -> str:
    """Keep a caller-supplied id when it is usable, otherwise mint a fresh one."""

    value = (raw or "").strip()
    if not value or len(value) > MAX_CORRELATION_ID_LENGTH:
        return str(uuid.uuid4())
    return value


@contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


def get_correlation_id() -> str | None:
    return _correlation_id.get()
