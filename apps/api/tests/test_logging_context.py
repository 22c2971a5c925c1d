from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import create_access_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Tenant, User
from app.logging import JsonLogFormatter
from app.main import app


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.delenv("WEBHOOK_SECRET", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def user(db_session: Session) -> User:
    tenant = Tenant(name="Acme Fairs")
    db_session.add(tenant)
    db_session.flush()
    row = User(tenant_id=tenant.id, email="agent@acme.example.com", name="Acme Agent", role="agent")
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers(user: User, correlation_id: str) -> dict[str, str]:
    token, _ = create_access_token(user)
    return {"Authorization": f"Bearer {token}", "X-Correlation-Id": correlation_id}


def test_logs_include_correlation_id_for_http(client: TestClient, user: User, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/leads/{uuid.uuid4()}", headers=_headers(user, "abc-123"))
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and getattr(record, "tenant_id", None) == str(user.tenant_id)
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_rejected_credentials_are_logged_with_reason(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/leads", headers={"X-Correlation-Id": "auth-log-1"})
    assert response.status_code == 401

    records = [record for record in caplog.records if record.name == "app.auth" and record.getMessage() == "auth.rejected"]
    assert any(
        getattr(record, "reason", None) == "missing" and getattr(record, "correlation_id", None) == "auth-log-1"
        for record in records
    )


def test_webhook_logs_capture_with_lead_and_contact(
    client: TestClient,
    user: User,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    response = client.post(
        "/api/webhooks/fairex/lead-captured",
        json={
            "tenant_id": str(user.tenant_id),
            "visitor": {"first_name": "Asha", "email": "asha@example.com"},
            "exhibition_id": 3,
            "join_id": 9,
        },
        headers={"X-Correlation-Id": "webhook-log-1"},
    )
    assert response.status_code == 200
    data = response.json()["data"]

    records = [record for record in caplog.records if record.name == "app.crm.ingestion"]
    captured = [record for record in records if record.getMessage() == "webhook.lead_captured"]
    assert captured
    assert getattr(captured[-1], "lead_id", None) == data["lead_id"]
    assert getattr(captured[-1], "contact_id", None) == data["contact_id"]
    assert getattr(captured[-1], "exhibition_id", None) == 3
    assert getattr(captured[-1], "correlation_id", None) == "webhook-log-1"
    assert any(
        record.getMessage() == "webhook.contact_resolved" and getattr(record, "contact_reused", None) is False
        for record in records
    )


def test_failed_webhook_is_logged_as_error(
    client: TestClient,
    user: User,
    caplog: pytest.LogCaptureFixture,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_record_activity(*args: object, **kwargs: object) -> None:
        raise RuntimeError("disk full")

    monkeypatch.setattr("app.crm.ingestion.record_activity", broken_record_activity)
    caplog.set_level(logging.INFO)

    response = client.post(
        "/api/webhooks/fairex/lead-captured",
        json={"tenant_id": str(user.tenant_id), "visitor": {}, "exhibition_id": 3, "join_id": 9},
    )
    assert response.status_code == 500

    failures = [record for record in caplog.records if record.getMessage() == "webhook.failed"]
    assert failures
    assert failures[-1].levelno == logging.ERROR
    assert getattr(failures[-1], "error", None) == "disk full"


def test_json_formatter_emits_known_fields() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.crm",
            "levelname": "INFO",
            "levelno": logging.INFO,
            "msg": "contact.dedup_matched",
            "tenant_id": "tenant-1",
            "entity": "contact",
            "correlation_id": "fmt-1",
        }
    )
    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "contact.dedup_matched"
    assert payload["logger"] == "app.crm"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["tenant_id"] == "tenant-1"
    assert payload["fields"]["entity"] == "contact"
