from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import create_access_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Tenant, User
from app.main import app
from app.models.activity_log import ActivityLog


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
def clear_settings() -> Generator[None, None, None]:
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


def _headers(user: User, correlation_id: str | None = None) -> dict[str, str]:
    token, _ = create_access_token(user)
    headers = {"Authorization": f"Bearer {token}"}
    if correlation_id:
        headers["X-Correlation-Id"] = correlation_id
    return headers


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient, user: User) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers=_headers(user))
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["message"] == "Lead not found"


def test_correlation_id_respected_when_provided(client: TestClient, user: User) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers=_headers(user, "abc-123"))
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.headers.get("x-request-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_oversized_correlation_id_is_replaced(client: TestClient, user: User) -> None:
    response = client.get("/api/leads", headers=_headers(user, "x" * 500))
    assert response.status_code == 200
    assert response.headers.get("x-correlation-id") != "x" * 500


def test_auth_failure_envelope_carries_correlation_id(client: TestClient) -> None:
    response = client.get("/api/leads", headers={"X-Correlation-Id": "corr-auth-1"})
    assert response.status_code == 401
    assert response.json()["correlation_id"] == "corr-auth-1"


def test_validation_envelope_carries_correlation_id(client: TestClient, user: User) -> None:
    response = client.post("/api/leads", json={"title": ""}, headers=_headers(user, "corr-validation-1"))
    assert response.status_code == 422
    body = response.json()
    assert body["message"] == "Validation failed"
    assert body["errors"][0]["field"] == "title"
    assert body["correlation_id"] == "corr-validation-1"


def test_activity_log_uses_request_correlation_id(client: TestClient, db_session: Session, user: User) -> None:
    response = client.post("/api/leads", json={"title": "Correlated"}, headers=_headers(user, "corr-activity-1"))
    assert response.status_code == 201

    entry = db_session.scalar(select(ActivityLog).where(ActivityLog.entity_id == uuid.UUID(response.json()["data"]["id"])))
    assert entry is not None
    assert entry.correlation_id == "corr-activity-1"


def test_unhandled_error_envelope_carries_correlation_id(
    db_session: Session,
    user: User,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def exploding_get_lead(*args: object, **kwargs: object) -> None:
        raise RuntimeError("boom")

    monkeypatch.setattr("app.crm.api.lead_service.get_lead", exploding_get_lead)

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app, raise_server_exceptions=False) as test_client:
            response = test_client.get(f"/api/leads/{uuid.uuid4()}", headers=_headers(user, "corr-crash-1"))
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 500
    body = response.json()
    assert body["message"] == "Internal server error"
    assert body["correlation_id"] == "corr-crash-1"
