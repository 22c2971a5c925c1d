from __future__ import annotations

import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import create_access_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Company, Contact, Tenant, User
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def users(db_session: Session) -> dict[str, User]:
    acme = Tenant(name="Acme Fairs")
    globex = Tenant(name="Globex Events")
    db_session.add_all([acme, globex])
    db_session.flush()
    seeded = {
        "agent": User(tenant_id=acme.id, email="agent@acme.example.com", name="Acme Agent", role="agent"),
        "other": User(tenant_id=globex.id, email="agent@globex.example.com", name="Globex Agent", role="agent"),
    }
    db_session.add_all(seeded.values())
    db_session.commit()
    return seeded


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _headers(user: User) -> dict[str, str]:
    token, _ = create_access_token(user)
    return {"Authorization": f"Bearer {token}"}


def _post(client: TestClient, path: str, user: User, payload: dict) -> dict:
    response = client.post(path, json=payload, headers=_headers(user))
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_contact_crud_with_company_join(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    company = _post(client, "/api/companies", agent, {"name": "Tata Textiles", "website": "https://tata.example.com"})

    contact = _post(
        client,
        "/api/contacts",
        agent,
        {"first_name": "Neha", "last_name": "Kapoor", "email": "neha@example.com", "company_id": company["id"]},
    )
    assert contact["company_name"] == "Tata Textiles"
    assert contact["company_website"] == "https://tata.example.com"
    assert contact["lead_count"] == 0
    assert contact["source"] == "manual"

    lead = client.post("/api/leads", json={"title": "Fabric order", "contact_id": contact["id"]}, headers=headers)
    assert lead.status_code == 201
    assert client.get(f"/api/contacts/{contact['id']}", headers=headers).json()["data"]["lead_count"] == 1

    updated = client.patch(f"/api/contacts/{contact['id']}", json={"phone": "+919812345678"}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["data"]["phone"] == "+919812345678"
    assert updated.json()["data"]["first_name"] == "Neha"

    deleted = client.delete(f"/api/contacts/{contact['id']}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json()["message"] == "Contact deleted successfully"
    assert client.get(f"/api/contacts/{contact['id']}", headers=headers).status_code == 404


def test_duplicate_contact_reports_conflicting_field(client: TestClient, db_session: Session, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    _post(client, "/api/contacts", agent, {"email": "dup@example.com", "phone": "+911111111111"})

    by_email = client.post("/api/contacts", json={"email": "DUP@example.com"}, headers=headers)
    assert by_email.status_code == 422
    assert by_email.json()["message"] == "Contact with this email or phone already exists"
    assert by_email.json()["errors"][0]["field"] == "email"

    by_phone = client.post("/api/contacts", json={"phone": "+911111111111"}, headers=headers)
    assert by_phone.status_code == 422
    assert by_phone.json()["errors"][0]["field"] == "phone"

    other_tenant = client.post("/api/contacts", json={"email": "dup@example.com"}, headers=_headers(users["other"]))
    assert other_tenant.status_code == 201

    assert db_session.scalar(select(func.count(Contact.id))) == 2


def test_update_to_taken_email_is_rejected(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    _post(client, "/api/contacts", agent, {"email": "first@example.com"})
    second = _post(client, "/api/contacts", agent, {"email": "second@example.com"})

    response = client.patch(f"/api/contacts/{second['id']}", json={"email": "first@example.com"}, headers=_headers(agent))
    assert response.status_code == 422
    assert response.json()["errors"][0]["field"] == "email"

    same_value = client.patch(f"/api/contacts/{second['id']}", json={"email": "second@example.com"}, headers=_headers(agent))
    assert same_value.status_code == 200


def test_contact_quick_search_orders_by_name(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    for first, last in (("Zara", "Khan"), ("Arjun", "Khanna"), ("Mohan", "Das")):
        _post(client, "/api/contacts", agent, {"first_name": first, "last_name": last})

    response = client.get("/api/contacts/search", params={"q": "khan"}, headers=_headers(agent))
    assert response.status_code == 200
    assert [item["first_name"] for item in response.json()["data"]] == ["Arjun", "Zara"]

    too_short = client.get("/api/contacts/search", params={"q": "k"}, headers=_headers(agent))
    assert too_short.status_code == 422


def test_contact_list_filters_and_stats(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    _post(client, "/api/contacts", agent, {"first_name": "Imported", "source": "import"})
    _post(client, "/api/contacts", agent, {"first_name": "Manual One"})
    _post(client, "/api/contacts", agent, {"first_name": "Manual Two"})

    imported = client.get("/api/contacts", params={"source": "import"}, headers=headers).json()["data"]
    assert [item["first_name"] for item in imported["contacts"]] == ["Imported"]
    assert imported["pagination"]["total"] == 1

    ordered = client.get("/api/contacts", params={"sort": "first_name", "order": "asc"}, headers=headers).json()["data"]
    assert [item["first_name"] for item in ordered["contacts"]] == ["Imported", "Manual One", "Manual Two"]

    stats = client.get("/api/contacts/stats", headers=headers).json()["data"]
    assert stats[0] == {"source": "manual", "count": 2, "recent_count": 2}


def test_contact_with_foreign_company_is_rejected(client: TestClient, users: dict[str, User]) -> None:
    foreign = _post(client, "/api/companies", users["other"], {"name": "Globex Co"})
    response = client.post(
        "/api/contacts",
        json={"first_name": "Leak", "company_id": foreign["id"]},
        headers=_headers(users["agent"]),
    )
    assert response.status_code == 422
    assert response.json()["errors"] == [{"field": "company_id", "message": "Invalid company ID"}]


def test_company_name_conflict_and_aggregates(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    company = _post(client, "/api/companies", agent, {"name": "Reliance Retail"})

    duplicate = client.post("/api/companies", json={"name": "  reliance retail "}, headers=headers)
    assert duplicate.status_code == 422
    assert duplicate.json()["errors"] == [{"field": "name", "message": "Company with this name already exists"}]

    contact = _post(client, "/api/contacts", agent, {"first_name": "Ravi", "company_id": company["id"]})
    pipeline = _post(client, "/api/pipelines", agent, {"name": "Sales"})
    stage = _post(client, f"/api/pipelines/{pipeline['id']}/stages", agent, {"name": "Closed", "probability": 100})
    for amount, status in (("1500.50", "won"), ("200.00", "lost")):
        _post(
            client,
            "/api/opportunities",
            agent,
            {
                "name": f"Deal {status}",
                "company_id": company["id"],
                "contact_id": contact["id"],
                "pipeline_id": pipeline["id"],
                "stage_id": stage["id"],
                "amount": amount,
                "status": status,
            },
        )
    _post(client, "/api/interactions", agent, {"contact_id": contact["id"], "channel": "call"})

    detail = client.get(f"/api/companies/{company['id']}", headers=headers).json()["data"]
    assert detail["contact_count"] == 1
    assert detail["opportunity_count"] == 2
    assert Decimal(detail["total_won_value"]) == Decimal("1500.50")
    assert detail["last_contact_date"] is not None

    stats = client.get("/api/companies/stats", headers=headers).json()["data"]
    assert stats == {"total_companies": 1, "new_this_month": 1, "new_this_week": 1}


def test_company_delete_detaches_contacts(client: TestClient, db_session: Session, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    company = _post(client, "/api/companies", agent, {"name": "Short Lived Ltd"})
    contact = _post(client, "/api/contacts", agent, {"first_name": "Ravi", "company_id": company["id"]})

    deleted = client.delete(f"/api/companies/{company['id']}", headers=headers)
    assert deleted.status_code == 200

    remaining = client.get(f"/api/contacts/{contact['id']}", headers=headers).json()["data"]
    assert remaining["company_id"] is None
    assert remaining["company_name"] is None

    assert client.delete(f"/api/companies/{uuid.uuid4()}", headers=headers).status_code == 404


def test_company_list_search_and_sort(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    for name in ("Beta Foods", "Alpha Foods", "Gamma Steel"):
        _post(client, "/api/companies", agent, {"name": name})
    _post(client, "/api/companies", users["other"], {"name": "Alpha Foods"})

    foods = client.get("/api/companies", params={"search": "foods", "sort": "name", "order": "asc"}, headers=headers)
    assert foods.status_code == 200
    assert [item["name"] for item in foods.json()["data"]["companies"]] == ["Alpha Foods", "Beta Foods"]


def test_contact_is_invisible_to_other_tenant(client: TestClient, db_session: Session, users: dict[str, User]) -> None:
    contact = _post(client, "/api/contacts", users["agent"], {"first_name": "Neha", "email": "neha@example.com"})
    headers = _headers(users["other"])

    assert client.get(f"/api/contacts/{contact['id']}", headers=headers).status_code == 404
    assert client.patch(f"/api/contacts/{contact['id']}", json={"first_name": "Taken"}, headers=headers).status_code == 404
    assert client.delete(f"/api/contacts/{contact['id']}", headers=headers).status_code == 404

    listing = client.get("/api/contacts", headers=headers).json()["data"]
    assert listing["contacts"] == []
    assert listing["pagination"]["total"] == 0
    assert client.get("/api/contacts/search", params={"q": "Neha"}, headers=headers).json()["data"] == []

    stored = db_session.get(Contact, uuid.UUID(contact["id"]))
    db_session.refresh(stored)
    assert stored.first_name == "Neha"


def test_company_is_invisible_to_other_tenant(client: TestClient, db_session: Session, users: dict[str, User]) -> None:
    company = _post(client, "/api/companies", users["agent"], {"name": "Tata Textiles"})
    headers = _headers(users["other"])

    assert client.get(f"/api/companies/{company['id']}", headers=headers).status_code == 404
    assert client.patch(f"/api/companies/{company['id']}", json={"name": "Renamed"}, headers=headers).status_code == 404
    assert client.delete(f"/api/companies/{company['id']}", headers=headers).status_code == 404

    listing = client.get("/api/companies", headers=headers).json()["data"]
    assert listing["companies"] == []
    assert listing["pagination"]["total"] == 0

    stored = db_session.get(Company, uuid.UUID(company["id"]))
    db_session.refresh(stored)
    assert stored.name == "Tata Textiles"
