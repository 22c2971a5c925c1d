from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import create_access_token
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import LeadTag, Tag, Task, Tenant, User
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
        "agent": User(tenant_id=acme.id, email="agent@acme.example.com", name="Priya Agent", role="agent"),
        "teammate": User(tenant_id=acme.id, email="team@acme.example.com", name="Rohit Teammate", role="agent"),
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


def test_tasks_are_listed_by_priority_then_due_date(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    for title, priority, due_at in (
        ("Low soon", "low", "2026-10-19T09:00:00Z"),
        ("Urgent undated", "urgent", None),
        ("High later", "high", "2026-11-20T09:00:00Z"),
        ("High earlier", "high", "2026-11-01T09:00:00Z"),
        ("Normal undated", "normal", None),
    ):
        payload: dict[str, object] = {"title": title, "priority": priority}
        if due_at:
            payload["due_at"] = due_at
        _post(client, "/api/tasks", agent, payload)

    listing = client.get("/api/tasks", headers=_headers(agent))
    assert listing.status_code == 200
    assert [item["title"] for item in listing.json()["data"]["tasks"]] == [
        "Urgent undated",
        "High earlier",
        "High later",
        "Normal undated",
        "Low soon",
    ]


def test_task_assignment_and_references(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    lead = client.post("/api/leads", json={"title": "Call back"}, headers=headers).json()["data"]

    task = _post(
        client,
        "/api/tasks",
        agent,
        {"title": "Send brochure", "lead_id": lead["id"], "assigned_to": str(users["teammate"].id)},
    )
    assert task["assigned_to_name"] == "Rohit Teammate"
    assert task["lead_title"] == "Call back"
    assert task["created_by"] == str(agent.id)

    foreign_assignee = client.post(
        "/api/tasks",
        json={"title": "Leak", "assigned_to": str(users["other"].id)},
        headers=headers,
    )
    assert foreign_assignee.status_code == 422
    assert foreign_assignee.json()["errors"] == [{"field": "assigned_to", "message": "Invalid assigned_to user ID"}]

    mine = client.get("/api/tasks", params={"assigned_to": str(users["teammate"].id)}, headers=headers)
    assert [item["id"] for item in mine.json()["data"]["tasks"]] == [task["id"]]

    done = client.patch(f"/api/tasks/{task['id']}", json={"status": "done"}, headers=headers)
    assert done.status_code == 200
    assert done.json()["data"]["status"] == "done"
    assert done.json()["data"]["title"] == "Send brochure"

    cleared = client.patch(f"/api/tasks/{task['id']}", json={"priority": None}, headers=headers)
    assert cleared.status_code == 422

    assert client.delete(f"/api/tasks/{task['id']}", headers=headers).status_code == 200
    assert client.get(f"/api/tasks/{task['id']}", headers=headers).status_code == 404


def test_task_stats_count_overdue(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    _post(client, "/api/tasks", agent, {"title": "Overdue", "due_at": "2020-01-01T00:00:00Z"})
    _post(client, "/api/tasks", agent, {"title": "Overdue but done", "due_at": "2020-01-01T00:00:00Z", "status": "done"})
    _post(client, "/api/tasks", agent, {"title": "Future", "due_at": "2099-01-01T00:00:00Z"})

    stats = client.get("/api/tasks/stats", headers=_headers(agent)).json()["data"]
    rows = {(row["status"], row["priority"]): row for row in stats}
    assert rows[("open", "normal")]["count"] == 2
    assert rows[("open", "normal")]["overdue_count"] == 1
    assert rows[("done", "normal")]["overdue_count"] == 0


def test_interactions_timeline_and_stats(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    lead = client.post("/api/leads", json={"title": "Timeline lead"}, headers=headers).json()["data"]

    for subject, channel, occurred_at in (
        ("Intro call", "call", "2026-10-01T10:00:00Z"),
        ("Sent deck", "email", "2026-10-05T10:00:00Z"),
        ("Visited booth", "meeting", "2026-10-03T10:00:00Z"),
    ):
        created = _post(
            client,
            "/api/interactions",
            agent,
            {"lead_id": lead["id"], "channel": channel, "subject": subject, "occurred_at": occurred_at},
        )
        assert created["creator_name"] == "Priya Agent"
        assert created["lead_title"] == "Timeline lead"

    _post(client, "/api/interactions", agent, {"channel": "note", "body": "Unlinked note"})

    timeline = client.get("/api/interactions/timeline", params={"lead_id": lead["id"]}, headers=headers)
    assert timeline.status_code == 200
    assert [item["subject"] for item in timeline.json()["data"]] == ["Sent deck", "Visited booth", "Intro call"]

    assert client.get("/api/interactions/timeline", headers=headers).status_code == 422

    emails = client.get("/api/interactions", params={"channel": "email"}, headers=headers).json()["data"]
    assert [item["subject"] for item in emails["interactions"]] == ["Sent deck"]

    stats = client.get("/api/interactions/stats", headers=headers).json()["data"]
    assert sum(row["count"] for row in stats) == 4


def test_interaction_requires_known_channel(client: TestClient, users: dict[str, User]) -> None:
    response = client.post("/api/interactions", json={"channel": "pigeon"}, headers=_headers(users["agent"]))
    assert response.status_code == 422


def test_tag_listing_rename_and_delete(client: TestClient, db_session: Session, users: dict[str, User]) -> None:
    agent = users["agent"]
    headers = _headers(agent)
    first = client.post("/api/leads", json={"title": "One", "tags": ["vip", "expo"]}, headers=headers).json()["data"]
    client.post("/api/leads", json={"title": "Two", "tags": ["vip"]}, headers=headers)
    client.post("/api/leads", json={"title": "Foreign", "tags": ["vip"]}, headers=_headers(users["other"]))

    listing = client.get("/api/tags", headers=headers).json()["data"]
    assert [(item["name"], item["lead_count"]) for item in listing["tags"]] == [("expo", 1), ("vip", 2)]

    popular = client.get("/api/tags/popular", params={"limit": 1}, headers=headers).json()["data"]
    assert [item["name"] for item in popular] == ["vip"]

    expo_id = listing["tags"][0]["id"]
    conflict = client.patch(f"/api/tags/{expo_id}", json={"name": "vip"}, headers=headers)
    assert conflict.status_code == 422
    assert conflict.json()["message"] == "Tag with this name already exists"

    renamed = client.patch(f"/api/tags/{expo_id}", json={"name": "trade-show"}, headers=headers)
    assert renamed.status_code == 200
    assert renamed.json()["data"]["name"] == "trade-show"
    assert client.get(f"/api/leads/{first['id']}", headers=headers).json()["data"]["tags"] == ["trade-show", "vip"]

    vip_id = listing["tags"][1]["id"]
    assert client.delete(f"/api/tags/{vip_id}", headers=headers).status_code == 200
    assert client.get(f"/api/leads/{first['id']}", headers=headers).json()["data"]["tags"] == ["trade-show"]
    assert db_session.scalar(select(func.count()).select_from(LeadTag)) == 2


def test_task_is_invisible_to_other_tenant(client: TestClient, db_session: Session, users: dict[str, User]) -> None:
    task = _post(client, "/api/tasks", users["agent"], {"title": "Send brochure"})
    headers = _headers(users["other"])

    assert client.get(f"/api/tasks/{task['id']}", headers=headers).status_code == 404
    assert client.patch(f"/api/tasks/{task['id']}", json={"title": "Taken"}, headers=headers).status_code == 404
    assert client.delete(f"/api/tasks/{task['id']}", headers=headers).status_code == 404

    listing = client.get("/api/tasks", headers=headers).json()["data"]
    assert listing["tasks"] == []
    assert listing["pagination"]["total"] == 0

    stored = db_session.get(Task, uuid.UUID(task["id"]))
    db_session.refresh(stored)
    assert stored.title == "Send brochure"


def test_interaction_is_invisible_to_other_tenant(client: TestClient, users: dict[str, User]) -> None:
    agent = users["agent"]
    lead = client.post("/api/leads", json={"title": "Private lead"}, headers=_headers(agent)).json()["data"]
    interaction = _post(client, "/api/interactions", agent, {"lead_id": lead["id"], "channel": "call", "subject": "Intro"})
    headers = _headers(users["other"])

    assert client.get(f"/api/interactions/{interaction['id']}", headers=headers).status_code == 404
    timeline = client.get("/api/interactions/timeline", params={"lead_id": lead["id"]}, headers=headers)
    assert timeline.status_code == 200
    assert timeline.json()["data"] == []

    listing = client.get("/api/interactions", headers=headers).json()["data"]
    assert listing["interactions"] == []
    assert listing["pagination"]["total"] == 0


def test_tag_is_invisible_to_other_tenant(client: TestClient, db_session: Session, users: dict[str, User]) -> None:
    agent = users["agent"]
    lead = client.post("/api/leads", json={"title": "Tagged", "tags": ["vip"]}, headers=_headers(agent)).json()["data"]
    tag_id = client.get("/api/tags", headers=_headers(agent)).json()["data"]["tags"][0]["id"]
    headers = _headers(users["other"])

    assert client.patch(f"/api/tags/{tag_id}", json={"name": "stolen"}, headers=headers).status_code == 404
    assert client.delete(f"/api/tags/{tag_id}", headers=headers).status_code == 404
    assert client.post(f"/api/leads/{lead['id']}/tags", json={"tags": ["spam"]}, headers=headers).status_code == 404
    assert client.delete(f"/api/leads/{lead['id']}/tags/vip", headers=headers).status_code == 404

    listing = client.get("/api/tags", headers=headers).json()["data"]
    assert listing["tags"] == []
    assert client.get("/api/tags/popular", headers=headers).json()["data"] == []

    stored = db_session.get(Tag, uuid.UUID(tag_id))
    db_session.refresh(stored)
    assert stored.name == "vip"
    assert client.get(f"/api/leads/{lead['id']}", headers=_headers(agent)).json()["data"]["tags"] == ["vip"]
    assert db_session.scalar(select(func.count()).select_from(LeadTag)) == 1
