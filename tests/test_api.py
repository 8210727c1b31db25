import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import main
from auth import get_db
from calendar_sync import GoogleTokens
from database import Base
from oauth_state import generate_state
from schemas import UserIn
from services import UserService


@pytest.fixture()
def sessions():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[get_db] = override_get_db
    with factory() as session:
        UserService(session).create(UserIn(username="carlos", password="contrasena"))
        UserService(session).create(UserIn(username="ana", password="supersecret"))
    yield factory
    main.app.dependency_overrides.clear()


@pytest.fixture()
def client(sessions):
    client = TestClient(main.app)
    resp = client.post("/api/login", json={"username": "carlos", "password": "contrasena"})
    assert resp.status_code == 200
    return client


def test_routes_require_login(sessions) -> None:
    client = TestClient(main.app)

    assert client.get("/api/todos").status_code == 401
    assert client.get("/api/user").status_code == 401


def test_login_rejects_bad_password(sessions) -> None:
    client = TestClient(main.app)

    resp = client.post("/api/login", json={"username": "carlos", "password": "nope"})

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid credentials"


def test_current_user_and_logout(client) -> None:
    resp = client.get("/api/user")
    assert resp.json() == {"id": 1, "username": "carlos", "hasGoogleCalendar": False}

    assert client.post("/api/logout").status_code == 200
    assert client.get("/api/user").status_code == 401


def test_todo_with_estimate_creates_budget_item(client) -> None:
    resp = client.post(
        "/api/todos",
        json={"title": "Hire movers", "hasAssociatedExpense": 1, "estimatedAmount": 50},
    )
    assert resp.status_code == 200
    todo = resp.json()
    assert todo["category"] == "Unassigned"
    assert todo["hasAssociatedExpense"] == 1

    expenses = client.get("/api/expenses").json()
    assert len(expenses) == 1
    assert expenses[0]["todoId"] == todo["id"]
    assert expenses[0]["isBudget"] == 1
    assert expenses[0]["amount"] == 50

    summary = client.get("/api/expenses/summary").json()
    assert summary == {"planned": 50, "paid": 0, "total": 50}


def test_validation_errors_are_bad_requests(client) -> None:
    resp = client.post("/api/todos", json={"title": ""})

    assert resp.status_code == 400
    assert "title" in resp.json()["detail"]


def test_patch_merges_and_missing_ids(client) -> None:
    todo = client.post("/api/todos", json={"title": "Paint walls", "priority": 1}).json()

    resp = client.patch(f"/api/todos/{todo['id']}", json={"completed": 1})
    assert resp.status_code == 200
    assert resp.json()["priority"] == 1
    assert resp.json()["completed"] == 1

    assert client.patch("/api/todos/999", json={"completed": 1}).status_code == 404
    assert client.delete("/api/todos/999").status_code == 204
    assert client.delete(f"/api/todos/{todo['id']}").status_code == 204
    assert client.get("/api/todos").json() == []


def test_category_lifecycle(client) -> None:
    created = client.post("/api/categories", json={"name": "Packing"})
    assert created.status_code == 200
    category_id = created.json()["id"]

    duplicate = client.post("/api/categories", json={"name": "packing"})
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"] == "Category already exists"

    assert "Packing" in client.get("/api/categories").json()
    todo = client.post("/api/todos", json={"title": "Boxes", "category": "Packing"}).json()

    assert client.delete(f"/api/categories/{category_id}").status_code == 204
    assert "Packing" not in client.get("/api/categories").json()
    assert client.get(f"/api/todos/{todo['id']}").json()["category"] == "Unassigned"


def test_category_reassign(client) -> None:
    category_id = client.post("/api/categories", json={"name": "Packing"}).json()["id"]
    client.post("/api/todos", json={"title": "Tape", "category": "Packing"})

    resp = client.patch(
        f"/api/categories/{category_id}/reassign", json={"newCategory": "Moving"}
    )

    assert resp.status_code == 200
    assert resp.json() == {"todos": 1, "expenses": 0}


def test_unknown_category_returns_hint(client) -> None:
    resp = client.post("/api/todos", json={"title": "Van", "category": "Movng"})

    assert resp.status_code == 400
    assert "did you mean 'Moving'" in resp.json()["detail"]


def test_project_scoping_and_access(client) -> None:
    project = client.post("/api/projects", json={"name": "New flat"}).json()
    client.post("/api/todos", json={"title": "Flat task", "projectId": project["id"]})
    client.post("/api/todos", json={"title": "Global task"})

    scoped = client.get(f"/api/projects/{project['id']}/todos").json()
    assert [t["title"] for t in scoped] == ["Flat task"]
    assert [t["title"] for t in client.get("/api/todos").json()] == ["Global task"]

    client.post("/api/logout")
    client.post("/api/login", json={"username": "ana", "password": "supersecret"})
    assert client.get(f"/api/projects/{project['id']}/todos").status_code == 403


def test_notes_routes(client) -> None:
    project = client.post("/api/projects", json={"name": "New flat"}).json()
    note = client.post(
        "/api/notes",
        json={
            "title": "Wifi",
            "content": "Router in the closet",
            "tags": ["Utilities"],
            "projectId": project["id"],
        },
    ).json()

    tagged = client.get(f"/api/projects/{project['id']}/notes/tag/utilities").json()
    assert [n["id"] for n in tagged] == [note["id"]]
    found = client.get(f"/api/projects/{project['id']}/notes/search", params={"q": "closet"})
    assert [n["id"] for n in found.json()] == [note["id"]]
    assert client.delete(f"/api/notes/{note['id']}").status_code == 204


def test_push_subscribe_accepts_browser_shape(client) -> None:
    resp = client.post(
        "/api/push/subscribe",
        json={
            "endpoint": "https://push.example/abc",
            "keys": {"p256dh": "key", "auth": "secret"},
        },
    )

    assert resp.status_code == 200
    assert resp.json()["endpoint"] == "https://push.example/abc"
    assert resp.json()["lastNotified"] is None
    assert "vapidKey" in client.get("/api/push/vapidKey").json()


def test_google_callback_without_code_is_cancelled(client) -> None:
    resp = client.get("/api/auth/google/callback", follow_redirects=False)

    assert resp.status_code == 302
    assert resp.headers["location"] == "/?error=google_auth_cancelled"


def test_google_callback_rejects_foreign_state(client) -> None:
    resp = client.get(
        "/api/auth/google/callback",
        params={"code": "abc", "state": generate_state(2)},
        follow_redirects=False,
    )

    assert resp.headers["location"] == "/?error=invalid_state"


def test_google_callback_stores_tokens(client, monkeypatch) -> None:
    monkeypatch.setattr(
        main.calendar_bridge,
        "exchange_code",
        lambda code: GoogleTokens(access_token="a", refresh_token="r", expires_in=3600),
    )

    resp = client.get(
        "/api/auth/google/callback",
        params={"code": "abc", "state": generate_state(1)},
        follow_redirects=False,
    )

    assert resp.headers["location"] == "/"
    assert client.get("/api/user").json()["hasGoogleCalendar"] is True


def test_sync_calendar_requires_connection(client) -> None:
    resp = client.post("/api/sync-calendar")

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Google Calendar not connected"


def test_check_notifications_reports_sweep_failure(client, monkeypatch) -> None:
    class BrokenSweep:
        @classmethod
        def from_settings(cls, session, sender, settings):
            return cls()

        def run(self):
            raise RuntimeError("database is locked")

    monkeypatch.setattr(main.settings, "vapid_public_key", "public")
    monkeypatch.setattr(main.settings, "vapid_private_key", "private")
    monkeypatch.setattr(main, "NotificationSweep", BrokenSweep)

    resp = client.post("/api/push/check-notifications")

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Failed to check notifications"
