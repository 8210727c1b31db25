import io
import json
from datetime import datetime
from urllib.error import HTTPError
from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import calendar_sync
from calendar_sync import CalendarAuthExpired, CalendarBridge, CalendarError
from config import Settings
from database import Base
from models import Todo
from schemas import TodoIn
from services import TodoService


def _settings() -> Settings:
    return Settings(
        database_url="sqlite:///:memory:",
        timezone="UTC",
        session_secret="test-secret",
        google_client_id="client-123",
        google_client_secret="shh",
        google_redirect_uri="http://localhost:5000/api/auth/google/callback",
        vapid_public_key=None,
        vapid_private_key=None,
        vapid_subject="mailto:test@example.org",
        http_timeout_secs=5,
        notify_horizon_days=5,
        notify_dedup_hours=24,
        sweep_interval_minutes=60,
        seed_username="Carlos",
        seed_password="contrasena",
    )


class FakeResponse:
    def __init__(self, payload: dict) -> None:
        self.body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self.body

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        return None


def _http_error(code: int, payload: dict) -> HTTPError:
    return HTTPError(
        calendar_sync.TOKEN_URL,
        code,
        "error",
        hdrs=None,
        fp=io.BytesIO(json.dumps(payload).encode("utf-8")),
    )


def test_authorization_url_requests_offline_calendar_access() -> None:
    url = CalendarBridge(_settings()).get_authorization_url(state="abc")

    query = parse_qs(urlparse(url).query)
    assert url.startswith(calendar_sync.AUTH_URL)
    assert query["client_id"] == ["client-123"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert query["state"] == ["abc"]
    assert "https://www.googleapis.com/auth/calendar" in query["scope"][0].split()


def test_create_event_posts_todo_to_calendar(monkeypatch) -> None:
    captured = {}

    def fake_urlopen(req, timeout=None):
        captured["req"] = req
        return FakeResponse({"id": "evt-1"})

    monkeypatch.setattr(calendar_sync, "urlopen", fake_urlopen)
    todo = Todo(id=3, title="Meet landlord", due_date=datetime(2026, 3, 2, 14, 30))

    event_id = CalendarBridge(_settings()).create_event(todo, "token-xyz")

    assert event_id == "evt-1"
    req = captured["req"]
    assert req.get_method() == "POST"
    assert req.get_header("Authorization") == "Bearer token-xyz"
    body = json.loads(req.data.decode("utf-8"))
    assert body["summary"] == "Meet landlord"
    assert body["start"]["dateTime"] == "2026-03-02T14:30:00"


def test_create_event_skips_undated_todo(monkeypatch) -> None:
    def fail_urlopen(req, timeout=None):
        raise AssertionError("no request expected")

    monkeypatch.setattr(calendar_sync, "urlopen", fail_urlopen)

    assert CalendarBridge(_settings()).create_event(Todo(title="Someday"), "t") is None


def test_expired_token_raises_auth_expired(monkeypatch) -> None:
    def expired(req, timeout=None):
        raise _http_error(401, {"error": {"status": "UNAUTHENTICATED"}})

    monkeypatch.setattr(calendar_sync, "urlopen", expired)
    todo = Todo(id=1, title="Call bank", due_date=datetime(2026, 3, 2))

    with pytest.raises(CalendarAuthExpired):
        CalendarBridge(_settings()).create_event(todo, "stale")


def test_invalid_grant_on_code_exchange(monkeypatch) -> None:
    def invalid(req, timeout=None):
        raise _http_error(400, {"error": "invalid_grant"})

    monkeypatch.setattr(calendar_sync, "urlopen", invalid)

    with pytest.raises(CalendarError) as excinfo:
        CalendarBridge(_settings()).exchange_code("used-code")

    assert "Invalid authorization code" in str(excinfo.value)


def test_exchange_code_returns_tokens(monkeypatch) -> None:
    monkeypatch.setattr(
        calendar_sync,
        "urlopen",
        lambda req, timeout=None: FakeResponse(
            {"access_token": "a", "refresh_token": "r", "expires_in": 3599}
        ),
    )

    tokens = CalendarBridge(_settings()).exchange_code("code")

    assert tokens.access_token == "a"
    assert tokens.refresh_token == "r"


def test_sync_all_counts_only_open_dated_todos(monkeypatch) -> None:
    calls = []

    def fake_urlopen(req, timeout=None):
        calls.append(req)
        return FakeResponse({"id": f"evt-{len(calls)}"})

    monkeypatch.setattr(calendar_sync, "urlopen", fake_urlopen)
    todos = [
        Todo(id=1, title="Dated", due_date=datetime(2026, 3, 2), completed=0),
        Todo(id=2, title="Done", due_date=datetime(2026, 3, 2), completed=1),
        Todo(id=3, title="Undated", completed=0),
    ]

    result = CalendarBridge(_settings()).sync_all(todos, "token")

    assert result == {"synced": 1, "failed": 0}
    assert len(calls) == 1


def test_failing_calendar_hook_does_not_roll_back_todo() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    def broken_hook(todo):
        raise CalendarError("Failed to reach Google Calendar")

    with Session(engine) as session:
        todo = TodoService(session, hooks=[broken_hook]).create(
            TodoIn(title="Book elevator", due_date=datetime(2026, 3, 5, 8, 0))
        )

        assert TodoService(session).get(todo.id).title == "Book elevator"


def test_hooks_receive_committed_todo() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    seen = []

    with Session(engine) as session:
        TodoService(session, hooks=[lambda todo: seen.append(todo.id)]).create(
            TodoIn(title="Order keys")
        )

    assert seen == [1]
