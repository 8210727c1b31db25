from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from config import Settings, get_settings
from models import Todo
from services import ExternalServiceError


logger = logging.getLogger(__name__)

AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
SCOPES = (
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
)


class CalendarError(ExternalServiceError):
    pass


class CalendarAuthExpired(CalendarError):
    pass


@dataclass(frozen=True)
class GoogleTokens:
    access_token: str
    refresh_token: Optional[str]
    expires_in: Optional[int]


def event_body(todo: Todo) -> dict[str, object]:
    due = todo.due_date.replace(microsecond=0).isoformat()
    return {
        "summary": todo.title,
        "description": todo.description or "",
        "start": {"dateTime": due, "timeZone": "UTC"},
        "end": {"dateTime": due, "timeZone": "UTC"},
        "reminders": {"useDefault": True},
    }


class CalendarBridge:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        params = {
            "client_id": self.settings.google_client_id or "",
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(SCOPES),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if state:
            params["state"] = state
        return f"{AUTH_URL}?{urlencode(params)}"

    def exchange_code(self, code: str) -> GoogleTokens:
        logger.info("calendar_exchange_code: exchanging authorization code")
        form = urlencode(
            {
                "code": code,
                "client_id": self.settings.google_client_id or "",
                "client_secret": self.settings.google_client_secret or "",
                "redirect_uri": self.settings.google_redirect_uri,
                "grant_type": "authorization_code",
            }
        ).encode("utf-8")
        req = Request(
            TOKEN_URL,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        payload = self._request_json(req)
        access_token = payload.get("access_token")
        if not access_token:
            raise CalendarError("Failed to connect to Google Calendar.")
        tokens = GoogleTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
        )
        logger.info(
            "calendar_exchange_code: access_token=present "
            f"refresh_token={'present' if tokens.refresh_token else 'missing'}"
        )
        return tokens

    def create_event(self, todo: Todo, access_token: str) -> Optional[str]:
        if todo.due_date is None:
            return None
        req = Request(
            EVENTS_URL,
            data=json.dumps(event_body(todo)).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            method="POST",
        )
        payload = self._request_json(req)
        event_id = payload.get("id")
        logger.info(f"calendar_event_created: todo_id={todo.id} event_id={event_id}")
        return event_id

    def sync_all(self, todos: Iterable[Todo], access_token: str) -> dict[str, int]:
        synced = 0
        failed = 0
        for todo in todos:
            if todo.due_date is None or todo.completed:
                continue
            try:
                self.create_event(todo, access_token)
            except CalendarAuthExpired:
                raise
            except CalendarError as exc:
                failed += 1
                logger.warning(f"calendar_sync_failed: todo_id={todo.id} error={exc}")
            else:
                synced += 1
        return {"synced": synced, "failed": failed}

    def _request_json(self, req: Request) -> dict:
        try:
            with urlopen(req, timeout=self.settings.http_timeout_secs) as resp:
                return json.loads(resp.read().decode("utf-8") or "{}")
        except HTTPError as exc:
            error = _error_code(exc)
            if exc.code == 401:
                raise CalendarAuthExpired(
                    "Calendar authorization expired. "
                    "Please reconnect your Google Calendar."
                ) from exc
            if error == "invalid_grant":
                raise CalendarError(
                    "Invalid authorization code. Please try connecting again."
                ) from exc
            raise CalendarError(
                f"Google Calendar request failed with status {exc.code}"
            ) from exc
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise CalendarError("Failed to reach Google Calendar") from exc


def _error_code(exc: HTTPError) -> Optional[str]:
    try:
        body = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        return None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("status")
    return error
