from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol

from pywebpush import WebPushException, webpush
from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Settings, get_settings
from models import PushSubscription, Todo
from services import ExternalServiceError, PushSubscriptionService


logger = logging.getLogger(__name__)

# push services answer 404/410 once a subscription has been revoked
GONE_STATUSES = frozenset({404, 410})


class PushDeliveryError(ExternalServiceError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        invalid: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.invalid = invalid

    @property
    def gone(self) -> bool:
        return self.invalid or self.status_code in GONE_STATUSES


def _b64url(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.b64decode(padded, altchars=b"-_", validate=True)


def check_keys(subscription: PushSubscription) -> None:
    """Reject subscriptions whose keys can never encrypt a payload: p256dh
    must be an uncompressed P-256 point and auth a 16 byte secret."""
    try:
        p256dh = _b64url(subscription.p256dh)
        auth = _b64url(subscription.auth)
    except ValueError as exc:
        raise PushDeliveryError(
            f"Invalid subscription keys: {exc}", invalid=True
        ) from exc
    if len(p256dh) != 65 or p256dh[0] != 4 or len(auth) != 16:
        raise PushDeliveryError("Invalid subscription keys", invalid=True)


class PushSender(Protocol):
    def send(self, subscription: PushSubscription, payload: dict) -> None: ...


class WebPushSender:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def send(self, subscription: PushSubscription, payload: dict) -> None:
        check_keys(subscription)
        try:
            webpush(
                subscription_info={
                    "endpoint": subscription.endpoint,
                    "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth},
                },
                data=json.dumps(payload),
                vapid_private_key=self.settings.vapid_private_key,
                vapid_claims={"sub": self.settings.vapid_subject},
                timeout=self.settings.http_timeout_secs,
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise PushDeliveryError(str(exc), status_code=status) from exc
        except OSError as exc:
            raise PushDeliveryError(str(exc)) from exc
        except (ValueError, TypeError) as exc:
            raise PushDeliveryError(str(exc)) from exc


def build_payload(todo: Todo, now: datetime) -> dict[str, str]:
    state = "overdue" if todo.due_date and todo.due_date < now else "due soon"
    return {
        "title": "Task Reminder",
        "body": f'Task "{todo.title}" is {state}!',
        "url": "/",
    }


@dataclass
class SweepResult:
    due: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    purged: int = 0


class NotificationSweep:
    """Reminds every push subscription about open todos that are overdue or
    due within the horizon.

    A subscription notified less than ``dedup_window`` ago is skipped as a
    whole, so a todo becoming due inside that window waits for the next one.
    """

    def __init__(
        self,
        session: Session,
        sender: PushSender,
        horizon: timedelta = timedelta(days=5),
        dedup_window: timedelta = timedelta(hours=24),
    ) -> None:
        self.session = session
        self.sender = sender
        self.horizon = horizon
        self.dedup_window = dedup_window
        self.subscriptions = PushSubscriptionService(session)

    @classmethod
    def from_settings(
        cls, session: Session, sender: PushSender, settings: Optional[Settings] = None
    ) -> "NotificationSweep":
        settings = settings or get_settings()
        return cls(
            session,
            sender,
            horizon=timedelta(days=settings.notify_horizon_days),
            dedup_window=timedelta(hours=settings.notify_dedup_hours),
        )

    def due_todos(self, now: datetime) -> list[Todo]:
        stmt = (
            select(Todo)
            .where(
                Todo.due_date.is_not(None),
                Todo.completed == 0,
                Todo.due_date <= now + self.horizon,
            )
            .order_by(Todo.due_date, Todo.id)
        )
        return self.session.scalars(stmt).all()

    def run(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or datetime.utcnow()
        result = SweepResult()
        due = self.due_todos(now)
        result.due = len(due)
        if not due:
            logger.info("sweep_run: no tasks due")
            return result

        for subscription in self.subscriptions.list_all():
            last = subscription.last_notified
            if last is not None and now - last < self.dedup_window:
                result.skipped += 1
                logger.info(
                    f"sweep_skip: subscription_id={subscription.id} last_notified={last}"
                )
                continue
            self._notify(subscription, due, now, result)

        logger.info(
            f"sweep_run: due={result.due} sent={result.sent} skipped={result.skipped} "
            f"failed={result.failed} purged={result.purged}"
        )
        return result

    def _notify(
        self,
        subscription: PushSubscription,
        due: list[Todo],
        now: datetime,
        result: SweepResult,
    ) -> None:
        delivered = False
        for todo in due:
            try:
                self.sender.send(subscription, build_payload(todo, now))
            except PushDeliveryError as exc:
                result.failed += 1
                if exc.gone:
                    logger.info(
                        f"sweep_purge: subscription_id={subscription.id} "
                        f"status={exc.status_code} invalid={exc.invalid}"
                    )
                    self.subscriptions.delete(subscription.id)
                    result.purged += 1
                    return
                logger.warning(
                    f"sweep_send_failed: subscription_id={subscription.id} "
                    f"todo_id={todo.id} error={exc}"
                )
                continue
            except Exception:
                result.failed += 1
                logger.exception(
                    f"sweep_send_failed: subscription_id={subscription.id} todo_id={todo.id}"
                )
                continue
            delivered = True
            result.sent += 1
        if delivered:
            self.subscriptions.mark_notified(subscription, now)
