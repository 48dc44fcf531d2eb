import asyncio
import json
import logging
from typing import List, Optional, Protocol

import requests
from pywebpush import WebPushException, webpush

from core.database import Store, PUSH_SUBSCRIPTIONS
from core.errors import PartialDeliveryError
from models.notification import DeliveryOutcome, NotificationPayload, PushSubscription
from models.todo import Todo

logger = logging.getLogger(__name__)

GONE_STATUS_CODES = (404, 410)
MAX_BODY_LENGTH = 100

class PushResult:
    def __init__(self, ok: bool, status_code: Optional[int] = None, error: str = ""):
        self.ok = ok
        self.status_code = status_code
        self.error = error

    @property
    def gone(self) -> bool:
        """The push service says the subscription no longer exists."""
        return self.status_code in GONE_STATUS_CODES

class PushSender(Protocol):
    async def send(self, subscription: PushSubscription, payload: NotificationPayload) -> PushResult:
        ...

class WebPushSender:
    """Delivers payloads through the Web Push protocol with VAPID credentials."""

    def __init__(self, vapid_private_key: str, vapid_subject: str, timeout: float = 10.0):
        self.vapid_private_key = vapid_private_key
        self.vapid_claims = {"sub": vapid_subject}
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings) -> "WebPushSender":
        return cls(settings.VAPID_PRIVATE_KEY, settings.VAPID_SUBJECT)

    def _send_blocking(self, subscription: PushSubscription, data: str) -> PushResult:
        try:
            webpush(
                subscription_info=subscription.to_subscription_info(),
                data=data,
                vapid_private_key=self.vapid_private_key,
                vapid_claims=dict(self.vapid_claims),
                timeout=self.timeout,
            )
            return PushResult(ok=True)
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            return PushResult(ok=False, status_code=status, error=str(exc))
        except requests.RequestException as exc:
            return PushResult(ok=False, error=str(exc))
        except (ValueError, TypeError) as exc:
            # Malformed subscription keys or VAPID key, raised before any request is made
            return PushResult(ok=False, error=f"{type(exc).__name__}: {exc}")

    async def send(self, subscription: PushSubscription, payload: NotificationPayload) -> PushResult:
        if not self.vapid_private_key:
            return PushResult(ok=False, error="VAPID keys not configured")
        data = json.dumps(payload.model_dump())
        # pywebpush is blocking
        return await asyncio.to_thread(self._send_blocking, subscription, data)

def _truncate(text: str, limit: int = MAX_BODY_LENGTH) -> str:
    return text if len(text) <= limit else text[:limit] + "..."

def task_reminder_payload(todo: Todo, icon: str = "/icon-192.png") -> NotificationPayload:
    return NotificationPayload(
        title="Todo Reminder",
        body=_truncate(todo.text),
        icon=icon,
        badge=icon,
        tag=f"todo-{todo.id}",
        data={"taskId": todo.id, "url": "/"},
    )

def overdue_summary_payload(user_id: str, count: int, icon: str = "/icon-192.png") -> NotificationPayload:
    noun = "item" if count == 1 else "items"
    return NotificationPayload(
        title="Overdue items",
        body=f"You have {count} overdue {noun} to address",
        icon=icon,
        badge=icon,
        tag=f"overdue-summary-{user_id}",
        data={"url": "/"},
    )

def water_reminder_payload(icon: str = "/icon-192.png") -> NotificationPayload:
    return NotificationPayload(
        title="Stay hydrated! 💧",
        body="Time to drink water",
        icon=icon,
        badge=icon,
        tag="water-reminder",
        data={"url": "/"},
    )

async def deliver(
    store: Store,
    sender: PushSender,
    subscriptions: List[PushSubscription],
    payload: NotificationPayload,
) -> DeliveryOutcome:
    """
    Sends one payload to every subscription. A failed subscription never stops
    the others: each failure is recorded in `outcome.failures` and gone
    subscriptions are deleted from the store.
    """
    outcome = DeliveryOutcome()
    for subscription in subscriptions:
        try:
            result = await sender.send(subscription, payload)
        except Exception as exc:
            logger.exception(f"Push sender raised for subscription {subscription.id}")
            result = PushResult(ok=False, error=str(exc))
        if result.ok:
            outcome.sent += 1
            logger.info(f"Sent '{payload.tag}' to {subscription.endpoint[:50]}...")
            continue

        outcome.failed += 1
        failure = PartialDeliveryError(subscription.id, result.status_code, result.error)
        outcome.failures.append(failure)
        if result.gone:
            logger.warning(f"Removing invalid subscription {subscription.endpoint[:50]}... ({result.status_code})")
            await store.delete(PUSH_SUBSCRIPTIONS, {"_id": subscription.id})
            outcome.removed += 1
        else:
            logger.error(f"Failed to send '{payload.tag}': {failure}")
    return outcome
