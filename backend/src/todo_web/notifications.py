from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from .config import get_settings
from .notifier import DispatchError, NotificationDispatcher, PublishResult, create_notification_dispatcher, mask_recipient
from .schedule_registry import LocalScheduleRegistry

logger = logging.getLogger(__name__)

REMINDER_SUBJECT = "Reminder: Your To-Do Task!"

# Schedules written by the previous deployment carry camelCase keys.
_LEGACY_KEYS = {
    "owner_id": "userId",
    "task_id": "taskId",
    "recipient": "reminderEmail",
    "note": "reminderMessage",
}


class PayloadValidationError(ValueError):
    """Raised when a fired schedule delivers a payload without its required fields."""


@dataclass(frozen=True)
class ReminderNotification:
    task_id: str
    recipient: str
    owner_id: str | None = None
    note: str | None = None


def _field(payload: Mapping[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        value = payload.get(_LEGACY_KEYS[name])
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_fire_payload(payload: Mapping[str, Any]) -> ReminderNotification:
    if not isinstance(payload, Mapping):
        raise PayloadValidationError("Invalid payload from scheduler")
    task_id = _field(payload, "task_id")
    recipient = _field(payload, "recipient")
    if not recipient or not task_id:
        raise PayloadValidationError("Invalid payload from scheduler: recipient and task_id are required")
    return ReminderNotification(
        task_id=task_id,
        recipient=recipient,
        owner_id=_field(payload, "owner_id"),
        note=_field(payload, "note"),
    )


def format_reminder_message(notification: ReminderNotification) -> tuple[str, str]:
    note = notification.note or (
        f"This is a friendly reminder for your task (ID: {notification.task_id}). Don't forget to check it out!"
    )
    body = (
        "Hello,\n\n"
        f"A reminder was scheduled for task ID: {notification.task_id}.\n\n"
        f"Your custom message: {note}\n\n"
        f"(This reminder was intended for user associated with email: {notification.recipient})\n\n"
        "Thanks,\nYour To-Do App"
    )
    return REMINDER_SUBJECT, body


class ReminderNotificationHandler:
    def __init__(self, dispatcher: NotificationDispatcher) -> None:
        self._dispatcher = dispatcher

    def handle(self, payload: Mapping[str, Any]) -> PublishResult:
        notification = parse_fire_payload(payload)
        subject, body = format_reminder_message(notification)
        try:
            result = self._dispatcher.publish(subject, body)
        except DispatchError as exc:
            logger.error(
                "failed to publish reminder for task %s (recipient %s): %s",
                notification.task_id,
                mask_recipient(notification.recipient),
                exc.message,
            )
            raise
        logger.info(
            "published reminder for task %s, intended for %s",
            notification.task_id,
            mask_recipient(notification.recipient),
        )
        return result


@dataclass
class DueRunResult:
    fired: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def run_due_schedules(
    registry: LocalScheduleRegistry,
    handler: ReminderNotificationHandler,
    *,
    now: datetime | None = None,
) -> DueRunResult:
    """Fire every due entry of a locally held registry exactly once."""
    reference = now or datetime.now(timezone.utc)
    result = DueRunResult()
    for entry in registry.pop_due_entries(reference):
        try:
            handler.handle(entry.payload)
        except (PayloadValidationError, DispatchError) as exc:
            logger.warning("schedule %s fired but delivery failed: %s", entry.name, exc)
            result.failed.append(entry.name)
            continue
        except Exception:
            logger.exception("schedule %s fired but the handler crashed", entry.name)
            result.failed.append(entry.name)
            continue
        result.fired.append(entry.name)
    if result.fired or result.failed:
        logger.info("due schedule run fired=%d failed=%d", len(result.fired), len(result.failed))
    return result


_lambda_handler: ReminderNotificationHandler | None = None


def _get_lambda_handler() -> ReminderNotificationHandler:
    global _lambda_handler
    if _lambda_handler is None:
        _lambda_handler = ReminderNotificationHandler(create_notification_dispatcher(get_settings()))
    return _lambda_handler


def lambda_handler(event: Mapping[str, Any], context: Any = None) -> dict[str, Any]:
    """Entry point for schedules that target a function directly; ``event`` is the schedule input."""
    try:
        _get_lambda_handler().handle(event)
    except PayloadValidationError as exc:
        logger.error("rejected scheduler payload: %s", exc)
        return {"statusCode": 400, "body": json.dumps({"error": str(exc)})}
    except DispatchError as exc:
        return {"statusCode": 500, "body": json.dumps({"error": f"Failed to send notification: {exc.message}"})}
    return {"statusCode": 200, "body": json.dumps({"message": "Reminder processed and published successfully"})}
