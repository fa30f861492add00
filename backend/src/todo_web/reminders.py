"""Reminder coordination across the task store and the schedule registry.

The task store record is the source of truth for whether a task has an active
reminder; schedule entries are derived state. Every operation re-derives the
schedule handle and re-probes the registry, so a divergence left behind by a
failed best-effort step is repaired by the next operation on the same task.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Literal

from .schedule_registry import (
    RegistryErrorKind,
    ScheduleEntry,
    ScheduleRegistry,
    ScheduleRegistryError,
    truncate_to_second,
)
from .task_store import TaskRecord, TaskStore, TaskStoreError

logger = logging.getLogger(__name__)

MIN_REMINDER_LEAD = timedelta(minutes=1)
SCHEDULE_HANDLE_PREFIX = "task-reminder-"
_HANDLE_DIGEST_CHARS = 40

CLEARED_REMINDER_FIELDS: dict[str, Any] = {
    "reminder_time": None,
    "reminder_recipient": None,
    "reminder_note": None,
    "reminder_active": False,
    "schedule_handle": None,
}

TaskDeletionStatus = Literal["deleted", "already_deleted"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class ReminderValidationError(ValueError):
    """Raised when reminder input is malformed, missing, or not far enough in the future."""


class TaskNotFoundError(KeyError):
    """Raised when an operation references a task that does not exist."""


@dataclass(frozen=True)
class CleanupOutcome:
    """Result of a best-effort schedule deletion.

    ``succeeded`` means the entry is gone afterwards, including when it was
    already absent (``error_kind="not_found"``).
    """

    attempted: bool
    succeeded: bool
    error_kind: RegistryErrorKind | None = None


NOT_ATTEMPTED = CleanupOutcome(attempted=False, succeeded=True)


class DependencyError(RuntimeError):
    """Raised when a required task store or schedule registry step fails."""

    def __init__(
        self,
        step: str,
        kind: str,
        message: str,
        *,
        compensation: CleanupOutcome | None = None,
    ) -> None:
        super().__init__(message)
        self.step = step
        self.kind = kind
        self.message = message
        self.compensation = compensation


@dataclass(frozen=True)
class ReminderState:
    reminder_time: datetime
    recipient: str
    note: str
    schedule_handle: str
    reminder_active: bool = True


@dataclass(frozen=True)
class TaskDeletionOutcome:
    status: TaskDeletionStatus
    schedule_cleanup: CleanupOutcome


def derive_schedule_handle(owner_id: str, task_id: str) -> str:
    digest = hashlib.sha256(f"{owner_id}\x1f{task_id}".encode("utf-8")).hexdigest()
    return f"{SCHEDULE_HANDLE_PREFIX}{digest[:_HANDLE_DIGEST_CHARS]}"


def default_reminder_note(task_id: str) -> str:
    return f"Reminder for your task: {task_id}"


def parse_reminder_time(value: str | datetime | None, *, now: datetime, min_lead: timedelta) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ReminderValidationError(f"invalid reminder_time format: {value!r}") from exc
    else:
        raise ReminderValidationError("reminder_time is required")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        parsed = parsed.astimezone(timezone.utc)
    except OverflowError as exc:
        raise ReminderValidationError("reminder_time out of range") from exc
    if parsed <= now + min_lead:
        raise ReminderValidationError(
            f"reminder_time must be more than {int(min_lead.total_seconds())} seconds in the future"
        )
    return parsed


def _normalize_recipient(recipient: object) -> str:
    if not isinstance(recipient, str) or not recipient.strip():
        raise ReminderValidationError("recipient is required")
    return recipient.strip()


def _normalize_note(note: object, task_id: str) -> str:
    if note is None:
        return default_reminder_note(task_id)
    if not isinstance(note, str):
        raise ReminderValidationError("note must be a string")
    return note.strip() or default_reminder_note(task_id)


class ReminderCoordinator:
    def __init__(
        self,
        task_store: TaskStore,
        schedule_registry: ScheduleRegistry,
        *,
        notification_target: str,
        min_lead: timedelta = MIN_REMINDER_LEAD,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._task_store = task_store
        self._schedule_registry = schedule_registry
        self._notification_target = notification_target
        self._min_lead = min_lead
        self._clock = clock

    def _load_task(self, owner_id: str, task_id: str) -> TaskRecord:
        try:
            record = self._task_store.get_task(owner_id, task_id)
        except TaskStoreError as exc:
            logger.error("task read failed owner=%s task=%s: %s", owner_id, task_id, exc.message)
            raise DependencyError("load_task", exc.kind, f"Failed to retrieve task details: {exc.message}") from exc
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def _delete_schedule_best_effort(self, handle: str, *, owner_id: str, task_id: str, reason: str) -> CleanupOutcome:
        try:
            existed = self._schedule_registry.delete_entry(handle)
        except ScheduleRegistryError as exc:
            logger.warning(
                "schedule delete failed (%s) handle=%s owner=%s task=%s kind=%s: %s",
                reason,
                handle,
                owner_id,
                task_id,
                exc.kind,
                exc.message,
            )
            return CleanupOutcome(attempted=True, succeeded=False, error_kind=exc.kind)
        if not existed:
            logger.info("schedule %s already gone (%s), likely fired or removed", handle, reason)
            return CleanupOutcome(attempted=True, succeeded=True, error_kind="not_found")
        logger.info("deleted schedule %s (%s) owner=%s task=%s", handle, reason, owner_id, task_id)
        return CleanupOutcome(attempted=True, succeeded=True)

    def _write_schedule(self, entry: ScheduleEntry, *, exists: bool) -> None:
        # A concurrent request for the same task may have created or fired the
        # entry between the probe and this call; the handle is shared, so
        # switching between create and update keeps the write idempotent.
        try:
            if exists:
                self._schedule_registry.update_entry(entry)
            else:
                self._schedule_registry.create_entry(entry)
            return
        except ScheduleRegistryError as exc:
            if exists and exc.kind == "not_found":
                logger.info("schedule %s vanished before update; creating it", entry.name)
                self._schedule_registry.create_entry(entry)
                return
            if not exists and exc.kind == "conflict":
                logger.info("schedule %s appeared before create; updating it", entry.name)
                self._schedule_registry.update_entry(entry)
                return
            raise

    def set_reminder(
        self,
        owner_id: str,
        task_id: str,
        reminder_time: str | datetime | None,
        recipient: object,
        note: object = None,
    ) -> ReminderState:
        fire_at = truncate_to_second(
            parse_reminder_time(reminder_time, now=self._clock(), min_lead=self._min_lead)
        )
        normalized_recipient = _normalize_recipient(recipient)
        effective_note = _normalize_note(note, task_id)

        record = self._load_task(owner_id, task_id)
        target_handle = derive_schedule_handle(owner_id, task_id)

        try:
            exists = self._schedule_registry.get_entry(target_handle) is not None
        except ScheduleRegistryError as exc:
            logger.error("schedule probe failed handle=%s task=%s: %s", target_handle, task_id, exc.message)
            raise DependencyError("probe_schedule", exc.kind, f"Could not set reminder: {exc.message}") from exc

        legacy_handle = record.schedule_handle
        if legacy_handle and legacy_handle != target_handle:
            logger.info("removing legacy schedule %s before binding %s", legacy_handle, target_handle)
            self._delete_schedule_best_effort(legacy_handle, owner_id=owner_id, task_id=task_id, reason="legacy")

        entry = ScheduleEntry(
            name=target_handle,
            fire_at=fire_at,
            target=self._notification_target,
            payload={
                "owner_id": owner_id,
                "task_id": task_id,
                "recipient": normalized_recipient,
                "note": effective_note,
            },
            delete_after_fire=True,
        )
        try:
            self._write_schedule(entry, exists=exists)
        except ScheduleRegistryError as exc:
            logger.error("schedule write failed handle=%s task=%s: %s", target_handle, task_id, exc.message)
            raise DependencyError("write_schedule", exc.kind, f"Could not set reminder: {exc.message}") from exc
        logger.info(
            "%s schedule %s for task %s at %s",
            "updated" if exists else "created",
            target_handle,
            task_id,
            fire_at.isoformat(),
        )

        try:
            self._task_store.update_task(
                owner_id,
                task_id,
                {
                    "reminder_time": fire_at,
                    "reminder_recipient": normalized_recipient,
                    "reminder_note": effective_note,
                    "reminder_active": True,
                    "schedule_handle": target_handle,
                    "updated_at": self._clock(),
                },
            )
        except TaskStoreError as exc:
            logger.error("task commit failed after schedule write task=%s: %s", task_id, exc.message)
            compensation = self._delete_schedule_best_effort(
                target_handle, owner_id=owner_id, task_id=task_id, reason="compensation"
            )
            if not compensation.succeeded:
                logger.error(
                    "compensation failure: schedule %s for task %s could not be removed (%s)",
                    target_handle,
                    task_id,
                    compensation.error_kind,
                )
            if exc.kind == "not_found":
                raise TaskNotFoundError(task_id) from exc
            raise DependencyError(
                "commit_task",
                exc.kind,
                f"Could not set reminder: {exc.message}",
                compensation=compensation,
            ) from exc

        return ReminderState(
            reminder_time=fire_at,
            recipient=normalized_recipient,
            note=effective_note,
            schedule_handle=target_handle,
        )

    def clear_reminder(self, owner_id: str, task_id: str) -> CleanupOutcome:
        record = self._load_task(owner_id, task_id)
        if not record.has_reminder_state():
            logger.info("no reminder to clear for task %s", task_id)
            return NOT_ATTEMPTED

        outcome = NOT_ATTEMPTED
        if record.schedule_handle:
            outcome = self._delete_schedule_best_effort(
                record.schedule_handle, owner_id=owner_id, task_id=task_id, reason="clear"
            )

        try:
            self._task_store.update_task(
                owner_id,
                task_id,
                {**CLEARED_REMINDER_FIELDS, "updated_at": self._clock()},
            )
        except TaskStoreError as exc:
            if exc.kind == "not_found":
                raise TaskNotFoundError(task_id) from exc
            logger.error("failed to clear reminder fields for task %s: %s", task_id, exc.message)
            raise DependencyError(
                "commit_task",
                exc.kind,
                f"Failed to update task after clearing reminder schedule: {exc.message}",
            ) from exc
        logger.info("reminder cleared for task %s", task_id)
        return outcome

    def on_task_completed(self, record: TaskRecord) -> dict[str, Any]:
        """Return the reminder field changes to fuse into a completion write.

        Must be called before the completion flag is persisted. Removes the bound
        schedule entry on a false-to-true transition; otherwise does nothing.
        """
        if record.is_completed or not record.schedule_handle:
            return {}
        logger.info("task %s completed with schedule %s; clearing reminder", record.task_id, record.schedule_handle)
        self._delete_schedule_best_effort(
            record.schedule_handle,
            owner_id=record.owner_id,
            task_id=record.task_id,
            reason="completed",
        )
        return dict(CLEARED_REMINDER_FIELDS)

    def on_task_deleted(self, owner_id: str, task_id: str) -> TaskDeletionOutcome:
        try:
            record = self._task_store.get_task(owner_id, task_id)
        except TaskStoreError as exc:
            logger.error("task read failed before delete task=%s: %s", task_id, exc.message)
            raise DependencyError("load_task", exc.kind, f"Could not delete task: {exc.message}") from exc

        cleanup = NOT_ATTEMPTED
        if record is not None and record.schedule_handle:
            cleanup = self._delete_schedule_best_effort(
                record.schedule_handle, owner_id=owner_id, task_id=task_id, reason="deleted"
            )

        try:
            deleted = self._task_store.delete_task(owner_id, task_id)
        except TaskStoreError as exc:
            logger.error("task delete failed task=%s: %s", task_id, exc.message)
            raise DependencyError("delete_task", exc.kind, f"Could not delete task: {exc.message}") from exc

        if not deleted:
            logger.info("task %s for owner %s not found or already deleted", task_id, owner_id)
            return TaskDeletionOutcome(status="already_deleted", schedule_cleanup=cleanup)
        logger.info("task %s deleted for owner %s", task_id, owner_id)
        return TaskDeletionOutcome(status="deleted", schedule_cleanup=cleanup)
