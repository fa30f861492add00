from __future__ import annotations

import logging
from typing import Any

from .reminders import DependencyError, ReminderCoordinator, TaskDeletionOutcome, TaskNotFoundError
from .task_store import TaskRecord, TaskStore, TaskStoreError

logger = logging.getLogger(__name__)


class TaskValidationError(ValueError):
    """Raised when a task request carries no usable fields."""


class TaskService:
    """Task create/list/update/delete flows; reminder side effects go through the coordinator."""

    def __init__(self, task_store: TaskStore, coordinator: ReminderCoordinator) -> None:
        self._task_store = task_store
        self._coordinator = coordinator

    def create_task(self, owner_id: str, text: str) -> TaskRecord:
        if not text.strip():
            raise TaskValidationError("text is required")
        try:
            return self._task_store.create_task(owner_id, text.strip())
        except TaskStoreError as exc:
            raise DependencyError("create_task", exc.kind, f"Could not create task: {exc.message}") from exc

    def list_tasks(self, owner_id: str) -> list[TaskRecord]:
        try:
            return self._task_store.list_tasks(owner_id)
        except TaskStoreError as exc:
            raise DependencyError("list_tasks", exc.kind, f"Could not list tasks: {exc.message}") from exc

    def get_task(self, owner_id: str, task_id: str) -> TaskRecord:
        try:
            record = self._task_store.get_task(owner_id, task_id)
        except TaskStoreError as exc:
            raise DependencyError("load_task", exc.kind, f"Failed to retrieve task details: {exc.message}") from exc
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def update_task(
        self,
        owner_id: str,
        task_id: str,
        *,
        text: str | None = None,
        is_completed: bool | None = None,
    ) -> TaskRecord:
        if text is None and is_completed is None:
            raise TaskValidationError("No fields to update (text or is_completed)")
        if text is not None and not text.strip():
            raise TaskValidationError("text must not be blank")

        record = self.get_task(owner_id, task_id)
        changes: dict[str, Any] = {}
        if text is not None:
            changes["text"] = text.strip()
        if is_completed is not None:
            changes["is_completed"] = is_completed
            if is_completed:
                changes.update(self._coordinator.on_task_completed(record))

        try:
            updated = self._task_store.update_task(owner_id, task_id, changes)
        except TaskStoreError as exc:
            if exc.kind == "not_found":
                raise TaskNotFoundError(task_id) from exc
            logger.error("task update failed task=%s: %s", task_id, exc.message)
            raise DependencyError("update_task", exc.kind, f"Could not update task: {exc.message}") from exc
        logger.info("task %s updated for owner %s", task_id, owner_id)
        return updated

    def delete_task(self, owner_id: str, task_id: str) -> TaskDeletionOutcome:
        return self._coordinator.on_task_deleted(owner_id, task_id)
