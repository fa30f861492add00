from __future__ import annotations

import hmac
import logging
from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Request, status

from .auth import AuthTokenError, JwksKeyProvider, TokenVerifier, extract_bearer_token
from .config import Settings, get_settings
from .models import (
    DueRunResponse,
    ReminderClearResponse,
    ReminderFireResponse,
    ReminderResponse,
    ReminderSetRequest,
    TaskCreateRequest,
    TaskDeleteResponse,
    TaskResponse,
    TaskUpdateRequest,
)
from .notifications import PayloadValidationError, ReminderNotificationHandler, run_due_schedules
from .notifier import DispatchError, NotificationDispatcher, create_notification_dispatcher
from .reminders import DependencyError, ReminderCoordinator, ReminderValidationError, TaskNotFoundError
from .schedule_registry import ScheduleRegistry, ScheduleRegistryError, create_schedule_registry
from .task_store import TaskStore, create_task_store
from .tasks import TaskService, TaskValidationError

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/todo", tags=["todo"])


def _create_token_verifier(settings: Settings) -> TokenVerifier | None:
    jwks_url = settings.resolved_jwks_url()
    if not jwks_url:
        return None
    return TokenVerifier(
        JwksKeyProvider(jwks_url, timeout_seconds=settings.auth_jwks_timeout_seconds),
        issuer=settings.resolved_auth_issuer(),
        algorithms=settings.auth_algorithms,
    )


task_store: TaskStore = create_task_store(_settings)
schedule_registry: ScheduleRegistry = create_schedule_registry(_settings)
notification_dispatcher: NotificationDispatcher = create_notification_dispatcher(_settings)
token_verifier: TokenVerifier | None = _create_token_verifier(_settings)


def reset_runtime_state_for_tests() -> None:
    task_store.reset()
    reset_registry = getattr(schedule_registry, "reset", None)
    if reset_registry is not None:
        reset_registry()
    reset_dispatcher = getattr(notification_dispatcher, "reset", None)
    if reset_dispatcher is not None:
        reset_dispatcher()


def _coordinator() -> ReminderCoordinator:
    return ReminderCoordinator(
        task_store,
        schedule_registry,
        notification_target=_settings.notification_target(),
        min_lead=timedelta(seconds=_settings.reminder_min_lead_seconds),
    )


def _task_service() -> TaskService:
    return TaskService(task_store, _coordinator())


def _require_owner(request: Request) -> str:
    token = extract_bearer_token(request.headers.get("Authorization"))
    if not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Unauthorized: No token provided")
    if token_verifier is None:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "token verification not configured")
    try:
        return token_verifier.verify(token)
    except AuthTokenError as exc:
        logger.info("rejected bearer token: %s", exc)
        raise HTTPException(status.HTTP_403_FORBIDDEN, f"Forbidden: Invalid token ({exc})") from exc


def _require_reminder_secret(request: Request) -> None:
    expected = _settings.reminder_fire_secret
    if not expected:
        return
    provided = request.headers.get("X-Reminder-Secret", "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "invalid reminder secret")


def _dependency_failure(exc: DependencyError) -> HTTPException:
    return HTTPException(status.HTTP_502_BAD_GATEWAY, f"{exc.step} failed: {exc.message}")


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
def create_task(payload: TaskCreateRequest, request: Request) -> TaskResponse:
    owner_id = _require_owner(request)
    try:
        record = _task_service().create_task(owner_id, payload.text)
    except TaskValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DependencyError as exc:
        raise _dependency_failure(exc) from exc
    return TaskResponse.from_record(record)


@router.get("/tasks", response_model=list[TaskResponse])
def list_tasks(request: Request) -> list[TaskResponse]:
    owner_id = _require_owner(request)
    try:
        records = _task_service().list_tasks(owner_id)
    except DependencyError as exc:
        raise _dependency_failure(exc) from exc
    return [TaskResponse.from_record(record) for record in records]


@router.get("/tasks/{task_id}", response_model=TaskResponse)
def get_task(task_id: str, request: Request) -> TaskResponse:
    owner_id = _require_owner(request)
    try:
        record = _task_service().get_task(owner_id, task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"task not found: {task_id}") from exc
    except DependencyError as exc:
        raise _dependency_failure(exc) from exc
    return TaskResponse.from_record(record)


@router.patch("/tasks/{task_id}", response_model=TaskResponse)
def update_task(task_id: str, payload: TaskUpdateRequest, request: Request) -> TaskResponse:
    owner_id = _require_owner(request)
    try:
        record = _task_service().update_task(
            owner_id,
            task_id,
            text=payload.text,
            is_completed=payload.is_completed,
        )
    except TaskValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"task not found: {task_id}") from exc
    except DependencyError as exc:
        raise _dependency_failure(exc) from exc
    return TaskResponse.from_record(record)


@router.delete("/tasks/{task_id}", response_model=TaskDeleteResponse)
def delete_task(task_id: str, request: Request) -> TaskDeleteResponse:
    owner_id = _require_owner(request)
    try:
        outcome = _task_service().delete_task(owner_id, task_id)
    except DependencyError as exc:
        raise _dependency_failure(exc) from exc
    message = "Task deleted" if outcome.status == "deleted" else "Task not found or already deleted"
    return TaskDeleteResponse(task_id=task_id, status=outcome.status, message=message)


@router.put("/tasks/{task_id}/reminder", response_model=ReminderResponse)
def set_reminder(task_id: str, payload: ReminderSetRequest, request: Request) -> ReminderResponse:
    owner_id = _require_owner(request)
    try:
        state = _coordinator().set_reminder(
            owner_id,
            task_id,
            payload.reminder_time,
            payload.recipient,
            payload.note,
        )
    except ReminderValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"task not found: {task_id}") from exc
    except DependencyError as exc:
        raise _dependency_failure(exc) from exc
    return ReminderResponse.from_state(task_id, state)


@router.delete("/tasks/{task_id}/reminder", response_model=ReminderClearResponse)
def clear_reminder(task_id: str, request: Request) -> ReminderClearResponse:
    owner_id = _require_owner(request)
    try:
        _coordinator().clear_reminder(owner_id, task_id)
    except TaskNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"task not found: {task_id}") from exc
    except DependencyError as exc:
        raise _dependency_failure(exc) from exc
    return ReminderClearResponse(task_id=task_id, cleared=True)


@router.post("/reminders/fire", response_model=ReminderFireResponse)
def fire_reminder(request: Request, payload: dict[str, Any] = Body(...)) -> ReminderFireResponse:
    _require_reminder_secret(request)
    handler = ReminderNotificationHandler(notification_dispatcher)
    try:
        result = handler.handle(payload)
    except PayloadValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DispatchError as exc:
        raise HTTPException(status_code=502, detail=f"Failed to send notification: {exc.message}") from exc
    return ReminderFireResponse(published_at=result.published_at, message_id=result.message_id)


@router.post("/reminders/run/once", response_model=DueRunResponse)
def run_due_reminders_once(request: Request) -> DueRunResponse:
    _require_reminder_secret(request)
    if not hasattr(schedule_registry, "pop_due_entries"):
        raise HTTPException(409, "schedule registry fires entries itself; nothing to run locally")
    try:
        result = run_due_schedules(
            schedule_registry,  # type: ignore[arg-type]
            ReminderNotificationHandler(notification_dispatcher),
        )
    except ScheduleRegistryError as exc:
        raise HTTPException(502, f"due schedule run failed: {exc.message}") from exc
    return DueRunResponse(
        fired_count=len(result.fired),
        failed_count=len(result.failed),
        fired=result.fired,
        failed=result.failed,
    )
