from __future__ import annotations

import base64
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from todo_web import api as api_module
from todo_web.auth import StaticKeyProvider, TokenVerifier
from todo_web.main import create_app
from todo_web.notifier import StubNotificationDispatcher
from todo_web.reminders import derive_schedule_handle
from todo_web.schedule_registry import InMemoryScheduleRegistry, ScheduleRegistryError
from todo_web.task_store import InMemoryTaskStore, TaskStoreError

ISSUER = "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_TestPool"
SIGNING_SECRET = "test-signing-secret-for-todo-api-0001"
KEY_ID = "test-kid"
BASE = "/api/v1/todo"


def _jwk() -> dict[str, str]:
    encoded = base64.urlsafe_b64encode(SIGNING_SECRET.encode("utf-8")).rstrip(b"=").decode("ascii")
    return {"kty": "oct", "kid": KEY_ID, "alg": "HS256", "k": encoded}


def _token(subject: str = "user-123", *, issuer: str = ISSUER, kid: str = KEY_ID, expires_in: int = 3600) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": subject,
        "iss": issuer,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    return jwt.encode(claims, SIGNING_SECRET, algorithm="HS256", headers={"kid": kid})


def _auth(subject: str = "user-123") -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(subject)}"}


def _future(hours: int = 2) -> str:
    return (datetime.now(timezone.utc) + timedelta(hours=hours)).replace(microsecond=0).isoformat()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setattr(api_module, "task_store", InMemoryTaskStore())
    monkeypatch.setattr(api_module, "schedule_registry", InMemoryScheduleRegistry())
    monkeypatch.setattr(api_module, "notification_dispatcher", StubNotificationDispatcher())
    monkeypatch.setattr(
        api_module,
        "token_verifier",
        TokenVerifier(StaticKeyProvider({KEY_ID: _jwk()}), issuer=ISSUER, algorithms=("HS256",)),
    )
    monkeypatch.setattr(api_module, "_settings", replace(api_module._settings, reminder_fire_secret=""))
    api_module.reset_runtime_state_for_tests()
    return TestClient(create_app())


def _create_task(client: TestClient, text: str = "Buy milk", subject: str = "user-123") -> dict:
    response = client.post(f"{BASE}/tasks", json={"text": text}, headers=_auth(subject))
    assert response.status_code == 201
    return response.json()


def test_requests_without_token_are_unauthorized(client: TestClient) -> None:
    response = client.get(f"{BASE}/tasks")

    assert response.status_code == 401
    assert "No token provided" in response.json()["detail"]


@pytest.mark.parametrize(
    "token",
    [
        "not-a-jwt",
        _token(kid="unknown-kid"),
        _token(issuer="https://issuer.example.com/other"),
        _token(expires_in=-60),
    ],
)
def test_invalid_tokens_are_forbidden(client: TestClient, token: str) -> None:
    response = client.get(f"{BASE}/tasks", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 403


def test_task_crud_is_scoped_to_token_subject(client: TestClient) -> None:
    created = _create_task(client, "  Write report  ")
    _create_task(client, "Other person's task", subject="user-999")

    assert created["text"] == "Write report"
    assert created["is_completed"] is False
    assert created["reminder_active"] is False

    listed = client.get(f"{BASE}/tasks", headers=_auth())
    assert listed.status_code == 200
    assert [task["task_id"] for task in listed.json()] == [created["task_id"]]

    fetched = client.get(f"{BASE}/tasks/{created['task_id']}", headers=_auth("user-999"))
    assert fetched.status_code == 404

    renamed = client.patch(f"{BASE}/tasks/{created['task_id']}", json={"text": "Write final report"}, headers=_auth())
    assert renamed.status_code == 200
    assert renamed.json()["text"] == "Write final report"


def test_create_task_rejects_blank_text(client: TestClient) -> None:
    response = client.post(f"{BASE}/tasks", json={"text": "   "}, headers=_auth())

    assert response.status_code == 422


def test_update_task_requires_a_field(client: TestClient) -> None:
    task = _create_task(client)

    response = client.patch(f"{BASE}/tasks/{task['task_id']}", json={}, headers=_auth())

    assert response.status_code == 422


def test_set_reminder_then_get_task_reports_active_reminder(client: TestClient) -> None:
    task = _create_task(client)
    reminder_time = _future()

    response = client.put(
        f"{BASE}/tasks/{task['task_id']}/reminder",
        json={"reminder_time": reminder_time, "recipient": "me@example.com", "note": "Grab oat milk"},
        headers=_auth(),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["reminder_active"] is True
    assert body["schedule_handle"] == derive_schedule_handle("user-123", task["task_id"])

    fetched = client.get(f"{BASE}/tasks/{task['task_id']}", headers=_auth()).json()
    assert fetched["reminder_active"] is True
    assert fetched["schedule_handle"] == body["schedule_handle"]
    assert fetched["reminder_recipient"] == "me@example.com"
    assert fetched["reminder_note"] == "Grab oat milk"
    assert api_module.schedule_registry.get_entry(body["schedule_handle"]) is not None


def test_set_reminder_accepts_legacy_field_names(client: TestClient) -> None:
    task = _create_task(client)

    response = client.put(
        f"{BASE}/tasks/{task['task_id']}/reminder",
        json={"reminderTime": _future(), "reminderEmail": "me@example.com"},
        headers=_auth(),
    )

    assert response.status_code == 200
    assert response.json()["note"] == f"Reminder for your task: {task['task_id']}"


@pytest.mark.parametrize(
    "payload",
    [
        {"reminder_time": "next tuesday", "recipient": "me@example.com"},
        {"reminder_time": "2020-01-01T00:00:00Z", "recipient": "me@example.com"},
        {"reminder_time": "9999-12-31T23:59:59-05:00", "recipient": "me@example.com"},
        {"recipient": "me@example.com"},
        {"reminder_time": "2099-01-01T00:00:00Z"},
    ],
)
def test_set_reminder_validation_errors_return_400(client: TestClient, payload: dict) -> None:
    task = _create_task(client)

    response = client.put(f"{BASE}/tasks/{task['task_id']}/reminder", json=payload, headers=_auth())

    assert response.status_code == 400
    assert api_module.schedule_registry.list_entries() == []


def test_set_reminder_on_missing_task_returns_404(client: TestClient) -> None:
    response = client.put(
        f"{BASE}/tasks/missing/reminder",
        json={"reminder_time": _future(), "recipient": "me@example.com"},
        headers=_auth(),
    )

    assert response.status_code == 404


def test_registry_outage_returns_502_naming_step(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    task = _create_task(client)

    def _fail(name: str) -> None:
        raise ScheduleRegistryError("failed", "throttled")

    monkeypatch.setattr(api_module.schedule_registry, "get_entry", _fail)

    response = client.put(
        f"{BASE}/tasks/{task['task_id']}/reminder",
        json={"reminder_time": _future(), "recipient": "me@example.com"},
        headers=_auth(),
    )

    assert response.status_code == 502
    assert response.json()["detail"].startswith("probe_schedule failed")


def test_clear_reminder_twice_returns_cleared(client: TestClient) -> None:
    task = _create_task(client)
    client.put(
        f"{BASE}/tasks/{task['task_id']}/reminder",
        json={"reminder_time": _future(), "recipient": "me@example.com"},
        headers=_auth(),
    )

    first = client.delete(f"{BASE}/tasks/{task['task_id']}/reminder", headers=_auth())
    second = client.delete(f"{BASE}/tasks/{task['task_id']}/reminder", headers=_auth())

    assert first.status_code == 200
    assert first.json() == {"task_id": task["task_id"], "cleared": True}
    assert second.status_code == 200
    assert api_module.schedule_registry.list_entries() == []
    fetched = client.get(f"{BASE}/tasks/{task['task_id']}", headers=_auth()).json()
    assert fetched["reminder_active"] is False
    assert fetched["schedule_handle"] is None


def test_completing_task_clears_reminder(client: TestClient) -> None:
    task = _create_task(client)
    client.put(
        f"{BASE}/tasks/{task['task_id']}/reminder",
        json={"reminder_time": _future(), "recipient": "me@example.com"},
        headers=_auth(),
    )

    response = client.patch(f"{BASE}/tasks/{task['task_id']}", json={"isCompleted": True}, headers=_auth())

    assert response.status_code == 200
    body = response.json()
    assert body["is_completed"] is True
    assert body["reminder_active"] is False
    assert body["schedule_handle"] is None
    assert api_module.schedule_registry.list_entries() == []


def test_delete_task_removes_schedule_and_is_repeatable(client: TestClient) -> None:
    task = _create_task(client)
    client.put(
        f"{BASE}/tasks/{task['task_id']}/reminder",
        json={"reminder_time": _future(), "recipient": "me@example.com"},
        headers=_auth(),
    )

    first = client.delete(f"{BASE}/tasks/{task['task_id']}", headers=_auth())
    second = client.delete(f"{BASE}/tasks/{task['task_id']}", headers=_auth())

    assert first.status_code == 200
    assert first.json()["status"] == "deleted"
    assert second.status_code == 200
    assert second.json()["status"] == "already_deleted"
    assert second.json()["message"] == "Task not found or already deleted"
    assert api_module.schedule_registry.list_entries() == []
    assert client.get(f"{BASE}/tasks/{task['task_id']}", headers=_auth()).status_code == 404


def test_store_outage_on_list_returns_502(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def _fail(owner_id: str) -> list:
        raise TaskStoreError("failed", "table unavailable")

    monkeypatch.setattr(api_module.task_store, "list_tasks", _fail)

    response = client.get(f"{BASE}/tasks", headers=_auth())

    assert response.status_code == 502
    assert response.json()["detail"].startswith("list_tasks failed")


def test_fire_endpoint_publishes_reminder(client: TestClient) -> None:
    response = client.post(
        f"{BASE}/reminders/fire",
        json={"owner_id": "user-123", "task_id": "task-1", "recipient": "me@example.com", "note": "Call mom"},
    )

    assert response.status_code == 200
    assert response.json()["message_id"] == "stub-0001"
    published = api_module.notification_dispatcher.published
    assert len(published) == 1
    assert published[0].subject == "Reminder: Your To-Do Task!"
    assert "Your custom message: Call mom" in published[0].body


def test_fire_endpoint_rejects_payload_without_recipient(client: TestClient) -> None:
    response = client.post(f"{BASE}/reminders/fire", json={"task_id": "task-1"})

    assert response.status_code == 400
    assert api_module.notification_dispatcher.published == []


def test_fire_endpoint_reports_dispatch_failure(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(api_module, "notification_dispatcher", StubNotificationDispatcher(enabled=False))

    response = client.post(f"{BASE}/reminders/fire", json={"task_id": "task-1", "recipient": "me@example.com"})

    assert response.status_code == 502
    assert "Failed to send notification" in response.json()["detail"]


def test_reminder_endpoints_require_secret_when_configured(
    client: TestClient, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(api_module, "_settings", replace(api_module._settings, reminder_fire_secret="fire-secret-001"))
    payload = {"task_id": "task-1", "recipient": "me@example.com"}

    missing = client.post(f"{BASE}/reminders/fire", json=payload)
    wrong = client.post(f"{BASE}/reminders/fire", json=payload, headers={"X-Reminder-Secret": "nope"})
    ok = client.post(f"{BASE}/reminders/fire", json=payload, headers={"X-Reminder-Secret": "fire-secret-001"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert ok.status_code == 200


def test_run_once_fires_only_due_entries(client: TestClient) -> None:
    task = _create_task(client)
    client.put(
        f"{BASE}/tasks/{task['task_id']}/reminder",
        json={"reminder_time": _future(), "recipient": "me@example.com"},
        headers=_auth(),
    )

    response = client.post(f"{BASE}/reminders/run/once")

    assert response.status_code == 200
    assert response.json() == {"fired_count": 0, "failed_count": 0, "fired": [], "failed": []}
    assert api_module.notification_dispatcher.published == []
    assert len(api_module.schedule_registry.list_entries()) == 1


def test_run_once_reports_registry_failure(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_pop(now: datetime) -> list:
        raise ScheduleRegistryError("failed", "database unavailable")

    monkeypatch.setattr(api_module.schedule_registry, "pop_due_entries", failing_pop)

    response = client.post(f"{BASE}/reminders/run/once")

    assert response.status_code == 502
    assert response.json()["detail"] == "due schedule run failed: database unavailable"
