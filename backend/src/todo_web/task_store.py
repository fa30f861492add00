from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Literal, Mapping, Protocol

import boto3
from boto3.dynamodb.conditions import Key
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import Boolean, DateTime, String, Text, create_engine, delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import Settings

StoreErrorKind = Literal["not_found", "failed"]

UPDATABLE_FIELDS = frozenset(
    {
        "text",
        "is_completed",
        "updated_at",
        "reminder_time",
        "reminder_recipient",
        "reminder_note",
        "reminder_active",
        "schedule_handle",
    }
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskStoreError(RuntimeError):
    """Raised when the task store cannot complete an operation."""

    def __init__(self, kind: StoreErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind: StoreErrorKind = kind
        self.message = message


@dataclass(frozen=True)
class TaskRecord:
    owner_id: str
    task_id: str
    text: str
    is_completed: bool
    created_at: datetime
    updated_at: datetime
    reminder_time: datetime | None = None
    reminder_recipient: str | None = None
    reminder_note: str | None = None
    reminder_active: bool = False
    schedule_handle: str | None = None

    def has_reminder_state(self) -> bool:
        return bool(
            self.reminder_active
            or self.schedule_handle
            or self.reminder_time is not None
            or self.reminder_recipient
            or self.reminder_note
        )


def _validate_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported task fields: {', '.join(sorted(unknown))}")
    normalized = dict(changes)
    normalized.setdefault("updated_at", _now_utc())
    return normalized


class TaskStore(Protocol):
    def reset(self) -> None: ...

    def create_task(self, owner_id: str, text: str, *, task_id: str | None = None) -> TaskRecord: ...

    def get_task(self, owner_id: str, task_id: str) -> TaskRecord | None: ...

    def list_tasks(self, owner_id: str) -> list[TaskRecord]: ...

    def update_task(self, owner_id: str, task_id: str, changes: Mapping[str, Any]) -> TaskRecord: ...

    def delete_task(self, owner_id: str, task_id: str) -> bool: ...


class InMemoryTaskStore:
    """Lock-guarded task store keyed by (owner_id, task_id)."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._tasks: dict[tuple[str, str], TaskRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._tasks.clear()

    def create_task(self, owner_id: str, text: str, *, task_id: str | None = None) -> TaskRecord:
        now = _now_utc()
        record = TaskRecord(
            owner_id=owner_id,
            task_id=task_id or str(uuid.uuid4()),
            text=text,
            is_completed=False,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            key = (record.owner_id, record.task_id)
            if key in self._tasks:
                raise TaskStoreError("failed", f"task already exists: {record.task_id}")
            self._tasks[key] = record
        return record

    def get_task(self, owner_id: str, task_id: str) -> TaskRecord | None:
        with self._lock:
            return self._tasks.get((owner_id, task_id))

    def list_tasks(self, owner_id: str) -> list[TaskRecord]:
        with self._lock:
            records = [record for (owner, _), record in self._tasks.items() if owner == owner_id]
        return sorted(records, key=lambda item: item.created_at, reverse=True)

    def update_task(self, owner_id: str, task_id: str, changes: Mapping[str, Any]) -> TaskRecord:
        normalized = _validate_changes(changes)
        with self._lock:
            record = self._tasks.get((owner_id, task_id))
            if record is None:
                raise TaskStoreError("not_found", f"task not found: {task_id}")
            updated = replace(record, **normalized)
            self._tasks[(owner_id, task_id)] = updated
            return updated

    def delete_task(self, owner_id: str, task_id: str) -> bool:
        with self._lock:
            return self._tasks.pop((owner_id, task_id), None) is not None


class TaskStoreBase(DeclarativeBase):
    pass


class _TaskRow(TaskStoreBase):
    __tablename__ = "todo_tasks"

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reminder_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_recipient: Mapped[str | None] = mapped_column(String(320), nullable=True)
    reminder_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    schedule_handle: Mapped[str | None] = mapped_column(String(64), nullable=True)


def _row_to_record(row: _TaskRow) -> TaskRecord:
    return TaskRecord(
        owner_id=row.owner_id,
        task_id=row.task_id,
        text=row.text,
        is_completed=bool(row.is_completed),
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
        reminder_time=_coerce_utc(row.reminder_time) if row.reminder_time is not None else None,
        reminder_recipient=row.reminder_recipient,
        reminder_note=row.reminder_note,
        reminder_active=bool(row.reminder_active),
        schedule_handle=row.schedule_handle,
    )


class SqlAlchemyTaskStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for TASK_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            TaskStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_TaskRow))

    def create_task(self, owner_id: str, text: str, *, task_id: str | None = None) -> TaskRecord:
        now = _now_utc()
        row = _TaskRow(
            owner_id=owner_id,
            task_id=task_id or str(uuid.uuid4()),
            text=text,
            is_completed=False,
            created_at=now,
            updated_at=now,
            reminder_active=False,
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except SQLAlchemyError as exc:
            raise TaskStoreError("failed", f"task insert failed: {exc}") from exc
        return _row_to_record(row)

    def get_task(self, owner_id: str, task_id: str) -> TaskRecord | None:
        try:
            with self._session() as session:
                row = session.get(_TaskRow, (owner_id, task_id))
                return _row_to_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise TaskStoreError("failed", f"task read failed: {exc}") from exc

    def list_tasks(self, owner_id: str) -> list[TaskRecord]:
        try:
            with self._session() as session:
                rows = session.execute(
                    select(_TaskRow)
                    .where(_TaskRow.owner_id == owner_id)
                    .order_by(_TaskRow.created_at.desc())
                ).scalars().all()
                return [_row_to_record(row) for row in rows]
        except SQLAlchemyError as exc:
            raise TaskStoreError("failed", f"task list failed: {exc}") from exc

    def update_task(self, owner_id: str, task_id: str, changes: Mapping[str, Any]) -> TaskRecord:
        normalized = _validate_changes(changes)
        try:
            with self._session() as session:
                with session.begin():
                    result = session.execute(
                        update(_TaskRow)
                        .where(_TaskRow.owner_id == owner_id, _TaskRow.task_id == task_id)
                        .values(**normalized)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        raise TaskStoreError("not_found", f"task not found: {task_id}")
                    row = session.get(_TaskRow, (owner_id, task_id), populate_existing=True)
                    if row is None:
                        raise TaskStoreError("not_found", f"task not found: {task_id}")
                    return _row_to_record(row)
        except SQLAlchemyError as exc:
            raise TaskStoreError("failed", f"task update failed: {exc}") from exc

    def delete_task(self, owner_id: str, task_id: str) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    result = session.execute(
                        delete(_TaskRow).where(_TaskRow.owner_id == owner_id, _TaskRow.task_id == task_id)
                    )
                    return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise TaskStoreError("failed", f"task delete failed: {exc}") from exc


# Attribute names used by the legacy DynamoDB table layout.
_DYNAMO_ATTRIBUTES = {
    "text": "taskText",
    "is_completed": "isCompleted",
    "created_at": "createdAt",
    "updated_at": "updatedAt",
    "reminder_time": "reminderTime",
    "reminder_recipient": "reminderEmail",
    "reminder_note": "reminderMessage",
    "reminder_active": "isReminderSet",
    "schedule_handle": "scheduleName",
}
_DATETIME_FIELDS = {"created_at", "updated_at", "reminder_time"}


def _to_iso(value: datetime) -> str:
    return _coerce_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _from_iso(value: str) -> datetime:
    return _coerce_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class DynamoDbTaskStore:
    """Task store backed by a single-table DynamoDB layout (PK=USER#id, SK=TASK#id)."""

    def __init__(
        self,
        table_name: str,
        *,
        region_name: str | None = None,
        timeout_seconds: int = 10,
        table: Any | None = None,
    ) -> None:
        if table is None:
            if not table_name:
                raise RuntimeError("TABLE_NAME is required for TASK_STORE_BACKEND=dynamodb")
            resource = boto3.resource(
                "dynamodb",
                region_name=region_name or None,
                config=Config(connect_timeout=timeout_seconds, read_timeout=timeout_seconds),
            )
            table = resource.Table(table_name)
        self._table = table

    @staticmethod
    def _key(owner_id: str, task_id: str) -> dict[str, str]:
        return {"PK": f"USER#{owner_id}", "SK": f"TASK#{task_id}"}

    @staticmethod
    def _item_to_record(item: Mapping[str, Any]) -> TaskRecord:
        owner_id = str(item.get("PK", "")).removeprefix("USER#")
        task_id = str(item.get("taskId") or str(item.get("SK", "")).removeprefix("TASK#"))
        created_at = _from_iso(item["createdAt"]) if item.get("createdAt") else _now_utc()
        updated_at = _from_iso(item["updatedAt"]) if item.get("updatedAt") else created_at
        return TaskRecord(
            owner_id=owner_id,
            task_id=task_id,
            text=str(item.get("taskText", "")),
            is_completed=bool(item.get("isCompleted", False)),
            created_at=created_at,
            updated_at=updated_at,
            reminder_time=_from_iso(item["reminderTime"]) if item.get("reminderTime") else None,
            reminder_recipient=item.get("reminderEmail"),
            reminder_note=item.get("reminderMessage"),
            reminder_active=bool(item.get("isReminderSet", False)),
            schedule_handle=item.get("scheduleName"),
        )

    def reset(self) -> None:
        raise RuntimeError("reset is not supported for the DynamoDB task store")

    def create_task(self, owner_id: str, text: str, *, task_id: str | None = None) -> TaskRecord:
        now = _now_utc()
        record = TaskRecord(
            owner_id=owner_id,
            task_id=task_id or str(uuid.uuid4()),
            text=text,
            is_completed=False,
            created_at=now,
            updated_at=now,
        )
        item = {
            **self._key(owner_id, record.task_id),
            "taskId": record.task_id,
            "taskText": text,
            "isCompleted": False,
            "isReminderSet": False,
            "createdAt": _to_iso(now),
            "updatedAt": _to_iso(now),
        }
        try:
            self._table.put_item(Item=item, ConditionExpression="attribute_not_exists(PK)")
        except ClientError as exc:
            raise TaskStoreError("failed", f"task insert failed: {_error_code(exc)}") from exc
        except BotoCoreError as exc:
            raise TaskStoreError("failed", f"task insert failed: {exc}") from exc
        return record

    def get_task(self, owner_id: str, task_id: str) -> TaskRecord | None:
        try:
            response = self._table.get_item(Key=self._key(owner_id, task_id))
        except ClientError as exc:
            raise TaskStoreError("failed", f"task read failed: {_error_code(exc)}") from exc
        except BotoCoreError as exc:
            raise TaskStoreError("failed", f"task read failed: {exc}") from exc
        item = response.get("Item")
        return self._item_to_record(item) if item else None

    def list_tasks(self, owner_id: str) -> list[TaskRecord]:
        records: list[TaskRecord] = []
        query: dict[str, Any] = {
            "KeyConditionExpression": Key("PK").eq(f"USER#{owner_id}") & Key("SK").begins_with("TASK#"),
        }
        try:
            while True:
                response = self._table.query(**query)
                records.extend(self._item_to_record(item) for item in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                query["ExclusiveStartKey"] = last_key
        except ClientError as exc:
            raise TaskStoreError("failed", f"task list failed: {_error_code(exc)}") from exc
        except BotoCoreError as exc:
            raise TaskStoreError("failed", f"task list failed: {exc}") from exc
        return sorted(records, key=lambda item: item.created_at, reverse=True)

    def update_task(self, owner_id: str, task_id: str, changes: Mapping[str, Any]) -> TaskRecord:
        normalized = _validate_changes(changes)
        set_clauses: list[str] = []
        remove_clauses: list[str] = []
        names: dict[str, str] = {}
        values: dict[str, Any] = {}
        for index, (field, value) in enumerate(sorted(normalized.items())):
            name_ref = f"#f{index}"
            names[name_ref] = _DYNAMO_ATTRIBUTES[field]
            if value is None:
                remove_clauses.append(name_ref)
                continue
            value_ref = f":v{index}"
            values[value_ref] = _to_iso(value) if field in _DATETIME_FIELDS else value
            set_clauses.append(f"{name_ref} = {value_ref}")

        expression = ""
        if set_clauses:
            expression += "SET " + ", ".join(set_clauses)
        if remove_clauses:
            expression += (" " if expression else "") + "REMOVE " + ", ".join(remove_clauses)

        params: dict[str, Any] = {
            "Key": self._key(owner_id, task_id),
            "UpdateExpression": expression,
            "ExpressionAttributeNames": names,
            "ConditionExpression": "attribute_exists(PK)",
            "ReturnValues": "ALL_NEW",
        }
        if values:
            params["ExpressionAttributeValues"] = values
        try:
            response = self._table.update_item(**params)
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                raise TaskStoreError("not_found", f"task not found: {task_id}") from exc
            raise TaskStoreError("failed", f"task update failed: {_error_code(exc)}") from exc
        except BotoCoreError as exc:
            raise TaskStoreError("failed", f"task update failed: {exc}") from exc
        return self._item_to_record(response.get("Attributes", {}))

    def delete_task(self, owner_id: str, task_id: str) -> bool:
        try:
            self._table.delete_item(
                Key=self._key(owner_id, task_id),
                ConditionExpression="attribute_exists(PK)",
            )
        except ClientError as exc:
            if _error_code(exc) == "ConditionalCheckFailedException":
                return False
            raise TaskStoreError("failed", f"task delete failed: {_error_code(exc)}") from exc
        except BotoCoreError as exc:
            raise TaskStoreError("failed", f"task delete failed: {exc}") from exc
        return True


def create_task_store(settings: Settings) -> TaskStore:
    backend = settings.task_store_backend.strip().lower()
    if backend == "postgres":
        return SqlAlchemyTaskStore(settings.database_url)
    if backend == "dynamodb":
        return DynamoDbTaskStore(
            settings.table_name,
            region_name=settings.aws_region,
            timeout_seconds=settings.aws_timeout_seconds,
        )
    if backend == "inmemory":
        return InMemoryTaskStore()
    raise RuntimeError(f"unsupported TASK_STORE_BACKEND: {settings.task_store_backend}")
