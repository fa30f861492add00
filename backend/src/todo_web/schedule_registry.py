from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Literal, NoReturn, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import Boolean, DateTime, String, Text, create_engine, delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .config import Settings

logger = logging.getLogger(__name__)

RegistryErrorKind = Literal["not_found", "conflict", "failed"]

_AT_EXPRESSION_FORMAT = "%Y-%m-%dT%H:%M:%S"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def truncate_to_second(value: datetime) -> datetime:
    return _coerce_utc(value).replace(microsecond=0)


def at_expression(fire_at: datetime) -> str:
    return f"at({truncate_to_second(fire_at).strftime(_AT_EXPRESSION_FORMAT)})"


def parse_at_expression(expression: str) -> datetime:
    raw = expression.strip()
    if not (raw.startswith("at(") and raw.endswith(")")):
        raise ValueError(f"not a one-time schedule expression: {expression}")
    return datetime.strptime(raw[3:-1], _AT_EXPRESSION_FORMAT).replace(tzinfo=timezone.utc)


class ScheduleRegistryError(RuntimeError):
    """Raised when the schedule registry rejects or fails an operation."""

    def __init__(self, kind: RegistryErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind: RegistryErrorKind = kind
        self.message = message


@dataclass(frozen=True)
class ScheduleEntry:
    name: str
    fire_at: datetime
    target: str
    payload: dict[str, str] = field(default_factory=dict)
    delete_after_fire: bool = True


class ScheduleRegistry(Protocol):
    def get_entry(self, name: str) -> ScheduleEntry | None: ...

    def create_entry(self, entry: ScheduleEntry) -> None: ...

    def update_entry(self, entry: ScheduleEntry) -> None: ...

    def delete_entry(self, name: str) -> bool: ...


class LocalScheduleRegistry(ScheduleRegistry, Protocol):
    """Registries that hold entries in-process and must be fired by this service."""

    def reset(self) -> None: ...

    def pop_due_entries(self, now: datetime) -> list[ScheduleEntry]: ...


class InMemoryScheduleRegistry:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: dict[str, ScheduleEntry] = {}

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def list_entries(self) -> list[ScheduleEntry]:
        with self._lock:
            return sorted(self._entries.values(), key=lambda item: item.fire_at)

    def get_entry(self, name: str) -> ScheduleEntry | None:
        with self._lock:
            return self._entries.get(name)

    def create_entry(self, entry: ScheduleEntry) -> None:
        with self._lock:
            if entry.name in self._entries:
                raise ScheduleRegistryError("conflict", f"schedule already exists: {entry.name}")
            self._entries[entry.name] = entry

    def update_entry(self, entry: ScheduleEntry) -> None:
        with self._lock:
            if entry.name not in self._entries:
                raise ScheduleRegistryError("not_found", f"schedule not found: {entry.name}")
            self._entries[entry.name] = entry

    def delete_entry(self, name: str) -> bool:
        with self._lock:
            return self._entries.pop(name, None) is not None

    def pop_due_entries(self, now: datetime) -> list[ScheduleEntry]:
        reference = _coerce_utc(now)
        with self._lock:
            due = sorted(
                (entry for entry in self._entries.values() if entry.fire_at <= reference),
                key=lambda item: item.fire_at,
            )
            for entry in due:
                if entry.delete_after_fire:
                    del self._entries[entry.name]
            return due


class ScheduleRegistryBase(DeclarativeBase):
    pass


class _ScheduleEntryRow(ScheduleRegistryBase):
    __tablename__ = "schedule_entries"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    fire_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    target: Mapped[str] = mapped_column(String(512), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    delete_after_fire: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _row_to_entry(row: _ScheduleEntryRow) -> ScheduleEntry:
    return ScheduleEntry(
        name=row.name,
        fire_at=_coerce_utc(row.fire_at),
        target=row.target,
        payload={str(k): str(v) for k, v in json.loads(row.payload_json or "{}").items()},
        delete_after_fire=bool(row.delete_after_fire),
    )


class SqlAlchemyScheduleRegistry:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for SCHEDULE_REGISTRY_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ScheduleRegistryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ScheduleEntryRow))

    def get_entry(self, name: str) -> ScheduleEntry | None:
        try:
            with self._session() as session:
                row = session.get(_ScheduleEntryRow, name)
                return _row_to_entry(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise ScheduleRegistryError("failed", f"schedule read failed: {exc}") from exc

    def create_entry(self, entry: ScheduleEntry) -> None:
        now = _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    session.add(
                        _ScheduleEntryRow(
                            name=entry.name,
                            fire_at=truncate_to_second(entry.fire_at),
                            target=entry.target,
                            payload_json=json.dumps(entry.payload, sort_keys=True),
                            delete_after_fire=entry.delete_after_fire,
                            created_at=now,
                            updated_at=now,
                        )
                    )
        except IntegrityError as exc:
            raise ScheduleRegistryError("conflict", f"schedule already exists: {entry.name}") from exc
        except SQLAlchemyError as exc:
            raise ScheduleRegistryError("failed", f"schedule create failed: {exc}") from exc

    def update_entry(self, entry: ScheduleEntry) -> None:
        try:
            with self._session() as session:
                with session.begin():
                    row = session.get(_ScheduleEntryRow, entry.name)
                    if row is None:
                        raise ScheduleRegistryError("not_found", f"schedule not found: {entry.name}")
                    row.fire_at = truncate_to_second(entry.fire_at)
                    row.target = entry.target
                    row.payload_json = json.dumps(entry.payload, sort_keys=True)
                    row.delete_after_fire = entry.delete_after_fire
                    row.updated_at = _now_utc()
        except SQLAlchemyError as exc:
            raise ScheduleRegistryError("failed", f"schedule update failed: {exc}") from exc

    def delete_entry(self, name: str) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    result = session.execute(delete(_ScheduleEntryRow).where(_ScheduleEntryRow.name == name))
                    return result.rowcount > 0
        except SQLAlchemyError as exc:
            raise ScheduleRegistryError("failed", f"schedule delete failed: {exc}") from exc

    def pop_due_entries(self, now: datetime) -> list[ScheduleEntry]:
        reference = _coerce_utc(now)
        try:
            with self._session() as session:
                with session.begin():
                    rows = session.execute(
                        select(_ScheduleEntryRow)
                        .where(_ScheduleEntryRow.fire_at <= reference)
                        .order_by(_ScheduleEntryRow.fire_at)
                        .with_for_update(skip_locked=True)
                    ).scalars().all()
                    entries = [_row_to_entry(row) for row in rows]
                    for row in rows:
                        if row.delete_after_fire:
                            session.delete(row)
        except SQLAlchemyError as exc:
            raise ScheduleRegistryError("failed", f"schedule pop failed: {exc}") from exc
        return entries


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


class EventBridgeScheduleRegistry:
    """Schedule registry backed by Amazon EventBridge Scheduler one-time schedules."""

    def __init__(
        self,
        *,
        role_arn: str,
        group_name: str = "default",
        region_name: str | None = None,
        timeout_seconds: int = 10,
        client: Any | None = None,
    ) -> None:
        if not role_arn.strip():
            raise RuntimeError("SCHEDULER_ROLE_ARN is required for SCHEDULE_REGISTRY_BACKEND=eventbridge")
        self._role_arn = role_arn.strip()
        self._group_name = group_name or "default"
        self._client = client or boto3.client(
            "scheduler",
            region_name=region_name or None,
            config=Config(connect_timeout=timeout_seconds, read_timeout=timeout_seconds),
        )

    def _request(self, entry: ScheduleEntry) -> dict[str, Any]:
        return {
            "Name": entry.name,
            "GroupName": self._group_name,
            "ScheduleExpression": at_expression(entry.fire_at),
            "ScheduleExpressionTimezone": "UTC",
            "Target": {
                "Arn": entry.target,
                "RoleArn": self._role_arn,
                "Input": json.dumps(entry.payload),
            },
            "FlexibleTimeWindow": {"Mode": "OFF"},
            "ActionAfterCompletion": "DELETE" if entry.delete_after_fire else "NONE",
        }

    def _raise(self, exc: ClientError | BotoCoreError, action: str, name: str) -> NoReturn:
        if isinstance(exc, ClientError):
            code = _error_code(exc)
            if code == "ResourceNotFoundException":
                raise ScheduleRegistryError("not_found", f"schedule not found: {name}") from exc
            if code == "ConflictException":
                raise ScheduleRegistryError("conflict", f"schedule conflict on {action}: {name}") from exc
            raise ScheduleRegistryError("failed", f"schedule {action} failed for {name}: {code}") from exc
        raise ScheduleRegistryError("failed", f"schedule {action} failed for {name}: {exc}") from exc

    def get_entry(self, name: str) -> ScheduleEntry | None:
        try:
            response = self._client.get_schedule(Name=name, GroupName=self._group_name)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return None
            self._raise(exc, "get", name)
        except BotoCoreError as exc:
            self._raise(exc, "get", name)
        target = response.get("Target", {})
        raw_input = target.get("Input") or "{}"
        try:
            payload = {str(k): str(v) for k, v in json.loads(raw_input).items()}
        except (ValueError, AttributeError):
            logger.warning("schedule %s carries a non-JSON target input", name)
            payload = {}
        return ScheduleEntry(
            name=response.get("Name", name),
            fire_at=parse_at_expression(response.get("ScheduleExpression", "")),
            target=target.get("Arn", ""),
            payload=payload,
            delete_after_fire=response.get("ActionAfterCompletion", "NONE") == "DELETE",
        )

    def create_entry(self, entry: ScheduleEntry) -> None:
        try:
            self._client.create_schedule(**self._request(entry))
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "create", entry.name)

    def update_entry(self, entry: ScheduleEntry) -> None:
        try:
            self._client.update_schedule(**self._request(entry))
        except (ClientError, BotoCoreError) as exc:
            self._raise(exc, "update", entry.name)

    def delete_entry(self, name: str) -> bool:
        try:
            self._client.delete_schedule(Name=name, GroupName=self._group_name)
        except ClientError as exc:
            if _error_code(exc) == "ResourceNotFoundException":
                return False
            self._raise(exc, "delete", name)
        except BotoCoreError as exc:
            self._raise(exc, "delete", name)
        return True


def create_schedule_registry(settings: Settings) -> ScheduleRegistry:
    backend = settings.schedule_registry_backend.strip().lower()
    if backend == "postgres":
        return SqlAlchemyScheduleRegistry(settings.database_url)
    if backend == "eventbridge":
        return EventBridgeScheduleRegistry(
            role_arn=settings.scheduler_role_arn,
            group_name=settings.schedule_group_name,
            region_name=settings.aws_region,
            timeout_seconds=settings.aws_timeout_seconds,
        )
    if backend == "inmemory":
        return InMemoryScheduleRegistry()
    raise RuntimeError(f"unsupported SCHEDULE_REGISTRY_BACKEND: {settings.schedule_registry_backend}")
