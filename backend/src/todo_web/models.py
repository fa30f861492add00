from __future__ import annotations

from datetime import datetime

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

from .reminders import ReminderState, TaskDeletionStatus
from .task_store import TaskRecord


class TaskCreateRequest(BaseModel):
    text: str = Field(
        min_length=1,
        max_length=2000,
        validation_alias=AliasChoices("text", "taskText"),
    )

    @field_validator("text")
    @classmethod
    def _strip_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("text cannot be blank")
        return normalized


class TaskUpdateRequest(BaseModel):
    text: str | None = Field(
        default=None,
        max_length=2000,
        validation_alias=AliasChoices("text", "taskText"),
    )
    is_completed: bool | None = Field(
        default=None,
        validation_alias=AliasChoices("is_completed", "isCompleted"),
    )

    @model_validator(mode="after")
    def _require_field(self) -> TaskUpdateRequest:
        if self.text is None and self.is_completed is None:
            raise ValueError("No fields to update (text or is_completed)")
        return self


class TaskResponse(BaseModel):
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

    @classmethod
    def from_record(cls, record: TaskRecord) -> TaskResponse:
        return cls(
            task_id=record.task_id,
            text=record.text,
            is_completed=record.is_completed,
            created_at=record.created_at,
            updated_at=record.updated_at,
            reminder_time=record.reminder_time,
            reminder_recipient=record.reminder_recipient,
            reminder_note=record.reminder_note,
            reminder_active=record.reminder_active,
            schedule_handle=record.schedule_handle,
        )


class TaskDeleteResponse(BaseModel):
    task_id: str
    status: TaskDeletionStatus
    message: str


class ReminderSetRequest(BaseModel):
    # Kept loose so the coordinator reports format and lead-time problems itself.
    reminder_time: str | None = Field(
        default=None,
        validation_alias=AliasChoices("reminder_time", "reminderTime"),
    )
    recipient: str | None = Field(
        default=None,
        max_length=320,
        validation_alias=AliasChoices("recipient", "reminder_email", "reminderEmail"),
    )
    note: str | None = Field(
        default=None,
        max_length=2000,
        validation_alias=AliasChoices("note", "reminder_message", "reminderMessage"),
    )


class ReminderResponse(BaseModel):
    task_id: str
    reminder_time: datetime
    recipient: str
    note: str
    schedule_handle: str
    reminder_active: bool

    @classmethod
    def from_state(cls, task_id: str, state: ReminderState) -> ReminderResponse:
        return cls(
            task_id=task_id,
            reminder_time=state.reminder_time,
            recipient=state.recipient,
            note=state.note,
            schedule_handle=state.schedule_handle,
            reminder_active=state.reminder_active,
        )


class ReminderClearResponse(BaseModel):
    task_id: str
    cleared: bool = True


class ReminderFireResponse(BaseModel):
    published_at: datetime
    message_id: str | None = None


class DueRunResponse(BaseModel):
    fired_count: int
    failed_count: int
    fired: list[str]
    failed: list[str]
