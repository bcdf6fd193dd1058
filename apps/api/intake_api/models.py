from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .time_utils import _as_utc


class TaskStatus(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    DONE = "done"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class RequestType(str, Enum):
    COMPLAINT = "complaint"
    PROPOSAL = "proposal"
    APPLICATION = "application"
    APPEAL = "appeal"
    GRATITUDE = "gratitude"
    INFORMATION_REQUEST = "information_request"
    GENERAL = "general"


class RawRecord(BaseModel):
    id: str
    external_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    payload_hash: str
    ingested_at: datetime
    updated_at: datetime
    processed: bool = False
    error: str | None = None
    # Resolved through task_cards.raw_record_id; never stored on the raw row.
    task_card_id: str | None = None


class TaskCard(BaseModel):
    id: str
    raw_record_id: str | None = None
    status: TaskStatus = TaskStatus.NEW
    assigned_to: str | None = None
    department_id: str | None = None
    title: str
    requester_name: str
    contact_info: str
    request_type: str
    description: str
    priority: Priority = Priority.MEDIUM
    summary: str | None = None
    deadline: datetime | None = None
    overdue: bool = False
    started_at: datetime | None = None
    completed_at: datetime | None = None
    confirmed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    classification: str | None = None
    suggestion: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int = 1

    @field_validator("deadline", "started_at", "completed_at", "confirmed_at", "created_at", "updated_at")
    @classmethod
    def timestamps_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None


class HistoryEntry(BaseModel):
    id: str
    card_id: str
    previous_status: TaskStatus | None = None
    new_status: TaskStatus
    actor_id: str | None = None
    comment: str | None = None
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class TaskCardCreate(BaseModel):
    """Fields accepted when a card is created, either by promotion or by manual entry."""

    raw_record_id: str | None = None
    title: str
    requester_name: str = "Не указано"
    contact_info: str = "Не указано"
    request_type: str = RequestType.GENERAL.value
    description: str = ""
    priority: Priority = Priority.MEDIUM
    summary: str | None = None
    deadline: datetime | None = None
    department_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("deadline")
    @classmethod
    def deadline_utc(cls, v: datetime | None) -> datetime | None:
        # Offset-less input is taken as UTC.
        return _as_utc(v) if v is not None else None


# Patch fields that may be cleared with an explicit null.
CLEARABLE_PATCH_FIELDS = frozenset({"summary", "deadline", "department_id", "metadata"})


class TaskCardPatch(BaseModel):
    title: str | None = None
    requester_name: str | None = None
    contact_info: str | None = None
    request_type: str | None = None
    description: str | None = None
    priority: Priority | None = None
    summary: str | None = None
    deadline: datetime | None = None
    department_id: str | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("deadline")
    @classmethod
    def deadline_utc(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v) if v is not None else None


class CardFilters(BaseModel):
    status: TaskStatus | None = None
    assigned_to: str | None = None
    department_id: str | None = None
    overdue: bool | None = None
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)


class RawRecordFilters(BaseModel):
    processed: bool | None = None
    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=100, ge=1, le=1000)


class SyncState(BaseModel):
    name: str
    watermark: datetime | None = None
    last_run_at: datetime | None = None
    last_outcome: dict[str, Any] = Field(default_factory=dict)


def compute_overdue(deadline: datetime | None, status: TaskStatus, now: datetime) -> bool:
    return deadline is not None and deadline < now and status != TaskStatus.DONE
