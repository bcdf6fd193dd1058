from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..models import CardFilters, HistoryEntry, RawRecord, RawRecordFilters, SyncState, TaskCard

# Outcomes of RawRecordStore.upsert.
UPSERT_CREATED = "created"
UPSERT_UPDATED = "updated"
UPSERT_UNCHANGED = "unchanged"

# Columns a card update may touch; anything else is a programming error.
CARD_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "assigned_to",
        "department_id",
        "title",
        "requester_name",
        "contact_info",
        "request_type",
        "description",
        "priority",
        "summary",
        "deadline",
        "overdue",
        "started_at",
        "completed_at",
        "confirmed_at",
        "metadata",
        "classification",
        "suggestion",
    }
)

RAW_MUTABLE_FIELDS = frozenset({"processed", "error"})


def check_fields(changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"unsupported fields: {sorted(unknown)}")


class RawRecordStore(abc.ABC):
    @abc.abstractmethod
    def get(self, record_id: str) -> RawRecord | None:
        pass

    @abc.abstractmethod
    def get_by_external_id(self, external_id: str) -> RawRecord | None:
        pass

    @abc.abstractmethod
    def upsert(self, external_id: str, payload: dict[str, Any], *, now: datetime) -> tuple[RawRecord, str]:
        """
        Insert or refresh the record for `external_id`, atomically.

        A changed payload is stored and the record goes back to `processed=false` so the next
        promotion pass reconciles its card. An identical payload is left alone.
        Returns the stored record and one of `created`, `updated`, `unchanged`.
        """

    @abc.abstractmethod
    def list_unprocessed(self, limit: int) -> list[RawRecord]:
        """Oldest first."""

    @abc.abstractmethod
    def list(self, filters: RawRecordFilters) -> list[RawRecord]:
        pass

    @abc.abstractmethod
    def count(self, filters: RawRecordFilters) -> int:
        pass

    @abc.abstractmethod
    def update(
        self,
        record_id: str,
        changes: dict[str, Any],
        *,
        now: datetime,
        expected_hash: str | None = None,
    ) -> RawRecord:
        """
        Partial update of `processed` / `error`. Raises NotFound.

        With `expected_hash`, nothing is written when the stored payload hash has moved on; the
        current record is returned as is.
        """

    def mark_processed(self, record_id: str, *, now: datetime, payload_hash: str | None = None) -> RawRecord:
        return self.update(record_id, {"processed": True, "error": None}, now=now, expected_hash=payload_hash)

    def set_error(self, record_id: str, error: str, *, now: datetime, payload_hash: str | None = None) -> RawRecord:
        return self.update(record_id, {"processed": False, "error": error}, now=now, expected_hash=payload_hash)


class HistoryStore(abc.ABC):
    @abc.abstractmethod
    def append(self, entry: HistoryEntry) -> HistoryEntry:
        pass

    @abc.abstractmethod
    def list_for_card(self, card_id: str) -> list[HistoryEntry]:
        """Entries in the order they were written."""


class TaskCardStore(abc.ABC):
    @abc.abstractmethod
    def get(self, card_id: str) -> TaskCard | None:
        pass

    @abc.abstractmethod
    def get_by_raw_record_id(self, raw_record_id: str) -> TaskCard | None:
        pass

    @abc.abstractmethod
    def list(self, filters: CardFilters, *, now: datetime) -> list[TaskCard]:
        """`now` resolves the derived `overdue` filter."""

    @abc.abstractmethod
    def count(self, filters: CardFilters, *, now: datetime) -> int:
        pass

    @abc.abstractmethod
    def create(self, card: TaskCard, entry: HistoryEntry) -> TaskCard:
        """
        Persist a new card together with its creation history entry.

        Raises DuplicateCard when `card.raw_record_id` already has a card.
        """

    @abc.abstractmethod
    def update(self, card_id: str, expected_version: int, changes: dict[str, Any], *, now: datetime) -> TaskCard:
        """
        Apply `changes` when the stored version still equals `expected_version`.

        Raises NotFound or ConcurrentModification; the version is bumped on success.
        """

    @abc.abstractmethod
    def transition(
        self,
        card_id: str,
        expected_version: int,
        changes: dict[str, Any],
        entry: HistoryEntry,
    ) -> TaskCard:
        """Like `update`, plus `entry` is appended in the same unit of work."""

    @abc.abstractmethod
    def status_counts(self) -> dict[str, int]:
        pass


class SyncStateStore(abc.ABC):
    @abc.abstractmethod
    def get(self, name: str) -> SyncState | None:
        pass

    @abc.abstractmethod
    def save(self, state: SyncState) -> SyncState:
        pass


@dataclass(frozen=True)
class Storage:
    raw_records: RawRecordStore
    task_cards: TaskCardStore
    history: HistoryStore
    sync_state: SyncStateStore
