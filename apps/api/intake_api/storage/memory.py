from __future__ import annotations

from datetime import datetime
from threading import RLock
from typing import Any
from uuid import uuid4

from ..errors import ConcurrentModification, DuplicateCard, NotFound
from ..hash_utils import stable_hash
from ..models import CardFilters, HistoryEntry, RawRecord, RawRecordFilters, SyncState, TaskCard, compute_overdue
from .base import (
    CARD_MUTABLE_FIELDS,
    RAW_MUTABLE_FIELDS,
    UPSERT_CREATED,
    UPSERT_UNCHANGED,
    UPSERT_UPDATED,
    HistoryStore,
    RawRecordStore,
    Storage,
    SyncStateStore,
    TaskCardStore,
    check_fields,
)


class InMemoryRawRecordStore(RawRecordStore):
    def __init__(self, lock: RLock, cards: "InMemoryTaskCardStore"):
        self._lock = lock
        self._cards = cards
        self._data: dict[str, RawRecord] = {}
        self._by_external_id: dict[str, str] = {}

    def _view(self, record: RawRecord) -> RawRecord:
        card = self._cards.get_by_raw_record_id(record.id)
        return record.model_copy(update={"task_card_id": card.id if card else None}, deep=True)

    def get(self, record_id: str) -> RawRecord | None:
        with self._lock:
            record = self._data.get(record_id)
            return self._view(record) if record else None

    def get_by_external_id(self, external_id: str) -> RawRecord | None:
        with self._lock:
            record_id = self._by_external_id.get(external_id)
            return self.get(record_id) if record_id else None

    def upsert(self, external_id: str, payload: dict[str, Any], *, now: datetime) -> tuple[RawRecord, str]:
        payload_hash = stable_hash(payload)
        with self._lock:
            record_id = self._by_external_id.get(external_id)
            if record_id is None:
                record = RawRecord(
                    id=str(uuid4()),
                    external_id=external_id,
                    payload=payload,
                    payload_hash=payload_hash,
                    ingested_at=now,
                    updated_at=now,
                )
                self._data[record.id] = record
                self._by_external_id[external_id] = record.id
                return self._view(record), UPSERT_CREATED

            current = self._data[record_id]
            if current.payload_hash == payload_hash:
                return self._view(current), UPSERT_UNCHANGED
            updated = current.model_copy(
                update={
                    "payload": payload,
                    "payload_hash": payload_hash,
                    "updated_at": now,
                    "processed": False,
                    "error": None,
                }
            )
            self._data[record_id] = updated
            return self._view(updated), UPSERT_UPDATED

    def list_unprocessed(self, limit: int) -> list[RawRecord]:
        with self._lock:
            pending = [r for r in self._data.values() if not r.processed]
            pending.sort(key=lambda r: r.ingested_at)
            return [self._view(r) for r in pending[:limit]]

    def _filtered(self, filters: RawRecordFilters) -> list[RawRecord]:
        items = list(self._data.values())
        if filters.processed is not None:
            items = [r for r in items if r.processed == filters.processed]
        items.sort(key=lambda r: r.ingested_at, reverse=True)
        return items

    def list(self, filters: RawRecordFilters) -> list[RawRecord]:
        with self._lock:
            items = self._filtered(filters)[filters.offset : filters.offset + filters.limit]
            return [self._view(r) for r in items]

    def count(self, filters: RawRecordFilters) -> int:
        with self._lock:
            return len(self._filtered(filters))

    def update(
        self,
        record_id: str,
        changes: dict[str, Any],
        *,
        now: datetime,
        expected_hash: str | None = None,
    ) -> RawRecord:
        check_fields(changes, RAW_MUTABLE_FIELDS)
        with self._lock:
            current = self._data.get(record_id)
            if current is None:
                raise NotFound("raw_record", record_id)
            if expected_hash is not None and current.payload_hash != expected_hash:
                return self._view(current)
            updated = current.model_copy(update={**changes, "updated_at": now})
            self._data[record_id] = updated
            return self._view(updated)


class InMemoryHistoryStore(HistoryStore):
    def __init__(self, lock: RLock):
        self._lock = lock
        self._entries: dict[str, list[HistoryEntry]] = {}

    def append(self, entry: HistoryEntry) -> HistoryEntry:
        with self._lock:
            self._entries.setdefault(entry.card_id, []).append(entry)
        return entry

    def list_for_card(self, card_id: str) -> list[HistoryEntry]:
        with self._lock:
            return list(self._entries.get(card_id, []))


class InMemoryTaskCardStore(TaskCardStore):
    def __init__(self, lock: RLock, history: InMemoryHistoryStore):
        self._lock = lock
        self._history = history
        self._data: dict[str, TaskCard] = {}
        self._by_raw_record_id: dict[str, str] = {}

    def get(self, card_id: str) -> TaskCard | None:
        with self._lock:
            card = self._data.get(card_id)
            return card.model_copy(deep=True) if card else None

    def get_by_raw_record_id(self, raw_record_id: str) -> TaskCard | None:
        with self._lock:
            card_id = self._by_raw_record_id.get(raw_record_id)
            return self.get(card_id) if card_id else None

    def _filtered(self, filters: CardFilters, now: datetime) -> list[TaskCard]:
        items = list(self._data.values())
        if filters.status is not None:
            items = [c for c in items if c.status == filters.status]
        if filters.assigned_to is not None:
            items = [c for c in items if c.assigned_to == filters.assigned_to]
        if filters.department_id is not None:
            items = [c for c in items if c.department_id == filters.department_id]
        if filters.overdue is not None:
            items = [c for c in items if compute_overdue(c.deadline, c.status, now) == filters.overdue]
        items.sort(key=lambda c: c.created_at, reverse=True)
        return items

    def list(self, filters: CardFilters, *, now: datetime) -> list[TaskCard]:
        with self._lock:
            items = self._filtered(filters, now)[filters.offset : filters.offset + filters.limit]
            return [c.model_copy(deep=True) for c in items]

    def count(self, filters: CardFilters, *, now: datetime) -> int:
        with self._lock:
            return len(self._filtered(filters, now))

    def create(self, card: TaskCard, entry: HistoryEntry) -> TaskCard:
        with self._lock:
            if card.raw_record_id and card.raw_record_id in self._by_raw_record_id:
                raise DuplicateCard(card.raw_record_id)
            self._data[card.id] = card.model_copy(deep=True)
            if card.raw_record_id:
                self._by_raw_record_id[card.raw_record_id] = card.id
            self._history.append(entry)
            return card.model_copy(deep=True)

    def _apply(self, card_id: str, expected_version: int, changes: dict[str, Any], now: datetime) -> TaskCard:
        check_fields(changes, CARD_MUTABLE_FIELDS)
        current = self._data.get(card_id)
        if current is None:
            raise NotFound("task_card", card_id)
        if current.version != expected_version:
            raise ConcurrentModification(
                f"task card {card_id} is at version {current.version}, expected {expected_version}"
            )
        updated = current.model_copy(update={**changes, "updated_at": now, "version": current.version + 1}, deep=True)
        self._data[card_id] = updated
        return updated.model_copy(deep=True)

    def update(self, card_id: str, expected_version: int, changes: dict[str, Any], *, now: datetime) -> TaskCard:
        with self._lock:
            return self._apply(card_id, expected_version, changes, now)

    def transition(
        self,
        card_id: str,
        expected_version: int,
        changes: dict[str, Any],
        entry: HistoryEntry,
    ) -> TaskCard:
        with self._lock:
            card = self._apply(card_id, expected_version, changes, entry.timestamp)
            self._history.append(entry)
            return card

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for card in self._data.values():
                counts[card.status.value] = counts.get(card.status.value, 0) + 1
        return counts


class InMemorySyncStateStore(SyncStateStore):
    def __init__(self, lock: RLock):
        self._lock = lock
        self._data: dict[str, SyncState] = {}

    def get(self, name: str) -> SyncState | None:
        with self._lock:
            state = self._data.get(name)
            return state.model_copy(deep=True) if state else None

    def save(self, state: SyncState) -> SyncState:
        with self._lock:
            self._data[state.name] = state.model_copy(deep=True)
        return state


def create_memory_storage() -> Storage:
    """All four stores behind one lock, so card writes and history appends stay atomic."""
    lock = RLock()
    history = InMemoryHistoryStore(lock)
    cards = InMemoryTaskCardStore(lock, history)
    return Storage(
        raw_records=InMemoryRawRecordStore(lock, cards),
        task_cards=cards,
        history=history,
        sync_state=InMemorySyncStateStore(lock),
    )
