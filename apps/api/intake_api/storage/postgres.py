from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import uuid4

from psycopg import errors as pg_errors

from ..db import _db_execute_returning, _db_fetch_all, _db_fetch_one, _db_transaction
from ..errors import ConcurrentModification, DuplicateCard, NotFound
from ..hash_utils import stable_hash
from ..models import CardFilters, HistoryEntry, RawRecord, RawRecordFilters, SyncState, TaskCard
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


_RAW_COLUMNS = """
  r.id, r.external_id, r.payload_jsonb, r.payload_hash, r.ingested_at, r.updated_at, r.processed, r.error,
  (SELECT c.id FROM task_cards c WHERE c.raw_record_id = r.id) AS task_card_id
"""

_CARD_COLUMNS = """
  id, raw_record_id, status, assigned_to, department_id, title, requester_name, contact_info,
  request_type, description, priority, summary, deadline, overdue, started_at, completed_at,
  confirmed_at, metadata_jsonb, classification, suggestion, created_at, updated_at, version
"""

_HISTORY_COLUMNS = "id, card_id, previous_status, new_status, actor_id, comment, timestamp, metadata_jsonb"

# JSON-typed columns need an explicit cast and a serialized value.
_JSONB_COLUMNS = {"metadata": "metadata_jsonb"}


def _json(value: Any) -> str:
    return json.dumps(value or {}, ensure_ascii=False, default=str)


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _row_to_raw(row: dict[str, Any]) -> RawRecord:
    return RawRecord(
        id=str(row["id"]),
        external_id=row["external_id"],
        payload=row.get("payload_jsonb") or {},
        payload_hash=row["payload_hash"],
        ingested_at=row["ingested_at"],
        updated_at=row["updated_at"],
        processed=bool(row["processed"]),
        error=row.get("error"),
        task_card_id=str(row["task_card_id"]) if row.get("task_card_id") else None,
    )


def _row_to_card(row: dict[str, Any]) -> TaskCard:
    return TaskCard(
        id=str(row["id"]),
        raw_record_id=str(row["raw_record_id"]) if row.get("raw_record_id") else None,
        status=row["status"],
        assigned_to=row.get("assigned_to"),
        department_id=row.get("department_id"),
        title=row["title"],
        requester_name=row["requester_name"],
        contact_info=row["contact_info"],
        request_type=row["request_type"],
        description=row["description"],
        priority=row["priority"],
        summary=row.get("summary"),
        deadline=row.get("deadline"),
        overdue=bool(row.get("overdue")),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        confirmed_at=row.get("confirmed_at"),
        metadata=row.get("metadata_jsonb") or {},
        classification=row.get("classification"),
        suggestion=row.get("suggestion"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        version=int(row["version"]),
    )


def _row_to_history(row: dict[str, Any]) -> HistoryEntry:
    return HistoryEntry(
        id=str(row["id"]),
        card_id=str(row["card_id"]),
        previous_status=row.get("previous_status"),
        new_status=row["new_status"],
        actor_id=row.get("actor_id"),
        comment=row.get("comment"),
        timestamp=row["timestamp"],
        metadata=row.get("metadata_jsonb") or {},
    )


def _set_clause(changes: dict[str, Any]) -> tuple[str, list[Any]]:
    parts: list[str] = []
    params: list[Any] = []
    for field, value in changes.items():
        column = _JSONB_COLUMNS.get(field)
        if column:
            parts.append(f"{column} = %s::jsonb")
            params.append(_json(value))
        else:
            parts.append(f"{field} = %s")
            params.append(_enum_value(value))
    return ", ".join(parts), params


class PostgresRawRecordStore(RawRecordStore):
    def get(self, record_id: str) -> RawRecord | None:
        row = _db_fetch_one(f"SELECT {_RAW_COLUMNS} FROM raw_records r WHERE r.id = %s::uuid", (record_id,))
        return _row_to_raw(row) if row else None

    def get_by_external_id(self, external_id: str) -> RawRecord | None:
        row = _db_fetch_one(f"SELECT {_RAW_COLUMNS} FROM raw_records r WHERE r.external_id = %s", (external_id,))
        return _row_to_raw(row) if row else None

    def upsert(self, external_id: str, payload: dict[str, Any], *, now: datetime) -> tuple[RawRecord, str]:
        payload_hash = stable_hash(payload)
        # `xmax = 0` holds only for freshly inserted rows. When the hash matches, the guarded
        # DO UPDATE touches nothing and RETURNING yields no row.
        row = _db_execute_returning(
            """
            INSERT INTO raw_records (id, external_id, payload_jsonb, payload_hash, ingested_at, updated_at, processed, error)
            VALUES (%s, %s, %s::jsonb, %s, %s, %s, false, NULL)
            ON CONFLICT (external_id) DO UPDATE SET
              payload_jsonb = EXCLUDED.payload_jsonb,
              payload_hash = EXCLUDED.payload_hash,
              updated_at = EXCLUDED.updated_at,
              processed = false,
              error = NULL
            WHERE raw_records.payload_hash IS DISTINCT FROM EXCLUDED.payload_hash
            RETURNING id, (xmax = 0) AS inserted
            """,
            (str(uuid4()), external_id, _json(payload), payload_hash, now, now),
        )
        if row is None:
            outcome = UPSERT_UNCHANGED
        else:
            outcome = UPSERT_CREATED if row.get("inserted") else UPSERT_UPDATED
        record = self.get_by_external_id(external_id)
        if record is None:
            raise NotFound("raw_record", external_id)
        return record, outcome

    def list_unprocessed(self, limit: int) -> list[RawRecord]:
        rows = _db_fetch_all(
            f"""
            SELECT {_RAW_COLUMNS}
            FROM raw_records r
            WHERE r.processed = false
            ORDER BY r.ingested_at ASC
            LIMIT %s
            """,
            (limit,),
        )
        return [_row_to_raw(r) for r in rows]

    def _where(self, filters: RawRecordFilters) -> tuple[str, list[Any]]:
        if filters.processed is None:
            return "", []
        return "WHERE r.processed = %s", [filters.processed]

    def list(self, filters: RawRecordFilters) -> list[RawRecord]:
        where, params = self._where(filters)
        rows = _db_fetch_all(
            f"""
            SELECT {_RAW_COLUMNS}
            FROM raw_records r
            {where}
            ORDER BY r.ingested_at DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params + [filters.limit, filters.offset]),
        )
        return [_row_to_raw(r) for r in rows]

    def count(self, filters: RawRecordFilters) -> int:
        where, params = self._where(filters)
        row = _db_fetch_one(f"SELECT count(*) AS n FROM raw_records r {where}", tuple(params))
        return int(row["n"]) if row else 0

    def update(
        self,
        record_id: str,
        changes: dict[str, Any],
        *,
        now: datetime,
        expected_hash: str | None = None,
    ) -> RawRecord:
        check_fields(changes, RAW_MUTABLE_FIELDS)
        clause, params = _set_clause({**changes, "updated_at": now})
        sql = f"UPDATE raw_records SET {clause} WHERE id = %s::uuid"
        params.append(record_id)
        if expected_hash is not None:
            sql += " AND payload_hash = %s"
            params.append(expected_hash)
        # A stale hash matches no row; the current record is returned unchanged.
        _db_execute_returning(sql + " RETURNING id", tuple(params))
        record = self.get(record_id)
        if record is None:
            raise NotFound("raw_record", record_id)
        return record


def _insert_history(cur: Any, entry: HistoryEntry) -> None:
    cur.execute(
        f"""
        INSERT INTO task_card_history ({_HISTORY_COLUMNS})
        VALUES (%s, %s::uuid, %s, %s, %s, %s, %s, %s::jsonb)
        """,
        (
            entry.id,
            entry.card_id,
            _enum_value(entry.previous_status),
            _enum_value(entry.new_status),
            entry.actor_id,
            entry.comment,
            entry.timestamp,
            _json(entry.metadata),
        ),
    )


class PostgresHistoryStore(HistoryStore):
    def append(self, entry: HistoryEntry) -> HistoryEntry:
        with _db_transaction() as cur:
            _insert_history(cur, entry)
        return entry

    def list_for_card(self, card_id: str) -> list[HistoryEntry]:
        rows = _db_fetch_all(
            f"""
            SELECT {_HISTORY_COLUMNS}
            FROM task_card_history
            WHERE card_id = %s::uuid
            ORDER BY timestamp ASC, seq ASC
            """,
            (card_id,),
        )
        return [_row_to_history(r) for r in rows]


class PostgresTaskCardStore(TaskCardStore):
    def get(self, card_id: str) -> TaskCard | None:
        row = _db_fetch_one(f"SELECT {_CARD_COLUMNS} FROM task_cards WHERE id = %s::uuid", (card_id,))
        return _row_to_card(row) if row else None

    def get_by_raw_record_id(self, raw_record_id: str) -> TaskCard | None:
        row = _db_fetch_one(
            f"SELECT {_CARD_COLUMNS} FROM task_cards WHERE raw_record_id = %s::uuid",
            (raw_record_id,),
        )
        return _row_to_card(row) if row else None

    def _where(self, filters: CardFilters, now: datetime) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.status is not None:
            clauses.append("status = %s")
            params.append(filters.status.value)
        if filters.assigned_to is not None:
            clauses.append("assigned_to = %s")
            params.append(filters.assigned_to)
        if filters.department_id is not None:
            clauses.append("department_id = %s")
            params.append(filters.department_id)
        if filters.overdue is not None:
            overdue_expr = "(deadline IS NOT NULL AND deadline < %s AND status <> 'done')"
            clauses.append(overdue_expr if filters.overdue else f"NOT {overdue_expr}")
            params.append(now)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        return where, params

    def list(self, filters: CardFilters, *, now: datetime) -> list[TaskCard]:
        where, params = self._where(filters, now)
        rows = _db_fetch_all(
            f"""
            SELECT {_CARD_COLUMNS}
            FROM task_cards
            {where}
            ORDER BY created_at DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params + [filters.limit, filters.offset]),
        )
        return [_row_to_card(r) for r in rows]

    def count(self, filters: CardFilters, *, now: datetime) -> int:
        where, params = self._where(filters, now)
        row = _db_fetch_one(f"SELECT count(*) AS n FROM task_cards {where}", tuple(params))
        return int(row["n"]) if row else 0

    def create(self, card: TaskCard, entry: HistoryEntry) -> TaskCard:
        try:
            with _db_transaction() as cur:
                cur.execute(
                    f"""
                    INSERT INTO task_cards ({_CARD_COLUMNS})
                    VALUES (
                      %s::uuid, %s::uuid, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                      %s, %s::jsonb, %s, %s, %s, %s, %s
                    )
                    RETURNING {_CARD_COLUMNS}
                    """,
                    (
                        card.id,
                        card.raw_record_id,
                        card.status.value,
                        card.assigned_to,
                        card.department_id,
                        card.title,
                        card.requester_name,
                        card.contact_info,
                        card.request_type,
                        card.description,
                        card.priority.value,
                        card.summary,
                        card.deadline,
                        card.overdue,
                        card.started_at,
                        card.completed_at,
                        card.confirmed_at,
                        _json(card.metadata),
                        card.classification,
                        card.suggestion,
                        card.created_at,
                        card.updated_at,
                        card.version,
                    ),
                )
                row = cur.fetchone()
                _insert_history(cur, entry)
        except pg_errors.UniqueViolation as exc:
            raise DuplicateCard(card.raw_record_id or card.id) from exc
        return _row_to_card(row)

    def _apply(self, cur: Any, card_id: str, expected_version: int, changes: dict[str, Any], now: datetime) -> TaskCard:
        check_fields(changes, CARD_MUTABLE_FIELDS)
        clause, params = _set_clause({**changes, "updated_at": now})
        cur.execute(
            f"""
            UPDATE task_cards
            SET {clause}, version = version + 1
            WHERE id = %s::uuid AND version = %s
            RETURNING {_CARD_COLUMNS}
            """,
            tuple(params + [card_id, expected_version]),
        )
        row = cur.fetchone()
        if row is None:
            cur.execute("SELECT version FROM task_cards WHERE id = %s::uuid", (card_id,))
            existing = cur.fetchone()
            if existing is None:
                raise NotFound("task_card", card_id)
            raise ConcurrentModification(
                f"task card {card_id} is at version {existing['version']}, expected {expected_version}"
            )
        return _row_to_card(row)

    def update(self, card_id: str, expected_version: int, changes: dict[str, Any], *, now: datetime) -> TaskCard:
        with _db_transaction() as cur:
            return self._apply(cur, card_id, expected_version, changes, now)

    def transition(
        self,
        card_id: str,
        expected_version: int,
        changes: dict[str, Any],
        entry: HistoryEntry,
    ) -> TaskCard:
        with _db_transaction() as cur:
            card = self._apply(cur, card_id, expected_version, changes, entry.timestamp)
            _insert_history(cur, entry)
        return card

    def status_counts(self) -> dict[str, int]:
        rows = _db_fetch_all("SELECT status, count(*) AS n FROM task_cards GROUP BY status")
        return {r["status"]: int(r["n"]) for r in rows}


class PostgresSyncStateStore(SyncStateStore):
    def get(self, name: str) -> SyncState | None:
        row = _db_fetch_one(
            "SELECT name, watermark, last_run_at, last_outcome_jsonb FROM sync_state WHERE name = %s",
            (name,),
        )
        if not row:
            return None
        return SyncState(
            name=row["name"],
            watermark=row.get("watermark"),
            last_run_at=row.get("last_run_at"),
            last_outcome=row.get("last_outcome_jsonb") or {},
        )

    def save(self, state: SyncState) -> SyncState:
        _db_execute_returning(
            """
            INSERT INTO sync_state (name, watermark, last_run_at, last_outcome_jsonb)
            VALUES (%s, %s, %s, %s::jsonb)
            ON CONFLICT (name) DO UPDATE SET
              watermark = EXCLUDED.watermark,
              last_run_at = EXCLUDED.last_run_at,
              last_outcome_jsonb = EXCLUDED.last_outcome_jsonb
            RETURNING name
            """,
            (state.name, state.watermark, state.last_run_at, _json(state.last_outcome)),
        )
        return state


def create_postgres_storage() -> Storage:
    return Storage(
        raw_records=PostgresRawRecordStore(),
        task_cards=PostgresTaskCardStore(),
        history=PostgresHistoryStore(),
        sync_state=PostgresSyncStateStore(),
    )
