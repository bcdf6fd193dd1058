from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from ..errors import DuplicateCard, InvalidTransition, MappingFailure, NotFound
from ..ingestion.mapper import MappedRecord, map_external_record
from ..models import (
    CLEARABLE_PATCH_FIELDS,
    CardFilters,
    HistoryEntry,
    RawRecord,
    TaskCard,
    TaskCardCreate,
    TaskCardPatch,
    TaskStatus,
    compute_overdue,
)
from ..observability.sinks import emit
from ..observability.tracing import trace_span
from ..providers.base import ClassificationProvider, ObservabilitySink
from ..storage.base import Storage
from ..time_utils import _utc_now
from .state_machine import catch_up_changes, coerce_status, transition_changes, validate_transition


logger = logging.getLogger(__name__)

CREATED_COMMENT = "card created"

# Card fields refreshed from the upstream payload on every re-promotion.
_RECONCILED_FIELDS = (
    "title",
    "description",
    "requester_name",
    "contact_info",
    "request_type",
    "priority",
    "deadline",
    "summary",
)

PROMOTION_CREATED = "created"
PROMOTION_UPDATED = "updated"


class PromotionFailure(BaseModel):
    raw_record_id: str
    external_id: str
    error: str


class PromotionReport(BaseModel):
    total: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    interrupted: bool = False
    failures: list[PromotionFailure] = Field(default_factory=list)


class LifecycleEngine:
    """
    Owns every write to task cards: promotion from raw records, manual creation, status
    transitions, assignment and field edits. Each status change goes through the card store's
    `transition`, so the card row and its history entry are written together.
    """

    def __init__(
        self,
        storage: Storage,
        *,
        sink: ObservabilitySink | None = None,
        classifier: ClassificationProvider | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._storage = storage
        self._sink = sink
        self._classifier = classifier
        self._clock = clock

    # Reads

    def _with_overdue(self, card: TaskCard, now: datetime) -> TaskCard:
        overdue = compute_overdue(card.deadline, card.status, now)
        if overdue == card.overdue:
            return card
        return card.model_copy(update={"overdue": overdue})

    def _load(self, card_id: str) -> TaskCard:
        card = self._storage.task_cards.get(card_id)
        if card is None:
            raise NotFound("task_card", card_id)
        return card

    def get_card(self, card_id: str) -> TaskCard:
        return self._with_overdue(self._load(card_id), self._clock())

    def list_cards(self, filters: CardFilters) -> list[TaskCard]:
        now = self._clock()
        return [self._with_overdue(c, now) for c in self._storage.task_cards.list(filters, now=now)]

    def count_cards(self, filters: CardFilters) -> int:
        return self._storage.task_cards.count(filters, now=self._clock())

    def get_history(self, card_id: str) -> list[HistoryEntry]:
        self._load(card_id)
        return self._storage.history.list_for_card(card_id)

    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        counts.update(self._storage.task_cards.status_counts())
        return counts

    # Writes

    def _entry(
        self,
        card_id: str,
        previous: TaskStatus | None,
        new: TaskStatus,
        *,
        actor_id: str | None,
        comment: str | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> HistoryEntry:
        return HistoryEntry(
            id=str(uuid4()),
            card_id=card_id,
            previous_status=previous,
            new_status=new,
            actor_id=actor_id,
            comment=comment,
            timestamp=now,
            metadata=metadata or {},
        )

    def _apply_transition(
        self,
        card: TaskCard,
        changes: dict[str, Any],
        *,
        actor_id: str | None,
        comment: str | None,
        now: datetime,
        metadata: dict[str, Any] | None = None,
    ) -> TaskCard:
        new_status: TaskStatus = changes["status"]
        deadline = changes.get("deadline", card.deadline)
        changes = {**changes, "overdue": compute_overdue(deadline, new_status, now)}
        entry = self._entry(
            card.id, card.status, new_status, actor_id=actor_id, comment=comment, now=now, metadata=metadata
        )
        updated = self._storage.task_cards.transition(card.id, card.version, changes, entry)
        emit(
            self._sink,
            "task_card.status_changed",
            card_id=card.id,
            raw_record_id=card.raw_record_id,
            previous_status=card.status.value,
            new_status=new_status.value,
            actor_id=actor_id,
            comment=comment,
        )
        return updated

    def _insert(self, draft: TaskCardCreate, *, actor_id: str | None, now: datetime) -> TaskCard:
        card = TaskCard(
            id=str(uuid4()),
            status=TaskStatus.NEW,
            overdue=compute_overdue(draft.deadline, TaskStatus.NEW, now),
            created_at=now,
            updated_at=now,
            **draft.model_dump(),
        )
        entry = self._entry(card.id, None, TaskStatus.NEW, actor_id=actor_id, comment=CREATED_COMMENT, now=now)
        created = self._storage.task_cards.create(card, entry)
        emit(
            self._sink,
            "task_card.created",
            card_id=created.id,
            raw_record_id=created.raw_record_id,
            actor_id=actor_id,
        )
        return created

    def create_card(self, draft: TaskCardCreate, *, actor_id: str | None = None) -> TaskCard:
        """Manual entry. Raises DuplicateCard when the raw record already has a card."""
        now = self._clock()
        card = self._insert(draft, actor_id=actor_id, now=now)
        card = self._classify(card)
        return self._with_overdue(card, now)

    def update_status(
        self,
        card_id: str,
        new_status: TaskStatus | str,
        *,
        actor_id: str | None = None,
        comment: str | None = None,
    ) -> TaskCard:
        requested = coerce_status(new_status)
        card = self._load(card_id)
        validate_transition(card.status, requested)
        now = self._clock()
        updated = self._apply_transition(
            card, transition_changes(card, requested, now), actor_id=actor_id, comment=comment, now=now
        )
        return self._with_overdue(updated, now)

    def confirm(self, card_id: str, *, actor_id: str | None = None, comment: str | None = None) -> TaskCard:
        card = self._load(card_id)
        if card.status != TaskStatus.AWAITING_CONFIRMATION:
            raise InvalidTransition(
                f"only cards awaiting confirmation can be confirmed (card is {card.status.value})",
                current=card.status.value,
                requested=TaskStatus.DONE.value,
            )
        return self.update_status(card_id, TaskStatus.DONE, actor_id=actor_id, comment=comment)

    def assign(self, card_id: str, assignee: str, *, actor_id: str | None = None) -> TaskCard:
        """
        Set `assigned_to`. A card still in `new` moves to `in_progress` in the same write with
        one history entry; otherwise only the assignee changes and no history is written.
        """
        assignee = (assignee or "").strip()
        if not assignee:
            raise ValueError("assignee must not be empty")
        card = self._load(card_id)
        now = self._clock()
        if card.status == TaskStatus.NEW:
            changes = transition_changes(card, TaskStatus.IN_PROGRESS, now)
            changes["assigned_to"] = assignee
            updated = self._apply_transition(
                card,
                changes,
                actor_id=actor_id,
                comment=f"assigned to {assignee}",
                now=now,
                metadata={"assigned_to": assignee},
            )
        else:
            updated = self._storage.task_cards.update(card.id, card.version, {"assigned_to": assignee}, now=now)
        emit(
            self._sink,
            "task_card.assigned",
            card_id=card.id,
            assigned_to=assignee,
            previous_assignee=card.assigned_to,
            actor_id=actor_id,
        )
        return self._with_overdue(updated, now)

    def update_fields(self, card_id: str, patch: TaskCardPatch, *, actor_id: str | None = None) -> TaskCard:
        changes = patch.model_dump(exclude_unset=True)
        cleared = sorted(k for k, v in changes.items() if v is None and k not in CLEARABLE_PATCH_FIELDS)
        if cleared:
            raise ValueError(f"fields cannot be cleared: {', '.join(cleared)}")
        if "metadata" in changes and changes["metadata"] is None:
            changes["metadata"] = {}
        card = self._load(card_id)
        now = self._clock()
        if not changes:
            return self._with_overdue(card, now)
        if "deadline" in changes:
            changes["overdue"] = compute_overdue(changes["deadline"], card.status, now)
        updated = self._storage.task_cards.update(card.id, card.version, changes, now=now)
        emit(self._sink, "task_card.updated", card_id=card.id, fields=sorted(changes), actor_id=actor_id)
        return self._with_overdue(updated, now)

    def _classify(self, card: TaskCard) -> TaskCard:
        if self._classifier is None:
            return card
        try:
            result = self._classifier.classify(card.title, card.description)
            if result.classification is None and result.suggestion is None:
                return card
            return self._storage.task_cards.update(
                card.id,
                card.version,
                {"classification": result.classification, "suggestion": result.suggestion},
                now=self._clock(),
            )
        except Exception:  # noqa: BLE001
            logger.warning("Classification failed for task card %s; continuing without it.", card.id, exc_info=True)
            return card

    # Promotion

    def _draft_from(self, record: RawRecord, mapped: MappedRecord) -> TaskCardCreate:
        return TaskCardCreate(
            raw_record_id=record.id,
            title=mapped.title,
            requester_name=mapped.requester_name,
            contact_info=mapped.contact_info,
            request_type=mapped.request_type,
            description=mapped.description,
            priority=mapped.priority,
            summary=mapped.summary,
            deadline=mapped.deadline,
            metadata=mapped.metadata,
        )

    def _catch_up(self, card: TaskCard, mapped: MappedRecord, extra: dict[str, Any], now: datetime) -> TaskCard:
        status_changes = catch_up_changes(card, mapped.status, now)
        if status_changes is None:
            if not extra:
                return card
            extra = {**extra, "overdue": compute_overdue(extra.get("deadline", card.deadline), card.status, now)}
            return self._storage.task_cards.update(card.id, card.version, extra, now=now)
        return self._apply_transition(
            card,
            {**extra, **status_changes},
            actor_id=None,
            comment=f"status synchronized from upstream ({mapped.metadata.get('external_status')})",
            now=now,
            metadata={"source": "promotion"},
        )

    def _reconcile(self, card: TaskCard, mapped: MappedRecord, now: datetime) -> TaskCard:
        extra: dict[str, Any] = {}
        for field in _RECONCILED_FIELDS:
            value = getattr(mapped, field)
            if getattr(card, field) != value:
                extra[field] = value
        metadata = {**card.metadata, **mapped.metadata}
        if metadata != card.metadata:
            extra["metadata"] = metadata
        return self._catch_up(card, mapped, extra, now)

    def promote_record(self, record: RawRecord) -> tuple[TaskCard, str]:
        """
        Create or refresh the card for one raw record, then mark the record processed.

        Raises MappingFailure; the caller records it on the raw record.
        """
        now = self._clock()
        try:
            mapped = map_external_record(record.payload)
            existing = self._storage.task_cards.get_by_raw_record_id(record.id)
            if existing is not None:
                card = self._reconcile(existing, mapped, now)
                outcome = PROMOTION_UPDATED
            else:
                try:
                    card = self._insert(self._draft_from(record, mapped), actor_id=None, now=now)
                except DuplicateCard:
                    # Lost a race with another promotion pass; fold into its card instead.
                    card = self._reconcile(self._storage.task_cards.get_by_raw_record_id(record.id), mapped, now)
                    outcome = PROMOTION_UPDATED
                else:
                    card = self._catch_up(card, mapped, {}, now)
                    card = self._classify(card)
                    outcome = PROMOTION_CREATED
            stored = self._storage.raw_records.mark_processed(record.id, now=now, payload_hash=record.payload_hash)
            if not stored.processed:
                logger.info("Raw record %s changed during promotion; left queued for the next pass.", record.id)
        except Exception as exc:  # noqa: BLE001
            raise MappingFailure(f"{type(exc).__name__}: {exc}") from exc
        return self._with_overdue(card, now), outcome

    def promote_pending(
        self,
        limit: int = 500,
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> PromotionReport:
        """
        Promote every unprocessed raw record (up to `limit`). One record failing never stops the
        batch; its error is stored on the raw record and it is retried on the next pass.
        """
        report = PromotionReport()
        with trace_span("intake.promote_pending", {"limit": limit}):
            for record in self._storage.raw_records.list_unprocessed(limit):
                if should_stop is not None and should_stop():
                    report.interrupted = True
                    logger.info("Promotion interrupted after %s record(s).", report.total)
                    break
                report.total += 1
                try:
                    card, outcome = self.promote_record(record)
                except MappingFailure as exc:
                    report.failed += 1
                    report.failures.append(
                        PromotionFailure(raw_record_id=record.id, external_id=record.external_id, error=str(exc))
                    )
                    logger.warning("Promotion failed for raw record %s (%s): %s", record.id, record.external_id, exc)
                    self._record_failure(record, str(exc))
                    emit(
                        self._sink,
                        "promotion.failed",
                        outcome="failed",
                        raw_record_id=record.id,
                        external_id=record.external_id,
                        error=str(exc),
                    )
                    continue
                if outcome == PROMOTION_CREATED:
                    report.created += 1
                else:
                    report.updated += 1
                emit(
                    self._sink,
                    "promotion.succeeded",
                    outcome=outcome,
                    raw_record_id=record.id,
                    external_id=record.external_id,
                    card_id=card.id,
                    status=card.status.value,
                )
        return report

    def _record_failure(self, record: RawRecord, error: str) -> None:
        try:
            self._storage.raw_records.set_error(
                record.id, error, now=self._clock(), payload_hash=record.payload_hash
            )
        except Exception:  # noqa: BLE001
            logger.exception("Could not store promotion error on raw record %s.", record.id)
