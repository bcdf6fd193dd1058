from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import MagicMock, patch

from intake_api.errors import ConcurrentModification, InvalidTransition, NotFound
from intake_api.ingestion.mapper import map_external_record
from intake_api.lifecycle.engine import LifecycleEngine
from intake_api.models import CardFilters, TaskCardCreate, TaskCardPatch, TaskStatus
from intake_api.providers.base import Classification

EXT1 = {"obr_id": "EXT-1", "status": "в процессе", "text": "Проблема\nДетали проблемы"}


def _ingest(storage, clock, payload):
    record, outcome = storage.raw_records.upsert(payload["obr_id"], payload, now=clock())
    return record, outcome


def _replay(history):
    status = None
    for entry in history:
        assert entry.previous_status == status
        status = entry.new_status
    return status


def test_ingestion_is_idempotent_per_external_id(storage, clock):
    first, outcome1 = _ingest(storage, clock, {"obr_id": "A", "text": "v1"})
    second, outcome2 = _ingest(storage, clock, {"obr_id": "A", "text": "v2"})
    third, outcome3 = _ingest(storage, clock, {"obr_id": "A", "text": "v2"})

    assert (outcome1, outcome2, outcome3) == ("created", "updated", "unchanged")
    assert first.id == second.id == third.id
    stored = storage.raw_records.get_by_external_id("A")
    assert stored.payload["text"] == "v2"
    assert storage.raw_records.list_unprocessed(100) == [stored]


def test_ext1_promotes_to_in_progress_once(engine, storage, clock):
    record, _ = _ingest(storage, clock, EXT1)

    report = engine.promote_pending()
    assert (report.total, report.created, report.failed) == (1, 1, 0)

    card = storage.task_cards.get_by_raw_record_id(record.id)
    assert card.status == TaskStatus.IN_PROGRESS
    assert card.title == "Проблема"
    assert card.description == "Детали проблемы"
    assert card.started_at == clock.now
    assert storage.raw_records.get(record.id).processed is True
    assert storage.raw_records.get(record.id).task_card_id == card.id

    again = engine.promote_pending()
    assert again.total == 0
    assert engine.count_cards(CardFilters()) == 1


def test_promotion_history_replays_to_current_status(engine, storage, clock):
    record, _ = _ingest(storage, clock, EXT1)
    engine.promote_pending()
    card = storage.task_cards.get_by_raw_record_id(record.id)

    history = engine.get_history(card.id)
    assert [(h.previous_status, h.new_status) for h in history] == [
        (None, TaskStatus.NEW),
        (TaskStatus.NEW, TaskStatus.IN_PROGRESS),
    ]
    assert all(h.actor_id is None for h in history)
    assert _replay(history) == card.status


def test_changed_payload_reconciles_existing_card(engine, storage, clock):
    record, _ = _ingest(storage, clock, {"obr_id": "B", "status": "new", "text": "Старая тема\nтекст"})
    engine.promote_pending()
    card = storage.task_cards.get_by_raw_record_id(record.id)

    clock.advance(hours=1)
    _, outcome = _ingest(storage, clock, {"obr_id": "B", "status": "answered", "text": "Новая тема\nтекст"})
    assert outcome == "updated"

    report = engine.promote_pending()
    assert (report.created, report.updated) == (0, 1)
    updated = engine.get_card(card.id)
    assert updated.id == card.id
    assert updated.title == "Новая тема"
    assert updated.status == TaskStatus.DONE
    assert updated.completed_at == clock.now
    assert len(engine.get_history(card.id)) == 2
    assert engine.count_cards(CardFilters()) == 1


def test_reconcile_never_regresses_status(engine, storage, clock):
    record, _ = _ingest(storage, clock, {"obr_id": "C", "status": "answered", "text": "x"})
    engine.promote_pending()
    _ingest(storage, clock, {"obr_id": "C", "status": "new", "text": "y"})
    engine.promote_pending()

    card = storage.task_cards.get_by_raw_record_id(record.id)
    assert card.status == TaskStatus.DONE
    assert card.description == "y"


def test_assigning_new_card_starts_it(engine, clock):
    card = engine.create_card(TaskCardCreate(title="Яма на дороге"))
    clock.advance(minutes=5)

    assigned = engine.assign(card.id, "U1", actor_id="dispatcher")

    assert assigned.status == TaskStatus.IN_PROGRESS
    assert assigned.assigned_to == "U1"
    assert assigned.started_at == clock.now
    history = engine.get_history(card.id)
    assert len(history) == 2
    assert history[-1].previous_status == TaskStatus.NEW
    assert history[-1].new_status == TaskStatus.IN_PROGRESS
    assert "U1" in history[-1].comment


def test_reassigning_does_not_write_history(engine):
    card = engine.create_card(TaskCardCreate(title="t"))
    engine.assign(card.id, "U1")
    reassigned = engine.assign(card.id, "U2")

    assert reassigned.assigned_to == "U2"
    assert reassigned.status == TaskStatus.IN_PROGRESS
    assert len(engine.get_history(card.id)) == 2


def test_timestamps_are_set_once(engine, clock):
    card = engine.create_card(TaskCardCreate(title="t"))
    engine.update_status(card.id, "in_progress")
    started = clock.now

    clock.advance(hours=1)
    waiting = engine.update_status(card.id, TaskStatus.AWAITING_CONFIRMATION)
    completed = clock.now
    assert waiting.started_at == started
    assert waiting.completed_at == completed

    clock.advance(hours=1)
    done = engine.confirm(card.id, actor_id="citizen")
    assert done.status == TaskStatus.DONE
    assert done.started_at == started
    assert done.completed_at == completed
    assert done.confirmed_at == clock.now
    assert _replay(engine.get_history(card.id)) == TaskStatus.DONE


def test_invalid_transitions_leave_card_untouched(engine):
    card = engine.create_card(TaskCardCreate(title="t"))

    for requested in ("archived", "done", "new", "awaiting_confirmation"):
        with pytest.raises(InvalidTransition):
            engine.update_status(card.id, requested)

    unchanged = engine.get_card(card.id)
    assert unchanged.status == TaskStatus.NEW
    assert unchanged.version == card.version
    assert len(engine.get_history(card.id)) == 1


def test_done_is_terminal(engine):
    card = engine.create_card(TaskCardCreate(title="t"))
    engine.update_status(card.id, "in_progress")
    engine.update_status(card.id, "done")
    with pytest.raises(InvalidTransition):
        engine.update_status(card.id, "in_progress")


def test_confirm_requires_awaiting_confirmation(engine):
    card = engine.create_card(TaskCardCreate(title="t"))
    with pytest.raises(InvalidTransition):
        engine.confirm(card.id)


def test_overdue_cleared_by_done(engine, clock):
    card = engine.create_card(TaskCardCreate(title="t", deadline=clock.now + timedelta(days=1)))
    engine.update_status(card.id, "in_progress")
    assert engine.get_card(card.id).overdue is False

    clock.advance(days=2)
    assert engine.get_card(card.id).overdue is True
    assert [c.id for c in engine.list_cards(CardFilters(overdue=True))] == [card.id]

    done = engine.update_status(card.id, "done")
    assert done.overdue is False
    assert engine.get_card(card.id).overdue is False
    assert engine.count_cards(CardFilters(overdue=True)) == 0


def test_offset_less_deadlines_are_taken_as_utc(engine, clock):
    card = engine.create_card(TaskCardCreate(title="t", deadline=datetime(2024, 4, 30, 9, 0)))
    assert card.deadline == datetime(2024, 4, 30, 9, 0, tzinfo=timezone.utc)
    assert card.overdue is True
    assert engine.get_card(card.id).overdue is True

    moved = engine.update_fields(card.id, TaskCardPatch(deadline=datetime(2024, 6, 1)))
    assert moved.deadline == datetime(2024, 6, 1, tzinfo=timezone.utc)
    assert moved.overdue is False
    assert engine.count_cards(CardFilters(overdue=True)) == 0


def test_required_fields_cannot_be_cleared(engine):
    card = engine.create_card(TaskCardCreate(title="t", summary="s", metadata={"region": "north"}))

    with pytest.raises(ValueError):
        engine.update_fields(card.id, TaskCardPatch.model_validate({"title": None}))
    with pytest.raises(ValueError):
        engine.update_fields(card.id, TaskCardPatch.model_validate({"description": None, "summary": None}))
    unchanged = engine.get_card(card.id)
    assert (unchanged.title, unchanged.summary, unchanged.version) == ("t", "s", card.version)

    cleared = engine.update_fields(card.id, TaskCardPatch.model_validate({"summary": None, "metadata": None}))
    assert cleared.summary is None
    assert cleared.metadata == {}
    assert cleared.title == "t"


def test_payload_changed_during_promotion_stays_queued(storage, sink, clock):
    record, _ = _ingest(storage, clock, {"obr_id": "R", "text": "v1"})

    def reingest(title, description):
        storage.raw_records.upsert("R", {"obr_id": "R", "text": "v2", "status": "в процессе"}, now=clock())
        return Classification()

    classifier = MagicMock()
    classifier.classify.side_effect = reingest
    engine = LifecycleEngine(storage, sink=sink, classifier=classifier, clock=clock)

    first = engine.promote_pending()
    assert (first.created, first.failed) == (1, 0)
    stored = storage.raw_records.get(record.id)
    assert stored.payload["text"] == "v2"
    assert stored.processed is False

    second = engine.promote_pending()
    assert second.updated == 1
    card = storage.task_cards.get_by_raw_record_id(record.id)
    assert card.title == "v2"
    assert card.status == TaskStatus.IN_PROGRESS
    assert storage.raw_records.get(record.id).processed is True


def test_promotion_failure_is_isolated(engine, storage, clock):
    good, _ = _ingest(storage, clock, {"obr_id": "G", "text": "ok"})
    bad, _ = _ingest(storage, clock, {"obr_id": "X", "text": "boom"})

    def flaky_map(payload):
        if payload.get("obr_id") == "X":
            raise RuntimeError("cannot map")
        return map_external_record(payload)

    with patch("intake_api.lifecycle.engine.map_external_record", side_effect=flaky_map):
        report = engine.promote_pending()

    assert (report.total, report.created, report.failed) == (2, 1, 1)
    assert report.failures[0].external_id == "X"
    failed = storage.raw_records.get(bad.id)
    assert failed.processed is False
    assert "cannot map" in failed.error
    assert storage.raw_records.get(good.id).processed is True

    # Next pass retries the failed record.
    retry = engine.promote_pending()
    assert (retry.total, retry.created) == (1, 1)
    assert storage.raw_records.get(bad.id).error is None


def test_stale_version_is_rejected(engine, storage):
    card = engine.create_card(TaskCardCreate(title="t"))
    storage.task_cards.update(card.id, card.version, {"title": "edited"}, now=card.created_at)

    with pytest.raises(ConcurrentModification):
        storage.task_cards.update(card.id, card.version, {"title": "stale"}, now=card.created_at)
    assert storage.task_cards.get(card.id).title == "edited"


def test_classification_is_stored_and_failures_ignored(storage, sink, clock):
    classifier = MagicMock()
    classifier.classify.return_value = Classification(classification="roads", suggestion="send crew")
    engine = LifecycleEngine(storage, sink=sink, classifier=classifier, clock=clock)

    card = engine.create_card(TaskCardCreate(title="Яма", description="Большая яма"))
    assert card.classification == "roads"
    assert card.suggestion == "send crew"
    assert card.status == TaskStatus.NEW
    classifier.classify.assert_called_once_with("Яма", "Большая яма")

    classifier.classify.side_effect = RuntimeError("model offline")
    other = engine.create_card(TaskCardCreate(title="Другое"))
    assert other.classification is None


def test_unknown_card_raises_not_found(engine):
    with pytest.raises(NotFound):
        engine.get_card("00000000-0000-0000-0000-000000000000")
    with pytest.raises(NotFound):
        engine.assign("00000000-0000-0000-0000-000000000000", "U1")


def test_transitions_are_reported_to_sink(engine, sink):
    card = engine.create_card(TaskCardCreate(title="t"))
    engine.assign(card.id, "U1", actor_id="boss")

    changes = sink.named("task_card.status_changed")
    assert changes == [
        {
            "card_id": card.id,
            "raw_record_id": None,
            "previous_status": "new",
            "new_status": "in_progress",
            "actor_id": "boss",
            "comment": "assigned to U1",
        }
    ]


def test_status_counts_include_every_status(engine):
    card = engine.create_card(TaskCardCreate(title="t"))
    engine.create_card(TaskCardCreate(title="u"))
    engine.assign(card.id, "U1")

    assert engine.status_counts() == {"new": 1, "in_progress": 1, "awaiting_confirmation": 0, "done": 0}
