from datetime import datetime, timezone

import pytest

from intake_api.errors import InvalidTransition
from intake_api.lifecycle.state_machine import catch_up_changes, coerce_status, transition_changes, validate_transition
from intake_api.models import TaskCard, TaskStatus

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _card(**overrides):
    values = {
        "id": "c",
        "title": "t",
        "requester_name": "r",
        "contact_info": "c",
        "request_type": "general",
        "description": "d",
        "created_at": NOW,
        "updated_at": NOW,
    }
    values.update(overrides)
    return TaskCard(**values)


@pytest.mark.parametrize(
    "current,requested",
    [
        (TaskStatus.NEW, TaskStatus.IN_PROGRESS),
        (TaskStatus.IN_PROGRESS, TaskStatus.AWAITING_CONFIRMATION),
        (TaskStatus.IN_PROGRESS, TaskStatus.DONE),
        (TaskStatus.AWAITING_CONFIRMATION, TaskStatus.DONE),
    ],
)
def test_allowed_edges(current, requested):
    validate_transition(current, requested)


@pytest.mark.parametrize(
    "current,requested",
    [
        (TaskStatus.NEW, TaskStatus.DONE),
        (TaskStatus.NEW, TaskStatus.NEW),
        (TaskStatus.DONE, TaskStatus.IN_PROGRESS),
        (TaskStatus.AWAITING_CONFIRMATION, TaskStatus.IN_PROGRESS),
    ],
)
def test_rejected_edges(current, requested):
    with pytest.raises(InvalidTransition):
        validate_transition(current, requested)


def test_coerce_status_rejects_unknown_values():
    assert coerce_status("done") == TaskStatus.DONE
    with pytest.raises(InvalidTransition):
        coerce_status("archived")
    with pytest.raises(InvalidTransition):
        coerce_status(None)


def test_completed_at_is_never_overwritten():
    earlier = datetime(2024, 4, 1, tzinfo=timezone.utc)
    card = _card(status=TaskStatus.AWAITING_CONFIRMATION, completed_at=earlier)
    changes = transition_changes(card, TaskStatus.DONE, NOW)
    assert "completed_at" not in changes
    assert changes["confirmed_at"] == NOW


def test_catch_up_only_moves_forward():
    assert catch_up_changes(_card(status=TaskStatus.DONE), TaskStatus.IN_PROGRESS, NOW) is None
    assert catch_up_changes(_card(status=TaskStatus.IN_PROGRESS), TaskStatus.IN_PROGRESS, NOW) is None

    jump = catch_up_changes(_card(), TaskStatus.DONE, NOW)
    assert jump == {"status": TaskStatus.DONE, "started_at": NOW, "completed_at": NOW}
