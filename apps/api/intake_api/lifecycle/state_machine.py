from __future__ import annotations

from datetime import datetime
from typing import Any

from ..errors import InvalidTransition
from ..models import TaskCard, TaskStatus
from ..vocabulary import parse_status


# Position in the lifecycle; promotion only ever moves a card forward along this order.
STATUS_ORDER: dict[TaskStatus, int] = {
    TaskStatus.NEW: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.AWAITING_CONFIRMATION: 2,
    TaskStatus.DONE: 3,
}

# Allowed edges. `done` has none; a reopen edge would be added here.
TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.NEW: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.AWAITING_CONFIRMATION, TaskStatus.DONE}),
    TaskStatus.AWAITING_CONFIRMATION: frozenset({TaskStatus.DONE}),
    TaskStatus.DONE: frozenset(),
}


def coerce_status(value: Any) -> TaskStatus:
    status = parse_status(value)
    if status is None:
        raise InvalidTransition(f"unknown status: {value!r}", requested=str(value))
    return status


def is_later(candidate: TaskStatus, current: TaskStatus) -> bool:
    return STATUS_ORDER[candidate] > STATUS_ORDER[current]


def validate_transition(current: TaskStatus, requested: TaskStatus) -> None:
    if requested == current:
        raise InvalidTransition(
            f"task card is already {current.value}",
            current=current.value,
            requested=requested.value,
        )
    if requested not in TRANSITIONS[current]:
        raise InvalidTransition(
            f"transition {current.value} -> {requested.value} is not allowed",
            current=current.value,
            requested=requested.value,
        )


def transition_changes(card: TaskCard, requested: TaskStatus, now: datetime) -> dict[str, Any]:
    """
    Field changes implied by moving `card` to `requested`.

    Derived timestamps are set once and never overwritten.
    """
    changes: dict[str, Any] = {"status": requested}
    if requested == TaskStatus.IN_PROGRESS and card.started_at is None:
        changes["started_at"] = now
    if requested in (TaskStatus.AWAITING_CONFIRMATION, TaskStatus.DONE) and card.completed_at is None:
        changes["completed_at"] = now
    if (
        requested == TaskStatus.DONE
        and card.status == TaskStatus.AWAITING_CONFIRMATION
        and card.confirmed_at is None
    ):
        changes["confirmed_at"] = now
    return changes


def catch_up_changes(card: TaskCard, mapped: TaskStatus, now: datetime) -> dict[str, Any] | None:
    """
    Field changes for a system transition that brings `card` up to an upstream status.

    Returns None unless `mapped` is later than the card's status. The jump may skip stages
    (new -> done); `started_at` is still filled when the card passes over `in_progress`.
    """
    if not is_later(mapped, card.status):
        return None
    changes = transition_changes(card, mapped, now)
    if card.started_at is None and is_later(mapped, TaskStatus.NEW):
        changes["started_at"] = now
    return changes
