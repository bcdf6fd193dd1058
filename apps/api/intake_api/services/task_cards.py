from __future__ import annotations

from typing import Any

from fastapi import HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..api_utils import domain_errors_as_http, validate_uuid_or_400
from ..models import CardFilters, HistoryEntry, TaskCard, TaskCardCreate, TaskCardPatch
from ..runtime import get_runtime
from ..vocabulary import parse_status


class TaskCardCreateRequest(TaskCardCreate):
    actor_id: str | None = None


class TaskCardPatchRequest(TaskCardPatch):
    actor_id: str | None = None


class StatusUpdateRequest(BaseModel):
    # Plain string so an unknown value is a 400 from the state machine, not a 422.
    status: str
    actor_id: str | None = None
    comment: str | None = None


class AssignRequest(BaseModel):
    assignee: str
    actor_id: str | None = None


class ConfirmRequest(BaseModel):
    actor_id: str | None = None
    comment: str | None = None


def _card_json(card: TaskCard) -> dict[str, Any]:
    return card.model_dump(mode="json")


def _history_json(entries: list[HistoryEntry]) -> list[dict[str, Any]]:
    return [e.model_dump(mode="json") for e in entries]


def create_task_card(body: TaskCardCreateRequest) -> JSONResponse:
    draft = TaskCardCreate(**body.model_dump(exclude={"actor_id"}))
    if draft.raw_record_id:
        validate_uuid_or_400(draft.raw_record_id, field_name="raw_record_id")
    with domain_errors_as_http():
        card = get_runtime().engine.create_card(draft, actor_id=body.actor_id)
    return JSONResponse(status_code=201, content=jsonable_encoder({"task_card": _card_json(card)}))


def list_task_cards(
    *,
    status: str | None = None,
    assigned_to: str | None = None,
    department_id: str | None = None,
    overdue: bool | None = None,
    offset: int = 0,
    limit: int = 100,
) -> JSONResponse:
    parsed_status = None
    if status:
        parsed_status = parse_status(status)
        if parsed_status is None:
            raise HTTPException(status_code=400, detail=f"unknown status: {status}")
    filters = CardFilters(
        status=parsed_status,
        assigned_to=assigned_to,
        department_id=department_id,
        overdue=overdue,
        offset=max(0, offset),
        limit=max(1, min(limit, 1000)),
    )
    engine = get_runtime().engine
    cards = engine.list_cards(filters)
    total = engine.count_cards(filters)
    return JSONResponse(
        content=jsonable_encoder(
            {
                "task_cards": [_card_json(c) for c in cards],
                "total": total,
                "offset": filters.offset,
                "limit": filters.limit,
            }
        )
    )


def get_task_card(card_id: str) -> JSONResponse:
    card_id = validate_uuid_or_400(card_id, field_name="card_id")
    engine = get_runtime().engine
    with domain_errors_as_http():
        card = engine.get_card(card_id)
        history = engine.get_history(card_id)
    return JSONResponse(content=jsonable_encoder({"task_card": _card_json(card), "history": _history_json(history)}))


def task_card_stats() -> JSONResponse:
    counts = get_runtime().engine.status_counts()
    return JSONResponse(content=jsonable_encoder({"by_status": counts, "total": sum(counts.values())}))


def update_task_card(card_id: str, body: TaskCardPatchRequest) -> JSONResponse:
    card_id = validate_uuid_or_400(card_id, field_name="card_id")
    patch = TaskCardPatch(**body.model_dump(exclude={"actor_id"}, exclude_unset=True))
    with domain_errors_as_http():
        card = get_runtime().engine.update_fields(card_id, patch, actor_id=body.actor_id)
    return JSONResponse(content=jsonable_encoder({"task_card": _card_json(card)}))


def update_task_card_status(card_id: str, body: StatusUpdateRequest) -> JSONResponse:
    card_id = validate_uuid_or_400(card_id, field_name="card_id")
    with domain_errors_as_http():
        card = get_runtime().engine.update_status(card_id, body.status, actor_id=body.actor_id, comment=body.comment)
    return JSONResponse(content=jsonable_encoder({"task_card": _card_json(card)}))


def assign_task_card(card_id: str, body: AssignRequest) -> JSONResponse:
    card_id = validate_uuid_or_400(card_id, field_name="card_id")
    with domain_errors_as_http():
        card = get_runtime().engine.assign(card_id, body.assignee, actor_id=body.actor_id)
    return JSONResponse(content=jsonable_encoder({"task_card": _card_json(card)}))


def confirm_task_card(card_id: str, body: ConfirmRequest) -> JSONResponse:
    card_id = validate_uuid_or_400(card_id, field_name="card_id")
    with domain_errors_as_http():
        card = get_runtime().engine.confirm(card_id, actor_id=body.actor_id, comment=body.comment)
    return JSONResponse(content=jsonable_encoder({"task_card": _card_json(card)}))
