from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..services.task_cards import AssignRequest, ConfirmRequest, StatusUpdateRequest
from ..services.task_cards import TaskCardCreateRequest, TaskCardPatchRequest
from ..services.task_cards import assign_task_card as service_assign_task_card
from ..services.task_cards import confirm_task_card as service_confirm_task_card
from ..services.task_cards import create_task_card as service_create_task_card
from ..services.task_cards import get_task_card as service_get_task_card
from ..services.task_cards import list_task_cards as service_list_task_cards
from ..services.task_cards import task_card_stats as service_task_card_stats
from ..services.task_cards import update_task_card as service_update_task_card
from ..services.task_cards import update_task_card_status as service_update_task_card_status


router = APIRouter(tags=["task-cards"])


@router.post("/task-cards")
def create_task_card(body: TaskCardCreateRequest) -> JSONResponse:
    return service_create_task_card(body)


@router.get("/task-cards")
def list_task_cards(
    status: str | None = None,
    assigned_to: str | None = None,
    department_id: str | None = None,
    overdue: bool | None = None,
    offset: int = 0,
    limit: int = 100,
) -> JSONResponse:
    return service_list_task_cards(
        status=status,
        assigned_to=assigned_to,
        department_id=department_id,
        overdue=overdue,
        offset=offset,
        limit=limit,
    )


@router.get("/task-cards/stats")
def task_card_stats() -> JSONResponse:
    return service_task_card_stats()


@router.get("/task-cards/{card_id}")
def get_task_card(card_id: str) -> JSONResponse:
    return service_get_task_card(card_id)


@router.patch("/task-cards/{card_id}")
def update_task_card(card_id: str, body: TaskCardPatchRequest) -> JSONResponse:
    return service_update_task_card(card_id, body)


@router.put("/task-cards/{card_id}/status")
def update_task_card_status(card_id: str, body: StatusUpdateRequest) -> JSONResponse:
    return service_update_task_card_status(card_id, body)


@router.put("/task-cards/{card_id}/assign")
def assign_task_card(card_id: str, body: AssignRequest) -> JSONResponse:
    return service_assign_task_card(card_id, body)


@router.put("/task-cards/{card_id}/confirm")
def confirm_task_card(card_id: str, body: ConfirmRequest) -> JSONResponse:
    return service_confirm_task_card(card_id, body)
