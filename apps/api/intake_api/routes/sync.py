from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..services.sync import get_sync_state as service_get_sync_state
from ..services.sync import promote_pending as service_promote_pending
from ..services.sync import run_sync as service_run_sync


router = APIRouter(tags=["sync"])


@router.post("/sync/run")
def run_sync() -> JSONResponse:
    return service_run_sync()


@router.post("/sync/promote")
def promote_pending(limit: int | None = None) -> JSONResponse:
    return service_promote_pending(limit)


@router.get("/sync/state")
def get_sync_state() -> JSONResponse:
    return service_get_sync_state()
