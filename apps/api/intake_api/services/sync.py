from __future__ import annotations

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..ingestion.sync import SyncStatus
from ..runtime import get_runtime


# HTTP status per pass outcome, so callers can tell "nothing new" from "sync failed".
_STATUS_CODES = {
    SyncStatus.OK: 200,
    SyncStatus.NO_CHANGES: 200,
    SyncStatus.PROMOTION_ERRORS: 207,
    SyncStatus.INTERRUPTED: 200,
    SyncStatus.ALREADY_RUNNING: 409,
    SyncStatus.UPSTREAM_UNAVAILABLE: 502,
    SyncStatus.UPSTREAM_REJECTED: 502,
    SyncStatus.FAILED: 500,
}


def run_sync() -> JSONResponse:
    report = get_runtime().scheduler.run_once(trigger="manual")
    return JSONResponse(
        status_code=_STATUS_CODES.get(report.status, 200),
        content=jsonable_encoder({"sync": report.model_dump(mode="json")}),
    )


def promote_pending(limit: int | None = None) -> JSONResponse:
    runtime = get_runtime()
    batch = max(1, min(limit or runtime.settings.sync.promote_batch_limit, 10000))
    report = runtime.engine.promote_pending(batch)
    return JSONResponse(content=jsonable_encoder({"promotion": report.model_dump(mode="json")}))


def get_sync_state() -> JSONResponse:
    scheduler = get_runtime().scheduler
    state = scheduler.get_state()
    return JSONResponse(
        content=jsonable_encoder({"sync_state": state.model_dump(mode="json"), "scheduler_running": scheduler.running})
    )
