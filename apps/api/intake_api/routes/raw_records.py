from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..services.raw_records import list_raw_records as service_list_raw_records
from ..services.raw_records import list_unprocessed_raw_records as service_list_unprocessed_raw_records


router = APIRouter(tags=["raw-records"])


@router.get("/raw-records")
def list_raw_records(processed: bool | None = None, offset: int = 0, limit: int = 100) -> JSONResponse:
    return service_list_raw_records(processed=processed, offset=offset, limit=limit)


@router.get("/raw-records/unprocessed")
def list_unprocessed_raw_records(limit: int = 100) -> JSONResponse:
    return service_list_unprocessed_raw_records(limit)
