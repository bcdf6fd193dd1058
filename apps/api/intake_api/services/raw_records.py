from __future__ import annotations

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..models import RawRecordFilters
from ..runtime import get_runtime


def list_raw_records(*, processed: bool | None = None, offset: int = 0, limit: int = 100) -> JSONResponse:
    filters = RawRecordFilters(processed=processed, offset=max(0, offset), limit=max(1, min(limit, 1000)))
    store = get_runtime().storage.raw_records
    items = [r.model_dump(mode="json") for r in store.list(filters)]
    return JSONResponse(
        content=jsonable_encoder(
            {"raw_records": items, "total": store.count(filters), "offset": filters.offset, "limit": filters.limit}
        )
    )


def list_unprocessed_raw_records(limit: int = 100) -> JSONResponse:
    store = get_runtime().storage.raw_records
    items = [r.model_dump(mode="json") for r in store.list_unprocessed(max(1, min(limit, 1000)))]
    return JSONResponse(content=jsonable_encoder({"raw_records": items, "count": len(items)}))
