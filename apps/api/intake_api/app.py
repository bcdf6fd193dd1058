from __future__ import annotations

import logging

from fastapi import FastAPI

from .db import shutdown_db_pool
from .routes.core import router as core_router
from .routes.raw_records import router as raw_records_router
from .routes.sync import router as sync_router
from .routes.task_cards import router as task_cards_router
from .runtime import get_runtime


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title="Citizen Intake API", version="0.1.0")

    @app.on_event("startup")
    def _startup_runtime() -> None:
        runtime = get_runtime()
        if runtime.settings.sync.run_in_process:
            runtime.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown_runtime() -> None:
        runtime = get_runtime()
        if runtime.scheduler.running:
            runtime.scheduler.stop(timeout=runtime.settings.upstream.timeout_seconds if runtime.settings.upstream else 30)
        shutdown_db_pool()

    app.include_router(core_router)
    app.include_router(task_cards_router)
    app.include_router(raw_records_router)
    app.include_router(sync_router)

    return app


# Docker uses `intake_api.main:app` as a stable entrypoint; `intake_api.main` re-exports this app.
app = create_app()
