from __future__ import annotations

import logging
from typing import Any

from celery import Celery

from .config import Settings
from .runtime import get_runtime


logger = logging.getLogger(__name__)

settings = Settings.from_env()
BROKER_URL = settings.redis_url or "redis://localhost:6379/0"

celery_app = Celery("intake_sync", broker=BROKER_URL, backend=BROKER_URL)
celery_app.conf.beat_schedule = {
    "intake-sync": {
        "task": "intake_api.worker.run_sync",
        "schedule": settings.sync.interval_seconds,
        "kwargs": {"trigger": "scheduled"},
    },
}


@celery_app.task(name="intake_api.worker.run_sync")
def run_sync(trigger: str = "scheduled") -> dict[str, Any]:
    report = get_runtime().scheduler.run_once(trigger=trigger)
    logger.info("Celery sync task finished with status %s.", report.status.value)
    return report.model_dump(mode="json")


@celery_app.task(name="intake_api.worker.promote_pending")
def promote_pending(limit: int | None = None) -> dict[str, Any]:
    runtime = get_runtime()
    report = runtime.engine.promote_pending(limit or runtime.settings.sync.promote_batch_limit)
    return report.model_dump(mode="json")
