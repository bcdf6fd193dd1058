from unittest.mock import MagicMock, patch

from intake_api import worker
from intake_api.ingestion.sync import SyncStatus
from intake_api.worker import celery_app, run_sync


def test_beat_schedule_runs_sync_task():
    entry = celery_app.conf.beat_schedule["intake-sync"]
    assert entry["task"] == "intake_api.worker.run_sync"
    assert entry["schedule"] > 0


def test_run_sync_task_returns_report():
    report = MagicMock()
    report.status = SyncStatus.NO_CHANGES
    report.model_dump.return_value = {"status": "no_changes"}
    runtime = MagicMock()
    runtime.scheduler.run_once.return_value = report

    with patch("intake_api.worker.get_runtime", return_value=runtime):
        result = run_sync(trigger="manual")

    runtime.scheduler.run_once.assert_called_once_with(trigger="manual")
    assert result == {"status": "no_changes"}


def test_schedule_and_broker_come_from_settings():
    assert celery_app.conf.beat_schedule["intake-sync"]["schedule"] == worker.settings.sync.interval_seconds
    assert worker.BROKER_URL == (worker.settings.redis_url or "redis://localhost:6379/0")
