from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from ..config import SyncSettings
from ..errors import UpstreamRejected, UpstreamUnavailable
from ..lifecycle.engine import LifecycleEngine, PromotionReport
from ..locks import SingleFlightLock
from ..models import SyncState
from ..observability.sinks import emit
from ..observability.tracing import trace_span
from ..providers.base import ObservabilitySink, UpstreamProvider
from ..storage.base import UPSERT_CREATED, UPSERT_UNCHANGED, UPSERT_UPDATED, Storage
from ..time_utils import _utc_now
from .mapper import extract_external_id


logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    OK = "ok"
    NO_CHANGES = "no_changes"
    PROMOTION_ERRORS = "promotion_errors"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_REJECTED = "upstream_rejected"
    ALREADY_RUNNING = "already_running"
    INTERRUPTED = "interrupted"
    FAILED = "failed"


class IngestReport(BaseModel):
    received: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    errors: int = 0
    interrupted: bool = False


class SyncReport(BaseModel):
    status: SyncStatus
    trigger: str
    started_at: datetime
    finished_at: datetime | None = None
    window_from: datetime | None = None
    window_to: datetime | None = None
    watermark: datetime | None = None
    ingest: IngestReport = Field(default_factory=IngestReport)
    promotion: PromotionReport | None = None
    error: str | None = None


def ingest_records(
    storage: Storage,
    records: Iterable[Any],
    *,
    now: datetime,
    sink: ObservabilitySink | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> IngestReport:
    """
    Upsert fetched records into the raw record store.

    Records without an external id are counted as errors and skipped; a store failure on one
    record does not stop the rest.
    """
    report = IngestReport()
    for record in records:
        if should_stop is not None and should_stop():
            report.interrupted = True
            break
        report.received += 1
        external_id = extract_external_id(record)
        if external_id is None:
            report.errors += 1
            logger.warning("Skipping upstream record without an external id.")
            emit(sink, "ingest.skipped", outcome="error", error="missing external id")
            continue
        try:
            raw, outcome = storage.raw_records.upsert(external_id, dict(record), now=now)
        except Exception as exc:  # noqa: BLE001
            report.errors += 1
            logger.warning("Failed to store raw record %s: %s", external_id, exc, exc_info=True)
            emit(sink, "ingest.failed", outcome="error", external_id=external_id, error=str(exc))
            continue
        if outcome == UPSERT_CREATED:
            report.created += 1
        elif outcome == UPSERT_UPDATED:
            report.updated += 1
        elif outcome == UPSERT_UNCHANGED:
            report.unchanged += 1
        emit(sink, "ingest.stored", outcome=outcome, external_id=external_id, raw_record_id=raw.id)
    return report


class SyncScheduler:
    """
    Periodic fetch -> ingest -> promote loop.

    `run_once` is single-flight and never raises: every failure is folded into the returned
    `SyncReport`, which is also stored as the state's `last_outcome`. The watermark moves to the
    start time of the pass only when the pass completes.
    """

    def __init__(
        self,
        *,
        storage: Storage,
        engine: LifecycleEngine,
        upstream: UpstreamProvider | None,
        settings: SyncSettings,
        lock: SingleFlightLock | None = None,
        sink: ObservabilitySink | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._storage = storage
        self._engine = engine
        self._upstream = upstream
        self._settings = settings
        self._lock = lock or SingleFlightLock(settings.name, ttl_seconds=settings.lock_ttl_seconds)
        self._sink = sink
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def get_state(self) -> SyncState:
        state = self._storage.sync_state.get(self._settings.name)
        if state is None:
            state = SyncState(name=self._settings.name, watermark=self._settings.initial_watermark)
        return state

    def run_once(self, trigger: str = "scheduled") -> SyncReport:
        started_at = self._clock()
        try:
            acquired = self._lock.acquire()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Could not take the sync lock; pass skipped.")
            return SyncReport(
                status=SyncStatus.FAILED,
                trigger=trigger,
                started_at=started_at,
                finished_at=started_at,
                error=f"lock unavailable: {exc}",
            )
        if not acquired:
            logger.info("Sync pass (%s) skipped: another pass is in flight.", trigger)
            return SyncReport(
                status=SyncStatus.ALREADY_RUNNING,
                trigger=trigger,
                started_at=started_at,
                finished_at=started_at,
            )
        try:
            with trace_span("intake.sync_pass", {"sync.name": self._settings.name, "sync.trigger": trigger}):
                return self._run(trigger, started_at)
        finally:
            self._lock.release()

    def _run(self, trigger: str, now: datetime) -> SyncReport:
        state = self.get_state()
        window_from = state.watermark or self._settings.initial_watermark
        if window_from > now:
            window_from = now
        report = SyncReport(
            status=SyncStatus.OK,
            trigger=trigger,
            started_at=now,
            window_from=window_from,
            window_to=now,
            watermark=state.watermark,
        )
        logger.info("Sync pass (%s) starting for window [%s, %s).", trigger, window_from.isoformat(), now.isoformat())

        try:
            records = self._fetch(window_from, now)
        except UpstreamRejected as exc:
            logger.error("Upstream rejected the sync window; watermark kept: %s", exc)
            return self._finish(state, report, SyncStatus.UPSTREAM_REJECTED, error=str(exc))
        except UpstreamUnavailable as exc:
            logger.warning("Upstream unavailable; watermark kept, next cycle retries: %s", exc)
            return self._finish(state, report, SyncStatus.UPSTREAM_UNAVAILABLE, error=str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unexpected error while fetching from upstream; watermark kept.")
            return self._finish(state, report, SyncStatus.UPSTREAM_UNAVAILABLE, error=f"{type(exc).__name__}: {exc}")

        should_stop = self._stop_event.is_set
        try:
            report.ingest = ingest_records(self._storage, records, now=now, sink=self._sink, should_stop=should_stop)
            if report.ingest.interrupted:
                return self._finish(state, report, SyncStatus.INTERRUPTED)
            report.promotion = self._engine.promote_pending(self._settings.promote_batch_limit, should_stop=should_stop)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Sync pass failed after fetching; watermark kept.")
            return self._finish(state, report, SyncStatus.FAILED, error=f"{type(exc).__name__}: {exc}")

        if report.promotion.interrupted:
            return self._finish(state, report, SyncStatus.INTERRUPTED)

        if report.ingest.errors or report.promotion.failed:
            status = SyncStatus.PROMOTION_ERRORS
        elif report.ingest.created or report.ingest.updated or report.promotion.total:
            status = SyncStatus.OK
        else:
            status = SyncStatus.NO_CHANGES
        return self._finish(state, report, status, advance_to=now)

    def _fetch(self, window_from: datetime, window_to: datetime) -> list[Any]:
        if self._upstream is None:
            raise UpstreamUnavailable("upstream is not configured")
        return self._upstream.fetch(window_from, window_to)

    def _finish(
        self,
        state: SyncState,
        report: SyncReport,
        status: SyncStatus,
        *,
        error: str | None = None,
        advance_to: datetime | None = None,
    ) -> SyncReport:
        report.status = status
        report.error = error
        report.finished_at = self._clock()
        if advance_to is not None:
            report.watermark = advance_to
        new_state = SyncState(
            name=state.name,
            watermark=advance_to or state.watermark,
            last_run_at=report.started_at,
            last_outcome=report.model_dump(mode="json"),
        )
        try:
            self._storage.sync_state.save(new_state)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to persist sync state for %s.", state.name)
        logger.info(
            "Sync pass (%s) finished: %s (received=%s created=%s updated=%s promoted=%s failed=%s).",
            report.trigger,
            status.value,
            report.ingest.received,
            report.ingest.created,
            report.ingest.updated,
            report.promotion.total if report.promotion else 0,
            report.promotion.failed if report.promotion else 0,
        )
        emit(
            self._sink,
            "sync.completed",
            status=status.value,
            trigger=report.trigger,
            received=report.ingest.received,
            promoted=report.promotion.total if report.promotion else 0,
            promotion_failures=report.promotion.failed if report.promotion else 0,
        )
        return report

    # Background loop

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=f"sync-{self._settings.name}", daemon=True)
        self._thread.start()
        logger.info("Sync scheduler started (every %.0fs).", self._settings.interval_seconds)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once("scheduled")
            if self._stop_event.wait(self._settings.interval_seconds):
                break

    def request_stop(self) -> None:
        """Ask the in-flight pass to stop after its current record."""
        self._stop_event.set()

    def stop(self, timeout: float | None = None) -> None:
        self.request_stop()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sync scheduler stopped.")
