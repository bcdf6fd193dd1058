from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from .config import Settings
from .db import init_db_pool
from .ingestion.sync import SyncScheduler
from .lifecycle.engine import LifecycleEngine
from .locks import SingleFlightLock
from .providers.base import ObservabilitySink
from .providers.factory import get_classification_provider, get_observability_sink, get_upstream_provider
from .storage.base import Storage
from .storage.factory import get_storage


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Runtime:
    settings: Settings
    storage: Storage
    sink: ObservabilitySink
    engine: LifecycleEngine
    scheduler: SyncScheduler


def build_runtime(settings: Settings) -> Runtime:
    """Wire stores, providers, engine and scheduler from one settings object."""
    if settings.storage_backend == "postgres":
        init_db_pool(settings.db_dsn)
    storage = get_storage(settings.storage_backend)
    sink = get_observability_sink(settings)
    engine = LifecycleEngine(storage, sink=sink, classifier=get_classification_provider(settings))
    upstream = get_upstream_provider(settings, sink)
    if upstream is None:
        logger.warning("INTAKE_UPSTREAM_URL/TOKEN/ORG_ID not set; sync passes will report upstream_unavailable.")
    scheduler = SyncScheduler(
        storage=storage,
        engine=engine,
        upstream=upstream,
        settings=settings.sync,
        lock=SingleFlightLock(
            settings.sync.name,
            redis_url=settings.redis_url,
            ttl_seconds=settings.sync.lock_ttl_seconds,
        ),
        sink=sink,
    )
    return Runtime(settings=settings, storage=storage, sink=sink, engine=engine, scheduler=scheduler)


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Process-wide runtime built from the environment on first use."""
    global _runtime
    with _runtime_lock:
        if _runtime is None:
            _runtime = build_runtime(Settings.from_env())
        return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    with _runtime_lock:
        _runtime = runtime
