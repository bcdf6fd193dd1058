from __future__ import annotations

import os
from collections.abc import Mapping
from datetime import datetime

from pydantic import BaseModel, Field

from .retry import RetryPolicy
from .time_utils import EPOCH, _parse_datetime


class UpstreamSettings(BaseModel):
    base_url: str
    api_token: str
    org_id: str
    page_limit: int = Field(default=100, ge=1, le=1000)
    max_pages: int = Field(default=20, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


class SyncSettings(BaseModel):
    name: str = "eotinish"
    interval_seconds: float = Field(default=300.0, gt=0)
    initial_watermark: datetime = EPOCH
    promote_batch_limit: int = Field(default=500, ge=1)
    lock_ttl_seconds: float = Field(default=1800.0, gt=0)
    # Run the loop in the API process instead of Celery beat.
    run_in_process: bool = False


class Settings(BaseModel):
    storage_backend: str = "postgres"
    db_dsn: str | None = None
    redis_url: str | None = None
    classifier_url: str | None = None
    upstream: UpstreamSettings | None = None
    sync: SyncSettings = Field(default_factory=SyncSettings)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """
        Build settings from `INTAKE_*` environment variables.

        The upstream section is only populated when URL, token and organisation id are all set;
        without it the scheduler has nothing to call.
        """
        env = os.environ if environ is None else environ

        retry = RetryPolicy(
            max_attempts=int(env.get("INTAKE_RETRY_MAX_ATTEMPTS", "3")),
            delay_seconds=float(env.get("INTAKE_RETRY_DELAY_SECONDS", "5")),
        )

        upstream = None
        base_url = env.get("INTAKE_UPSTREAM_URL")
        token = env.get("INTAKE_UPSTREAM_TOKEN")
        org_id = env.get("INTAKE_UPSTREAM_ORG_ID")
        if base_url and token and org_id:
            upstream = UpstreamSettings(
                base_url=base_url,
                api_token=token,
                org_id=org_id,
                page_limit=int(env.get("INTAKE_UPSTREAM_PAGE_LIMIT", "100")),
                max_pages=int(env.get("INTAKE_UPSTREAM_MAX_PAGES", "20")),
                timeout_seconds=float(env.get("INTAKE_UPSTREAM_TIMEOUT_SECONDS", "30")),
                retry=retry,
            )

        sync_kwargs: dict[str, object] = {
            "interval_seconds": float(env.get("INTAKE_SYNC_INTERVAL_SECONDS", "300")),
            "promote_batch_limit": int(env.get("INTAKE_PROMOTE_BATCH_LIMIT", "500")),
            "run_in_process": (env.get("INTAKE_SYNC_IN_PROCESS") or "").strip().lower() in {"1", "true", "yes"},
        }
        initial = _parse_datetime(env.get("INTAKE_SYNC_INITIAL_WATERMARK"))
        if initial is not None:
            sync_kwargs["initial_watermark"] = initial

        return cls(
            storage_backend=(env.get("INTAKE_STORAGE") or "postgres").strip().lower(),
            db_dsn=env.get("INTAKE_DB_DSN"),
            redis_url=env.get("INTAKE_REDIS_URL"),
            classifier_url=env.get("INTAKE_CLASSIFIER_URL"),
            upstream=upstream,
            sync=SyncSettings(**sync_kwargs),
        )
