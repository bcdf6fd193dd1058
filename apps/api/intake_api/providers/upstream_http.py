from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

import httpx

from ..config import UpstreamSettings
from ..errors import UpstreamRejected, UpstreamUnavailable
from ..observability.sinks import emit
from ..retry import RetryExhausted, retry_call
from ..time_utils import _utc_now
from .base import ObservabilitySink, UpstreamProvider


logger = logging.getLogger(__name__)

# Clock skew tolerated between the caller's "now" and ours.
_FUTURE_TOLERANCE_SECONDS = 5.0


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status == 429
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def _describe(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"http_{exc.response.status_code}"
    return f"{type(exc).__name__}:{exc}"


class HttpUpstreamProvider(UpstreamProvider):
    """
    eOtinish appeals API over httpx.

    Each page request gets its own timeout and its own retries; a page that keeps failing
    fails the whole fetch so no partial window is ever reported as complete.
    """

    def __init__(
        self,
        settings: UpstreamSettings,
        *,
        sink: ObservabilitySink | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._settings = settings
        self._sink = sink
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    @property
    def profile_family(self) -> str:
        return "http"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.api_token}",
            "X-Organization-ID": self._settings.org_id,
            "Accept": "application/json",
        }

    def _get_page(self, client: httpx.Client, params: dict[str, Any]) -> list[Any]:
        url = self._settings.base_url.rstrip("/") + "/appeals"
        resp = client.get(url, params=params, headers=self._headers())
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError as exc:
            raise UpstreamRejected(f"upstream returned non-JSON body: {exc}", status_code=resp.status_code) from exc
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise UpstreamRejected("upstream response has no 'items' list", status_code=resp.status_code)
        return items

    def fetch(self, from_time: datetime, to_time: datetime) -> list[Any]:
        now = self._clock()
        if (to_time - now).total_seconds() > _FUTURE_TOLERANCE_SECONDS:
            raise ValueError(f"fetch window ends in the future: {to_time.isoformat()} > {now.isoformat()}")
        if from_time > to_time:
            raise ValueError("fetch window is inverted")

        policy = self._settings.retry
        limit = self._settings.page_limit
        records: list[Any] = []
        total_attempts = 0
        started = time.monotonic()

        with httpx.Client(timeout=self._settings.timeout_seconds, transport=self._transport) as client:
            for page in range(self._settings.max_pages):
                params = {
                    "org_id": self._settings.org_id,
                    "date_from": from_time.isoformat(),
                    "date_to": to_time.isoformat(),
                    "limit": limit,
                    "offset": page * limit,
                }

                def _on_attempt(attempt: int, error: BaseException | None, will_retry: bool, page: int = page) -> None:
                    nonlocal total_attempts
                    total_attempts += 1
                    emit(
                        self._sink,
                        "upstream.attempt",
                        page=page,
                        attempt=attempt,
                        max_attempts=policy.max_attempts,
                        outcome="ok" if error is None else "error",
                        error=_describe(error) if error is not None else None,
                        will_retry=will_retry,
                    )

                try:
                    items = retry_call(
                        lambda: self._get_page(client, params),
                        policy,
                        is_retryable=_is_retryable,
                        on_attempt=_on_attempt,
                        sleep=self._sleep,
                    )
                except RetryExhausted as exc:
                    message = f"upstream unavailable after {exc.attempts} attempt(s): {_describe(exc.last_error)}"
                    self._report_failure("unavailable", message, total_attempts, started)
                    raise UpstreamUnavailable(message, attempts=exc.attempts) from exc.last_error
                except httpx.HTTPStatusError as exc:
                    message = f"upstream rejected request: {_describe(exc)}"
                    self._report_failure("rejected", message, total_attempts, started)
                    raise UpstreamRejected(message, status_code=exc.response.status_code) from exc
                except UpstreamRejected as exc:
                    self._report_failure("rejected", str(exc), total_attempts, started)
                    raise
                except httpx.DecodingError as exc:
                    message = f"upstream returned an undecodable body: {_describe(exc)}"
                    self._report_failure("rejected", message, total_attempts, started)
                    raise UpstreamRejected(message) from exc
                except Exception as exc:  # noqa: BLE001
                    message = f"upstream fetch failed: {_describe(exc)}"
                    self._report_failure("unavailable", message, total_attempts, started)
                    raise UpstreamUnavailable(message, attempts=total_attempts) from exc

                records.extend(items)
                if len(items) < limit:
                    break
            else:
                logger.warning("Upstream fetch stopped at max_pages=%s; window may be truncated.", self._settings.max_pages)

        emit(
            self._sink,
            "upstream.fetch_succeeded",
            outcome="ok",
            records=len(records),
            attempts=total_attempts,
            window_from=from_time.isoformat(),
            window_to=to_time.isoformat(),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return records

    def _report_failure(self, kind: str, message: str, attempts: int, started: float) -> None:
        logger.warning("Upstream fetch failed (%s): %s", kind, message)
        emit(
            self._sink,
            "upstream.fetch_failed",
            outcome="failed",
            kind=kind,
            error=message,
            attempts=attempts,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
