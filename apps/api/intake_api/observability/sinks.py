from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ..audit import _audit_event
from ..providers.base import ObservabilitySink


_logger = logging.getLogger(__name__)
_events_logger = logging.getLogger("intake_api.events")


class LoggingSink(ObservabilitySink):
    """Writes each event as one log line on the `intake_api.events` logger."""

    def __init__(self, level: int = logging.INFO):
        self._level = level

    @property
    def profile_family(self) -> str:
        return "log"

    def record(self, event: str, fields: dict[str, Any]) -> None:
        level = logging.WARNING if fields.get("outcome") in {"failed", "error"} else self._level
        rendered = " ".join(f"{k}={v}" for k, v in sorted(fields.items()))
        _events_logger.log(level, "%s %s", event, rendered, extra={"event": event, "fields": fields})


class AuditSink(ObservabilitySink):
    """Persists events into `audit_events`."""

    @property
    def profile_family(self) -> str:
        return "db"

    def record(self, event: str, fields: dict[str, Any]) -> None:
        actor_id = fields.get("actor_id")
        _audit_event(
            event_type=event,
            actor_type="user" if actor_id else "system",
            actor_id=actor_id,
            card_id=fields.get("card_id"),
            raw_record_id=fields.get("raw_record_id"),
            payload=fields,
        )


class FanoutSink(ObservabilitySink):
    def __init__(self, sinks: Sequence[ObservabilitySink]):
        self._sinks = list(sinks)

    @property
    def profile_family(self) -> str:
        return "fanout"

    def record(self, event: str, fields: dict[str, Any]) -> None:
        for sink in self._sinks:
            emit(sink, event, **fields)


def emit(sink: ObservabilitySink | None, event: str, **fields: Any) -> None:
    """Report an event; sink failures are logged and never propagate."""
    if sink is None:
        return
    try:
        sink.record(event, fields)
    except Exception:  # noqa: BLE001
        _logger.warning("Observability sink %s failed on %s.", type(sink).__name__, event, exc_info=True)
