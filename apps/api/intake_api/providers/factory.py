from __future__ import annotations

from ..config import Settings
from ..observability.sinks import AuditSink, FanoutSink, LoggingSink
from .base import ClassificationProvider, ObservabilitySink, UpstreamProvider
from .classifier_http import HttpClassificationProvider
from .upstream_http import HttpUpstreamProvider


def get_observability_sink(settings: Settings) -> ObservabilitySink:
    """
    Returns the configured ObservabilitySink.
    Events always go to the log; with Postgres storage they are also written to `audit_events`.
    """
    if settings.storage_backend == "postgres":
        return FanoutSink([LoggingSink(), AuditSink()])
    return LoggingSink()


def get_upstream_provider(settings: Settings, sink: ObservabilitySink | None = None) -> UpstreamProvider | None:
    """
    Returns the configured UpstreamProvider, or None when the upstream is not configured.
    """
    if settings.upstream is None:
        return None
    return HttpUpstreamProvider(settings.upstream, sink=sink)


def get_classification_provider(settings: Settings) -> ClassificationProvider | None:
    """
    Returns the configured ClassificationProvider, or None when classification is disabled.
    """
    if not settings.classifier_url:
        return None
    return HttpClassificationProvider(settings.classifier_url)
