from datetime import datetime, timedelta, timezone

import httpx
import pytest
from unittest.mock import MagicMock

from intake_api.config import UpstreamSettings
from intake_api.errors import UpstreamRejected, UpstreamUnavailable
from intake_api.providers.upstream_http import HttpUpstreamProvider
from intake_api.retry import RetryPolicy

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
FROM = NOW - timedelta(hours=1)


def _settings(**overrides):
    values = {
        "base_url": "https://portal.example/api/",
        "api_token": "secret",
        "org_id": "org-9",
        "page_limit": 2,
        "max_pages": 5,
        "retry": RetryPolicy(max_attempts=3, delay_seconds=5),
    }
    values.update(overrides)
    return UpstreamSettings(**values)


def _provider(handler, sink, **overrides):
    sleep = MagicMock()
    provider = HttpUpstreamProvider(
        _settings(**overrides),
        sink=sink,
        transport=httpx.MockTransport(handler),
        sleep=sleep,
        clock=lambda: NOW,
    )
    return provider, sleep


def test_fetch_sends_auth_and_window(sink):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"items": [{"obr_id": "1"}]})

    provider, _ = _provider(handler, sink)
    records = provider.fetch(FROM, NOW)

    assert records == [{"obr_id": "1"}]
    request = seen[0]
    assert request.url.path == "/api/appeals"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["X-Organization-ID"] == "org-9"
    assert request.url.params["org_id"] == "org-9"
    assert request.url.params["date_from"] == FROM.isoformat()
    assert request.url.params["date_to"] == NOW.isoformat()
    assert len(sink.named("upstream.attempt")) == 1
    assert len(sink.named("upstream.fetch_succeeded")) == 1


def test_fetch_follows_full_pages(sink):
    pages = {
        "0": [{"obr_id": "1"}, {"obr_id": "2"}],
        "2": [{"obr_id": "3"}, {"obr_id": "4"}],
        "4": [{"obr_id": "5"}],
    }

    def handler(request):
        return httpx.Response(200, json={"items": pages[request.url.params["offset"]]})

    provider, _ = _provider(handler, sink)
    records = provider.fetch(FROM, NOW)

    assert [r["obr_id"] for r in records] == ["1", "2", "3", "4", "5"]
    assert sink.named("upstream.fetch_succeeded")[0]["records"] == 5


def test_transient_errors_are_retried_then_succeed(sink):
    responses = iter([httpx.Response(503), httpx.Response(200, json={"items": []})])

    provider, sleep = _provider(lambda request: next(responses), sink)
    assert provider.fetch(FROM, NOW) == []

    sleep.assert_called_once_with(5)
    attempts = sink.named("upstream.attempt")
    assert [a["outcome"] for a in attempts] == ["error", "ok"]


def test_rate_limit_is_retried(sink):
    responses = iter([httpx.Response(429), httpx.Response(429), httpx.Response(200, json={"items": []})])

    provider, sleep = _provider(lambda request: next(responses), sink)
    provider.fetch(FROM, NOW)

    assert sleep.call_count == 2


def test_exhausted_retries_raise_unavailable(sink):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectTimeout("timed out", request=request)

    provider, sleep = _provider(handler, sink)
    with pytest.raises(UpstreamUnavailable) as excinfo:
        provider.fetch(FROM, NOW)

    assert excinfo.value.attempts == 3
    assert len(calls) == 3
    assert sleep.call_count == 2
    assert len(sink.named("upstream.attempt")) == 3
    assert len(sink.named("upstream.fetch_failed")) == 1
    assert sink.named("upstream.fetch_succeeded") == []


def test_client_error_is_not_retried(sink):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(403, json={"error": "forbidden"})

    provider, sleep = _provider(handler, sink)
    with pytest.raises(UpstreamRejected) as excinfo:
        provider.fetch(FROM, NOW)

    assert excinfo.value.status_code == 403
    assert len(calls) == 1
    sleep.assert_not_called()
    assert len(sink.named("upstream.fetch_failed")) == 1


def test_malformed_body_is_rejected(sink):
    provider, sleep = _provider(lambda request: httpx.Response(200, text="<html>oops</html>"), sink)
    with pytest.raises(UpstreamRejected):
        provider.fetch(FROM, NOW)
    sleep.assert_not_called()

    provider, _ = _provider(lambda request: httpx.Response(200, json={"data": []}), sink)
    with pytest.raises(UpstreamRejected):
        provider.fetch(FROM, NOW)


def test_undecodable_body_is_rejected_and_reported(sink):
    def handler(request):
        raise httpx.DecodingError("bad gzip stream", request=request)

    provider, sleep = _provider(handler, sink)
    with pytest.raises(UpstreamRejected):
        provider.fetch(FROM, NOW)

    sleep.assert_not_called()
    failed = sink.named("upstream.fetch_failed")
    assert len(failed) == 1
    assert failed[0]["kind"] == "rejected"


def test_unexpected_request_error_is_reported_as_unavailable(sink):
    def handler(request):
        raise httpx.TooManyRedirects("redirect loop", request=request)

    provider, sleep = _provider(handler, sink)
    with pytest.raises(UpstreamUnavailable):
        provider.fetch(FROM, NOW)

    sleep.assert_not_called()
    assert len(sink.named("upstream.attempt")) == 1
    failed = sink.named("upstream.fetch_failed")
    assert len(failed) == 1
    assert failed[0]["kind"] == "unavailable"
    assert sink.named("upstream.fetch_succeeded") == []


def test_window_in_the_future_is_a_caller_error(sink):
    provider, _ = _provider(lambda request: httpx.Response(200, json={"items": []}), sink)
    with pytest.raises(ValueError):
        provider.fetch(FROM, NOW + timedelta(hours=1))


def test_sink_failure_does_not_break_fetch():
    broken = MagicMock()
    broken.record.side_effect = RuntimeError("sink down")

    provider, _ = _provider(lambda request: httpx.Response(200, json={"items": [{"obr_id": "1"}]}), broken)
    assert provider.fetch(FROM, NOW) == [{"obr_id": "1"}]
