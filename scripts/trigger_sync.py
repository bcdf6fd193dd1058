#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def _http_json(method: str, url: str, timeout_seconds: float = 600.0) -> tuple[int, object]:
    req = urllib.request.Request(url, method=method, headers={"Accept": "application/json"})
    try:
        with urllib.request.urlopen(req, timeout=timeout_seconds) as resp:  # noqa: S310
            return resp.status, json.loads(resp.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as exc:
        # Non-2xx responses still carry the sync report.
        raw = exc.read().decode("utf-8", errors="replace")
        try:
            return exc.code, json.loads(raw or "{}")
        except ValueError:
            return exc.code, {"detail": raw[:600]}
    except urllib.error.URLError as exc:
        raise RuntimeError(str(exc)) from exc


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one manual sync pass through the intake API.")
    parser.add_argument("--api-base", default="http://localhost:8000", help="Intake API base URL (default: http://localhost:8000)")
    parser.add_argument("--timeout-seconds", type=float, default=600.0, help="HTTP timeout for the pass (default: 600s)")
    args = parser.parse_args()

    url = f"{args.api_base.rstrip('/')}/sync/run"
    print(f"Triggering sync: {url}", flush=True)
    try:
        code, body = _http_json("POST", url, timeout_seconds=args.timeout_seconds)
    except RuntimeError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 2

    report = body.get("sync") if isinstance(body, dict) else None
    if not isinstance(report, dict):
        print(f"Unexpected response ({code}): {body}", file=sys.stderr)
        return 2

    ingest = report.get("ingest") or {}
    promotion = report.get("promotion") or {}
    print(
        f"status={report.get('status')} received={ingest.get('received')} created={ingest.get('created')} "
        f"updated={ingest.get('updated')} promoted={promotion.get('total')} failed={promotion.get('failed')}",
        flush=True,
    )
    if report.get("error"):
        print(f"error: {report['error']}", file=sys.stderr)

    if report.get("status") in {"ok", "no_changes"}:
        return 0
    if report.get("status") in {"promotion_errors", "interrupted", "already_running"}:
        return 1
    return 3


if __name__ == "__main__":
    raise SystemExit(main())
