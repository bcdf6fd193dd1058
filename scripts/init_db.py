#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys

from intake_api.db import init_db_pool, shutdown_db_pool
from intake_api.schema import apply_schema


def main() -> int:
    parser = argparse.ArgumentParser(description="Create the intake tables and indexes (idempotent).")
    parser.add_argument("--dsn", default=None, help="Postgres DSN (default: $INTAKE_DB_DSN)")
    args = parser.parse_args()

    init_db_pool(args.dsn)
    try:
        apply_schema()
    except Exception as exc:  # noqa: BLE001
        print(f"ERROR: could not apply schema: {exc}", file=sys.stderr)
        return 1
    finally:
        shutdown_db_pool()
    print("Schema applied.", flush=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
