from __future__ import annotations

import logging

from .db import _db_execute


_logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS raw_records (
      id uuid PRIMARY KEY,
      external_id text NOT NULL,
      payload_jsonb jsonb NOT NULL DEFAULT '{}'::jsonb,
      payload_hash text NOT NULL,
      ingested_at timestamptz NOT NULL,
      updated_at timestamptz NOT NULL,
      processed boolean NOT NULL DEFAULT false,
      error text,
      CONSTRAINT raw_records_external_id_key UNIQUE (external_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS raw_records_unprocessed_idx ON raw_records (ingested_at) WHERE processed = false",
    """
    CREATE TABLE IF NOT EXISTS task_cards (
      id uuid PRIMARY KEY,
      raw_record_id uuid REFERENCES raw_records (id),
      status text NOT NULL DEFAULT 'new',
      assigned_to text,
      department_id text,
      title text NOT NULL,
      requester_name text NOT NULL,
      contact_info text NOT NULL,
      request_type text NOT NULL,
      description text NOT NULL,
      priority text NOT NULL DEFAULT 'medium',
      summary text,
      deadline timestamptz,
      overdue boolean NOT NULL DEFAULT false,
      started_at timestamptz,
      completed_at timestamptz,
      confirmed_at timestamptz,
      metadata_jsonb jsonb NOT NULL DEFAULT '{}'::jsonb,
      classification text,
      suggestion text,
      created_at timestamptz NOT NULL,
      updated_at timestamptz NOT NULL,
      version integer NOT NULL DEFAULT 1,
      CONSTRAINT task_cards_status_check CHECK (status IN ('new', 'in_progress', 'awaiting_confirmation', 'done'))
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS task_cards_raw_record_id_key ON task_cards (raw_record_id) WHERE raw_record_id IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS task_cards_status_idx ON task_cards (status)",
    "CREATE INDEX IF NOT EXISTS task_cards_assigned_to_idx ON task_cards (assigned_to)",
    "CREATE INDEX IF NOT EXISTS task_cards_department_id_idx ON task_cards (department_id)",
    """
    CREATE TABLE IF NOT EXISTS task_card_history (
      seq bigserial,
      id uuid PRIMARY KEY,
      card_id uuid NOT NULL REFERENCES task_cards (id),
      previous_status text,
      new_status text NOT NULL,
      actor_id text,
      comment text,
      timestamp timestamptz NOT NULL,
      metadata_jsonb jsonb NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS task_card_history_card_idx ON task_card_history (card_id, timestamp, seq)",
    """
    CREATE TABLE IF NOT EXISTS sync_state (
      name text PRIMARY KEY,
      watermark timestamptz,
      last_run_at timestamptz,
      last_outcome_jsonb jsonb NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
      id uuid PRIMARY KEY,
      timestamp timestamptz NOT NULL,
      event_type text NOT NULL,
      actor_type text NOT NULL,
      actor_id text,
      card_id uuid,
      raw_record_id uuid,
      payload_jsonb jsonb NOT NULL DEFAULT '{}'::jsonb
    )
    """,
)


def apply_schema() -> None:
    """Create tables and indexes if they are missing. Safe to run repeatedly."""
    for statement in SCHEMA_STATEMENTS:
        _db_execute(statement)
    _logger.info("Applied %s schema statements.", len(SCHEMA_STATEMENTS))
