from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..models import Priority, TaskStatus
from ..text_utils import normalize_text, repair_encoding, truncate_text
from ..time_utils import _parse_datetime
from ..vocabulary import is_truthy_flag, translate_request_type, translate_status


logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 150
SUMMARY_MAX_LENGTH = 200
DEFAULT_TITLE = "Обращение из eOtinish"
DEFAULT_REQUESTER = "Не указано"
DEFAULT_CONTACT = "Не указано"
DEFAULT_DESCRIPTION = "Без описания"

# Upstream field -> metadata key, copied verbatim.
_METADATA_FIELDS = {
    "reg_num": "external_reg_num",
    "region": "region",
    "rayon": "district",
    "nas_punkt": "locality",
    "category": "category",
    "subcategory": "subcategory",
    "org_name": "responsible_org",
    "SDU_LOAD_DATE": "external_load_date",
}

_EXTERNAL_ID_FIELDS = ("obr_id", "id", "external_id")


class MappedRecord(BaseModel):
    external_id: str | None = None
    title: str = DEFAULT_TITLE
    description: str = DEFAULT_DESCRIPTION
    requester_name: str = DEFAULT_REQUESTER
    contact_info: str = DEFAULT_CONTACT
    request_type: str
    status: TaskStatus = TaskStatus.NEW
    priority: Priority = Priority.MEDIUM
    summary: str | None = None
    deadline: datetime | None = None
    flagged_overdue: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


def extract_external_id(record: Any) -> str | None:
    if not isinstance(record, Mapping):
        return None
    for key in _EXTERNAL_ID_FIELDS:
        value = record.get(key)
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def split_subject(text: str) -> tuple[str | None, str | None]:
    """
    Subject is the first non-empty line; description is everything after it, or the
    whole text when there is only one line.
    """
    lines = [normalize_text(line) for line in repair_encoding(text).splitlines()]
    lines = [line for line in lines if line]
    if not lines:
        return None, None
    subject = truncate_text(lines[0], TITLE_MAX_LENGTH)
    if len(lines) == 1:
        return subject, lines[0]
    return subject, "\n".join(lines[1:])


def _first_text(record: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = normalize_text(record.get(key))
        if value:
            return value
    return None


def _summary(description: str | None) -> str | None:
    if not description:
        return None
    if len(description) <= SUMMARY_MAX_LENGTH:
        return description
    return description[:SUMMARY_MAX_LENGTH] + "..."


def map_external_record(record: Any) -> MappedRecord:
    """
    Map one upstream appeal into task card fields.

    Never raises: anything that cannot be derived falls back to a safe default.
    """
    if not isinstance(record, Mapping):
        logger.warning("Upstream record is not an object (%s); mapping to defaults.", type(record).__name__)
        record = {}

    fields: dict[str, Any] = {"request_type": translate_request_type(record.get("reg_type")).value}
    fields["external_id"] = extract_external_id(record)

    raw_text = record.get("text") if isinstance(record.get("text"), str) else ""
    subject, description = split_subject(raw_text)
    if subject is None:
        explicit_subject = _first_text(record, "subject", "title")
        subject = truncate_text(explicit_subject, TITLE_MAX_LENGTH) if explicit_subject else DEFAULT_TITLE
    fields["title"] = subject
    fields["description"] = description or DEFAULT_DESCRIPTION
    fields["summary"] = _summary(description)

    fields["requester_name"] = _first_text(record, "fio", "full_name", "name") or DEFAULT_REQUESTER
    fields["contact_info"] = _first_text(record, "contact", "email", "phone") or DEFAULT_CONTACT

    status = translate_status(record.get("status"))
    flagged_overdue = is_truthy_flag(record.get("overdue"))
    deadline = _parse_datetime(record.get("deadline"))
    fields["status"] = status
    fields["priority"] = Priority.HIGH if flagged_overdue else Priority.MEDIUM
    fields["deadline"] = deadline
    fields["flagged_overdue"] = flagged_overdue

    metadata: dict[str, Any] = {"source": "eotinish"}
    if fields["external_id"]:
        metadata["external_id"] = fields["external_id"]
    for upstream_key, meta_key in _METADATA_FIELDS.items():
        value = record.get(upstream_key)
        if value is not None:
            metadata[meta_key] = value
    if record.get("status") is not None:
        metadata["external_status"] = record.get("status")
    fields["metadata"] = metadata

    return MappedRecord(**fields)
