from __future__ import annotations

from typing import Any

from .models import RequestType, TaskStatus


# Upstream status vocabulary (ru / kk / en) -> internal lifecycle status.
_STATUS_TABLE: dict[str, TaskStatus] = {
    "new": TaskStatus.NEW,
    "новое": TaskStatus.NEW,
    "новый": TaskStatus.NEW,
    "жаңа": TaskStatus.NEW,
    "зарегистрировано": TaskStatus.NEW,
    "тіркелді": TaskStatus.NEW,
    "in_progress": TaskStatus.IN_PROGRESS,
    "в процессе": TaskStatus.IN_PROGRESS,
    "в работе": TaskStatus.IN_PROGRESS,
    "в обработке": TaskStatus.IN_PROGRESS,
    "на рассмотрении": TaskStatus.IN_PROGRESS,
    "өңделуде": TaskStatus.IN_PROGRESS,
    "қаралуда": TaskStatus.IN_PROGRESS,
    "waiting": TaskStatus.AWAITING_CONFIRMATION,
    "awaiting_confirmation": TaskStatus.AWAITING_CONFIRMATION,
    "ожидание": TaskStatus.AWAITING_CONFIRMATION,
    "ожидает подтверждения": TaskStatus.AWAITING_CONFIRMATION,
    "күтуде": TaskStatus.AWAITING_CONFIRMATION,
    "answered": TaskStatus.DONE,
    "closed": TaskStatus.DONE,
    "done": TaskStatus.DONE,
    "rejected": TaskStatus.DONE,
    "отвечено": TaskStatus.DONE,
    "исполнено": TaskStatus.DONE,
    "закрыто": TaskStatus.DONE,
    "отклонено": TaskStatus.DONE,
    "жауап берілді": TaskStatus.DONE,
    "жауапберілді": TaskStatus.DONE,
    "жабық": TaskStatus.DONE,
    "қабылданбады": TaskStatus.DONE,
}

_REQUEST_TYPE_TABLE: dict[str, RequestType] = {
    "complaint": RequestType.COMPLAINT,
    "жалоба": RequestType.COMPLAINT,
    "шағым": RequestType.COMPLAINT,
    "proposal": RequestType.PROPOSAL,
    "предложение": RequestType.PROPOSAL,
    "ұсыныс": RequestType.PROPOSAL,
    "request": RequestType.APPLICATION,
    "заявление": RequestType.APPLICATION,
    "запрос": RequestType.APPLICATION,
    "сұрау": RequestType.APPLICATION,
    "өтініш": RequestType.APPLICATION,
    "appeal": RequestType.APPEAL,
    "обращение": RequestType.APPEAL,
    "шағымдану": RequestType.APPEAL,
    "gratitude": RequestType.GRATITUDE,
    "благодарность": RequestType.GRATITUDE,
    "алғыс": RequestType.GRATITUDE,
    "info": RequestType.INFORMATION_REQUEST,
    "информация": RequestType.INFORMATION_REQUEST,
    "ақпарат": RequestType.INFORMATION_REQUEST,
}

_TRUTHY_FLAGS = {"y", "yes", "1", "true", "да", "иә"}


def _vocab_key(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return " ".join(value.replace("_", " ").split()).lower()


def _lookup(table: dict[str, Any], value: Any) -> Any | None:
    key = _vocab_key(value)
    if not key:
        return None
    return table.get(key) or table.get(key.replace(" ", "_"))


def translate_status(value: Any) -> TaskStatus:
    return _lookup(_STATUS_TABLE, value) or TaskStatus.NEW


def translate_request_type(value: Any) -> RequestType:
    return _lookup(_REQUEST_TYPE_TABLE, value) or RequestType.GENERAL


def is_truthy_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    return _vocab_key(value) in _TRUTHY_FLAGS


def parse_status(value: Any) -> TaskStatus | None:
    """Strict parse of an internal status value (used for caller input, no fallback)."""
    if isinstance(value, TaskStatus):
        return value
    if not isinstance(value, str):
        return None
    try:
        return TaskStatus(value.strip())
    except ValueError:
        return None
