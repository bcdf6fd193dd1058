from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from fastapi import HTTPException

from .errors import ConcurrentModification, DuplicateCard, InvalidTransition, NotFound


def validate_uuid_or_400(value: str, *, field_name: str) -> str:
    try:
        return str(UUID(value))
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=400, detail=f"{field_name} must be a UUID") from exc


@contextmanager
def domain_errors_as_http() -> Iterator[None]:
    """Translate engine errors into HTTP responses."""
    try:
        yield
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransition as exc:
        raise HTTPException(
            status_code=400,
            detail={"error": str(exc), "current": exc.current, "requested": exc.requested},
        ) from exc
    except (ConcurrentModification, DuplicateCard) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
