from __future__ import annotations

import abc
from datetime import datetime
from typing import Any

from pydantic import BaseModel


class Provider(abc.ABC):
    """
    Base class for all providers.
    Every concrete provider declares the transport family it belongs to ('http', 'db', 'log', ...).
    """

    @property
    @abc.abstractmethod
    def profile_family(self) -> str:
        """The transport family this provider belongs to."""
        pass


class UpstreamProvider(Provider):
    """
    Interface for the external appeals portal.
    """

    @abc.abstractmethod
    def fetch(self, from_time: datetime, to_time: datetime) -> list[dict[str, Any]]:
        """
        Returns the external records changed in `[from_time, to_time)`.
        Raises UpstreamUnavailable (transient, retries exhausted) or UpstreamRejected (permanent).
        """
        pass


class ObservabilitySink(Provider):
    """
    Receives one event per ingestion attempt, promotion outcome and status transition.
    Implementations may raise; callers go through `emit()` so a failing sink never aborts the core.
    """

    @abc.abstractmethod
    def record(self, event: str, fields: dict[str, Any]) -> None:
        pass


class Classification(BaseModel):
    classification: str | None = None
    suggestion: str | None = None


class ClassificationProvider(Provider):
    """
    Optional hook run after a card is created. Its output is stored as opaque annotations and
    never influences status.
    """

    @abc.abstractmethod
    def classify(self, title: str, description: str) -> Classification:
        pass
