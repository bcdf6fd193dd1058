from __future__ import annotations

import logging
from typing import Any

import httpx

from .base import Classification, ClassificationProvider


logger = logging.getLogger(__name__)


class HttpClassificationProvider(ClassificationProvider):
    """
    Posts `{title, description}` to an external classifier and reads back
    `{classification, suggestion}`. Either field may be missing.
    """

    def __init__(self, url: str, *, timeout_seconds: float = 30.0, transport: httpx.BaseTransport | None = None):
        self._url = url
        self._timeout = timeout_seconds
        self._transport = transport

    @property
    def profile_family(self) -> str:
        return "http"

    def classify(self, title: str, description: str) -> Classification:
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            resp = client.post(self._url, json={"title": title, "description": description})
            resp.raise_for_status()
            data: Any = resp.json()
        if not isinstance(data, dict):
            logger.warning("Classifier returned %s instead of an object.", type(data).__name__)
            return Classification()
        return Classification(
            classification=_as_text(data.get("classification")),
            suggestion=_as_text(data.get("suggestion")),
        )


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
