from __future__ import annotations


class IntakeError(Exception):
    """Base class for errors raised by the intake core."""


class UpstreamError(IntakeError):
    def __init__(self, message: str, *, attempts: int = 1, status_code: int | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.status_code = status_code


class UpstreamUnavailable(UpstreamError):
    """Transient upstream failure that survived every retry attempt."""


class UpstreamRejected(UpstreamError):
    """Permanent upstream failure (4xx other than rate limiting, or a malformed body)."""


class MappingFailure(IntakeError):
    """A single record could not be mapped or persisted; the batch carries on."""


class InvalidTransition(IntakeError):
    def __init__(self, message: str, *, current: str | None = None, requested: str | None = None):
        super().__init__(message)
        self.current = current
        self.requested = requested


class NotFound(IntakeError):
    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class ConcurrentModification(IntakeError):
    """The row changed between read and write (stale `version`)."""


class DuplicateCard(IntakeError):
    def __init__(self, raw_record_id: str):
        super().__init__(f"task card already exists for raw record {raw_record_id}")
        self.raw_record_id = raw_record_id
