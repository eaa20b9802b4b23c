from __future__ import annotations


class IcsMirrorError(Exception):
    """Base class for every error raised by icsmirror."""


class InvalidArgument(IcsMirrorError, ValueError):
    pass


class IncompleteRecord(IcsMirrorError):
    def __init__(self, missing_fields: list[str]) -> None:
        self.missing_fields = list(missing_fields)
        super().__init__(f"Event record is missing required fields: {', '.join(self.missing_fields)}")


class NotFound(IcsMirrorError, LookupError):
    pass


class StoreUnavailable(IcsMirrorError):
    """A UID persistence tier cannot serve the request right now."""


class SyncFailure(IcsMirrorError):
    attempts: int = 0

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransientSyncFailure(SyncFailure):
    """Network error, timeout or 5xx answer. Retried."""


class RejectedByServer(SyncFailure):
    """4xx answer from the CalDAV server. Never retried."""


class DurabilityDegraded(UserWarning):
    """Logged when UID persistence falls back to a non-durable tier."""
