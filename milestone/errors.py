# milestone/errors.py
from __future__ import annotations


class MilestoneError(Exception):
    """Base for everything the ingestion core raises on purpose."""


# ----------------------------
# 400: the request itself is wrong, a retry won't help
# ----------------------------
class AuthenticationError(MilestoneError):
    pass


class InvalidHeader(AuthenticationError):
    pass


class StaleTimestamp(AuthenticationError):
    pass


class SignatureMismatch(AuthenticationError):
    pass


class ValidationError(MilestoneError):
    pass


class MissingEventId(ValidationError):
    pass


class MalformedPayload(ValidationError):
    pass


# ----------------------------
# 5xx / 409: transient, the sender should retry
# ----------------------------
class StorageError(MilestoneError):
    pass


class ContentionError(StorageError):
    """CAS loop on a counter ran out of attempts."""


class EventInFlight(MilestoneError):
    """Another delivery of the same event id holds the processing lease."""

    def __init__(self, event_id: str):
        super().__init__(f"event {event_id} is being processed")
        self.event_id = event_id
