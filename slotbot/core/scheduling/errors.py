"""Booking error taxonomy.

Business-rule rejections (ValidationError, ConflictError, NotFoundError) are
recoverable in the dialogue; StorageError is an infrastructure failure.
Every error carries a machine-readable reason and a message key that the
transport localizes.
"""

from enum import Enum
from typing import Optional


class ErrorReason(str, Enum):
    """Why a booking request was rejected."""

    INVALID_INPUT = "invalid_input"
    START_IN_PAST = "start_in_past"
    OUTSIDE_WORKING_HOURS = "outside_working_hours"
    STAFF_NOT_FOUND = "staff_not_found"
    STAFF_INACTIVE = "staff_inactive"
    SERVICE_NOT_FOUND = "service_not_found"
    BOOKING_NOT_FOUND = "booking_not_found"
    BUSINESS_NOT_FOUND = "business_not_found"
    WAITLIST_UNAVAILABLE = "waitlist_unavailable"
    SLOT_TAKEN = "slot_taken"
    STORAGE_FAILURE = "storage_failure"


class BookingError(Exception):
    """Base class for all booking errors."""

    default_reason = ErrorReason.INVALID_INPUT

    def __init__(
        self,
        reason: Optional[ErrorReason] = None,
        detail: str = "",
        message_key: Optional[str] = None,
    ):
        self.reason = reason or self.default_reason
        self.detail = detail
        self.message_key = message_key or f"error.{self.reason.value}"
        super().__init__(detail or self.reason.value)

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "reason": self.reason.value,
            "message_key": self.message_key,
            "detail": self.detail,
        }


class ValidationError(BookingError):
    """Bad or missing input; the customer is asked again."""

    default_reason = ErrorReason.INVALID_INPUT


class ConflictError(BookingError):
    """The interval overlaps a CONFIRMED booking for the same staff member."""

    default_reason = ErrorReason.SLOT_TAKEN


class NotFoundError(BookingError):
    """Staff or service no longer exists or is no longer active."""

    default_reason = ErrorReason.STAFF_NOT_FOUND


class StorageError(BookingError):
    """Transaction or commit failure unrelated to business rules.

    ``transient`` marks failures worth retrying, such as serialization
    failures or deadlocks under contention.
    """

    default_reason = ErrorReason.STORAGE_FAILURE

    def __init__(self, detail: str = "", transient: bool = False):
        super().__init__(ErrorReason.STORAGE_FAILURE, detail, "error.retry_later")
        self.transient = transient
