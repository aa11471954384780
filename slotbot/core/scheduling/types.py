"""Scheduling domain records shared by the slot finder, allocator and dialogue."""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from slotbot.core.availability import WorkingSchedule


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class BookingStatus(str, Enum):
    """Booking lifecycle. Only CONFIRMED blocks an interval."""

    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


class WaitlistStatus(str, Enum):
    """Waitlist entry lifecycle."""

    ACTIVE = "ACTIVE"
    NOTIFIED = "NOTIFIED"
    BOOKED = "BOOKED"
    EXPIRED = "EXPIRED"


@dataclass(frozen=True)
class Business:
    """Business (tenant) with its opening hours."""

    id: str
    name: str
    schedule: WorkingSchedule = field(default_factory=WorkingSchedule)
    timezone: str = "UTC"
    default_language: str = "en"

    def __post_init__(self) -> None:
        # Schedule times are read in the business timezone
        if self.schedule.timezone != self.timezone:
            object.__setattr__(self, "schedule", replace(self.schedule, timezone=self.timezone))


@dataclass(frozen=True)
class Staff:
    """Staff member who performs services."""

    id: str
    business_id: str
    name: str
    schedule: Optional[WorkingSchedule] = None  # None = business hours
    is_active: bool = True
    service_ids: frozenset[str] = frozenset()  # empty = performs every service

    def performs(self, service_id: Optional[str]) -> bool:
        return not self.service_ids or service_id is None or service_id in self.service_ids

    def hours(self, business: Business) -> WorkingSchedule:
        """Own working hours, or the business hours when none are set."""
        return self.schedule if self.schedule is not None else business.schedule


@dataclass(frozen=True)
class ServiceSpec:
    """Bookable service. Duration and buffer are in minutes."""

    id: str
    business_id: str
    name: str
    duration_minutes: int
    buffer_minutes: int = 0
    is_active: bool = True

    def __post_init__(self) -> None:
        if self.duration_minutes <= 0:
            raise ValueError("Service duration must be positive")
        if self.buffer_minutes < 0:
            raise ValueError("Service buffer cannot be negative")

    @property
    def block_minutes(self) -> int:
        """Minutes the service keeps the staff member busy."""
        return self.duration_minutes + self.buffer_minutes


@dataclass
class Booking:
    """A booked interval ``[start, end)``; ``end`` includes the service buffer."""

    id: str
    business_id: str
    staff_id: str
    customer_id: str
    start: datetime
    end: datetime
    booking_code: str
    service_id: Optional[str] = None  # legacy free-text bookings have none
    status: BookingStatus = BookingStatus.CONFIRMED
    created_at: datetime = field(default_factory=_utcnow)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and self.start < end

    @property
    def is_blocking(self) -> bool:
        return self.status == BookingStatus.CONFIRMED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "staff_id": self.staff_id,
            "service_id": self.service_id,
            "customer_id": self.customer_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "booking_code": self.booking_code,
            "status": self.status.value,
        }


def make_offer_id(staff_id: str, service_id: Optional[str], start: datetime) -> str:
    """Short id that only ever names this exact (staff, service, start)."""
    raw = f"{staff_id}|{service_id or ''}|{as_utc(start).isoformat()}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:8]


@dataclass(frozen=True)
class SlotOffer:
    """A candidate start time shown to a customer. Not a reservation."""

    staff_id: str
    start: datetime
    end: datetime
    service_id: Optional[str] = None
    staff_name: str = ""
    offer_id: str = ""

    def __post_init__(self) -> None:
        if not self.offer_id:
            object.__setattr__(self, "offer_id", make_offer_id(self.staff_id, self.service_id, self.start))

    @property
    def sort_key(self) -> tuple:
        return (as_utc(self.start), self.staff_id)

    def to_dict(self) -> dict:
        return {
            "offer_id": self.offer_id,
            "staff_id": self.staff_id,
            "staff_name": self.staff_name,
            "service_id": self.service_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SlotOffer":
        return cls(
            staff_id=data["staff_id"],
            staff_name=data.get("staff_name", ""),
            service_id=data.get("service_id"),
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            offer_id=data.get("offer_id", ""),
        )


@dataclass
class WaitlistEntry:
    """A customer queued for a fully booked date."""

    business_id: str
    customer_id: str
    desired_date: date
    position: int
    service_id: Optional[str] = None
    staff_id: Optional[str] = None  # None = any staff member
    status: WaitlistStatus = WaitlistStatus.ACTIVE
    id: str = field(default_factory=lambda: str(uuid4()))
    expires_at: Optional[datetime] = None
    offered_staff_id: Optional[str] = None
    offered_start: Optional[datetime] = None
    booking_id: Optional[str] = None
    language: str = "en"
    created_at: datetime = field(default_factory=_utcnow)

    def notification_expired(self, now: datetime) -> bool:
        return (
            self.status == WaitlistStatus.NOTIFIED
            and self.expires_at is not None
            and self.expires_at <= now
        )

    def clear_offer(self) -> None:
        """Drop the held slot and return to the queue."""
        self.status = WaitlistStatus.ACTIVE
        self.expires_at = None
        self.offered_staff_id = None
        self.offered_start = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "service_id": self.service_id,
            "staff_id": self.staff_id,
            "desired_date": self.desired_date.isoformat(),
            "status": self.status.value,
            "position": self.position,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "offered_staff_id": self.offered_staff_id,
            "offered_start": self.offered_start.isoformat() if self.offered_start else None,
            "booking_id": self.booking_id,
            "language": self.language,
        }


@dataclass(frozen=True)
class BookingCreatedEvent:
    """Emitted after a booking commits; consumed by reminder scheduling."""

    booking_id: str
    business_id: str
    customer_id: str
    staff_id: str
    service_id: Optional[str]
    start: datetime
    end: datetime
    booking_code: str

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingCreatedEvent":
        return cls(
            booking_id=booking.id,
            business_id=booking.business_id,
            customer_id=booking.customer_id,
            staff_id=booking.staff_id,
            service_id=booking.service_id,
            start=booking.start,
            end=booking.end,
            booking_code=booking.booking_code,
        )

    def to_dict(self) -> dict:
        return {
            "booking_id": self.booking_id,
            "business_id": self.business_id,
            "customer_id": self.customer_id,
            "staff_id": self.staff_id,
            "service_id": self.service_id,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "booking_code": self.booking_code,
        }


def block_end(start: datetime, service: Optional[ServiceSpec], default_duration_minutes: int) -> datetime:
    """End of the interval a booking at ``start`` would occupy."""
    minutes = service.block_minutes if service else default_duration_minutes
    return start + timedelta(minutes=minutes)
