"""
Storage ports for scheduling data, plus an in-memory implementation.

The allocation transaction is the one place where customers contend: whatever
runs inside ``allocation(staff_id)`` sees a stable view of that staff member's
bookings and commits atomically on exit, or not at all.
"""

import asyncio
import logging
import weakref
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import date, datetime
from typing import AsyncContextManager, AsyncIterator, Iterable, Optional

from slotbot.core.scheduling.types import (
    Booking,
    BookingCreatedEvent,
    BookingStatus,
    Business,
    ServiceSpec,
    Staff,
    WaitlistEntry,
    WaitlistStatus,
)

logger = logging.getLogger(__name__)


class AllocationTransaction(ABC):
    """Operations available while a staff member's bookings are locked."""

    @abstractmethod
    async def find_overlapping(self, staff_id: str, start: datetime, end: datetime) -> list[Booking]:
        raise NotImplementedError

    @abstractmethod
    async def booking_code_exists(self, business_id: str, code: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def insert_booking(self, booking: Booking) -> Booking:
        raise NotImplementedError


class SchedulingRepository(ABC):
    """Read access to businesses, staff, services and bookings."""

    @abstractmethod
    async def get_business(self, business_id: str) -> Optional[Business]:
        raise NotImplementedError

    @abstractmethod
    async def get_staff(self, staff_id: str) -> Optional[Staff]:
        raise NotImplementedError

    @abstractmethod
    async def list_staff(self, business_id: str, active_only: bool = True) -> list[Staff]:
        raise NotImplementedError

    @abstractmethod
    async def get_service(self, service_id: str) -> Optional[ServiceSpec]:
        raise NotImplementedError

    @abstractmethod
    async def list_services(self, business_id: str, active_only: bool = True) -> list[ServiceSpec]:
        raise NotImplementedError

    @abstractmethod
    async def list_confirmed_bookings(
        self,
        staff_ids: Iterable[str],
        window_start: datetime,
        window_end: datetime,
    ) -> list[Booking]:
        """CONFIRMED bookings of these staff overlapping the window, by start."""
        raise NotImplementedError

    @abstractmethod
    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        raise NotImplementedError

    @abstractmethod
    async def set_booking_status(self, booking_id: str, status: BookingStatus) -> Optional[Booking]:
        raise NotImplementedError

    @abstractmethod
    def allocation(self, staff_id: str) -> AsyncContextManager[AllocationTransaction]:
        """Async context manager that serializes allocations for ``staff_id``."""
        raise NotImplementedError


class WaitlistRepository(ABC):
    """Persistence for waitlist entries."""

    @abstractmethod
    async def add_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        """Store ``entry`` at the next queue position for its business and date."""
        raise NotImplementedError

    @abstractmethod
    async def next_position(self, business_id: str, desired_date: date) -> int:
        raise NotImplementedError

    @abstractmethod
    async def get_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        raise NotImplementedError

    @abstractmethod
    async def list_entries(
        self,
        business_id: str,
        desired_date: Optional[date] = None,
        statuses: Optional[Iterable[WaitlistStatus]] = None,
        customer_id: Optional[str] = None,
    ) -> list[WaitlistEntry]:
        """Entries ordered by queue position."""
        raise NotImplementedError

    @abstractmethod
    async def save_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        raise NotImplementedError


class _InMemoryAllocation(AllocationTransaction):
    """Stages inserts and applies them only if the block exits cleanly."""

    def __init__(self, repository: "InMemoryRepository"):
        self._repository = repository
        self.staged: list[Booking] = []

    async def find_overlapping(self, staff_id: str, start: datetime, end: datetime) -> list[Booking]:
        await asyncio.sleep(0)
        return [
            b for b in list(self._repository.bookings.values()) + self.staged
            if b.staff_id == staff_id and b.is_blocking and b.overlaps(start, end)
        ]

    async def booking_code_exists(self, business_id: str, code: str) -> bool:
        return any(
            b.business_id == business_id and b.booking_code == code
            for b in list(self._repository.bookings.values()) + self.staged
        )

    async def insert_booking(self, booking: Booking) -> Booking:
        await asyncio.sleep(0)
        self.staged.append(booking)
        return booking


class InMemoryRepository(SchedulingRepository, WaitlistRepository):
    """
    Process-local store used in development and tests.

    Allocations for the same staff member are serialized with an
    ``asyncio.Lock``; the overlap re-check and the insert happen under it.
    """

    def __init__(self):
        self.businesses: dict[str, Business] = {}
        self.staff: dict[str, Staff] = {}
        self.services: dict[str, ServiceSpec] = {}
        self.bookings: dict[str, Booking] = {}
        self.waitlist: dict[str, WaitlistEntry] = {}
        self._staff_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._waitlist_lock = asyncio.Lock()

    # === Seeding ===

    def add_business(self, business: Business) -> Business:
        self.businesses[business.id] = business
        return business

    def add_staff(self, staff: Staff) -> Staff:
        self.staff[staff.id] = staff
        return staff

    def add_service(self, service: ServiceSpec) -> ServiceSpec:
        self.services[service.id] = service
        return service

    def add_booking(self, booking: Booking) -> Booking:
        self.bookings[booking.id] = booking
        return booking

    # === SchedulingRepository ===

    async def get_business(self, business_id: str) -> Optional[Business]:
        return self.businesses.get(business_id)

    async def get_staff(self, staff_id: str) -> Optional[Staff]:
        return self.staff.get(staff_id)

    async def list_staff(self, business_id: str, active_only: bool = True) -> list[Staff]:
        return sorted(
            (s for s in self.staff.values() if s.business_id == business_id and (s.is_active or not active_only)),
            key=lambda s: s.id,
        )

    async def get_service(self, service_id: str) -> Optional[ServiceSpec]:
        return self.services.get(service_id)

    async def list_services(self, business_id: str, active_only: bool = True) -> list[ServiceSpec]:
        return sorted(
            (s for s in self.services.values() if s.business_id == business_id and (s.is_active or not active_only)),
            key=lambda s: s.name,
        )

    async def list_confirmed_bookings(
        self,
        staff_ids: Iterable[str],
        window_start: datetime,
        window_end: datetime,
    ) -> list[Booking]:
        wanted = set(staff_ids)
        return sorted(
            (
                b for b in self.bookings.values()
                if b.staff_id in wanted and b.is_blocking and b.overlaps(window_start, window_end)
            ),
            key=lambda b: b.start,
        )

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        return self.bookings.get(booking_id)

    async def set_booking_status(self, booking_id: str, status: BookingStatus) -> Optional[Booking]:
        booking = self.bookings.get(booking_id)
        if booking is None:
            return None
        booking.status = status
        return booking

    @asynccontextmanager
    async def allocation(self, staff_id: str) -> AsyncIterator[AllocationTransaction]:
        lock = self._staff_locks.setdefault(staff_id, asyncio.Lock())
        async with lock:
            tx = _InMemoryAllocation(self)
            yield tx
            for booking in tx.staged:
                self.bookings[booking.id] = booking
            logger.debug(f"Committed {len(tx.staged)} booking(s) for staff {staff_id}")

    # === WaitlistRepository ===

    async def next_position(self, business_id: str, desired_date: date) -> int:
        positions = [
            e.position for e in self.waitlist.values()
            if e.business_id == business_id and e.desired_date == desired_date
        ]
        return max(positions, default=0) + 1

    async def add_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        async with self._waitlist_lock:
            entry.position = await self.next_position(entry.business_id, entry.desired_date)
            self.waitlist[entry.id] = entry
        return entry

    async def get_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        entry = self.waitlist.get(entry_id)
        return replace(entry) if entry else None

    async def list_entries(
        self,
        business_id: str,
        desired_date: Optional[date] = None,
        statuses: Optional[Iterable[WaitlistStatus]] = None,
        customer_id: Optional[str] = None,
    ) -> list[WaitlistEntry]:
        wanted = set(statuses) if statuses is not None else None
        return sorted(
            (
                replace(e) for e in self.waitlist.values()
                if e.business_id == business_id
                and (desired_date is None or e.desired_date == desired_date)
                and (wanted is None or e.status in wanted)
                and (customer_id is None or e.customer_id == customer_id)
            ),
            key=lambda e: (e.desired_date, e.position),
        )

    async def save_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        self.waitlist[entry.id] = replace(entry)
        return entry


class EventPublisher(ABC):
    """Outbound port for booking-created events."""

    @abstractmethod
    async def publish(self, event: BookingCreatedEvent) -> None:
        raise NotImplementedError
