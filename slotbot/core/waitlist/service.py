"""
Waitlist queue for fully booked dates.

Queue discipline per (business, date):
- ``enqueue`` appends at the next position (monotonic)
- ``run_sweep`` notifies the first ACTIVE entry for which a slot now
  exists; at most one notification is live at a time
- An unanswered notification reverts to ACTIVE at the *end* of the queue
- Entries for dates that have passed are EXPIRED

Sweeps are idempotent: with no new bookings, a second sweep changes nothing.
"""

import asyncio
import logging
import weakref
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, Optional, Union
from zoneinfo import ZoneInfo

from slotbot.config import settings
from slotbot.core.scheduling.allocator import BookingAllocator
from slotbot.core.scheduling.errors import (
    BookingError,
    ErrorReason,
    ValidationError,
)
from slotbot.core.scheduling.repository import SchedulingRepository, WaitlistRepository
from slotbot.core.scheduling.slot_finder import SlotFinder
from slotbot.core.scheduling.types import Booking, WaitlistEntry, WaitlistStatus, as_utc

logger = logging.getLogger(__name__)

OPEN_STATUSES = (WaitlistStatus.ACTIVE, WaitlistStatus.NOTIFIED)
UNAVAILABLE_KEY = "waitlist.unavailable"


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class WaitlistService:
    """Queue management and promotion for waitlist entries."""

    def __init__(
        self,
        repository: Union[SchedulingRepository, WaitlistRepository],
        slot_finder: SlotFinder,
        allocator: BookingAllocator,
        clock: Optional[Callable[[], datetime]] = None,
        notification_minutes: Optional[int] = None,
    ):
        self._repository = repository
        self._finder = slot_finder
        self._allocator = allocator
        self._clock = clock or _utcnow
        self._notification_minutes = notification_minutes or settings.waitlist_notification_minutes
        self._locks: "weakref.WeakValueDictionary[tuple[str, date], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @property
    def notification_minutes(self) -> int:
        return self._notification_minutes

    def _lock(self, business_id: str, day: date) -> asyncio.Lock:
        return self._locks.setdefault((business_id, day), asyncio.Lock())

    async def enqueue(
        self,
        business_id: str,
        customer_id: str,
        service_id: Optional[str],
        staff_id: Optional[str],
        desired_date: date,
        language: str = "en",
    ) -> WaitlistEntry:
        """
        Queue a customer for a date.

        A customer already waiting for the same date keeps their entry.
        """
        async with self._lock(business_id, desired_date):
            existing = await self._repository.list_entries(
                business_id, desired_date, OPEN_STATUSES, customer_id=customer_id
            )
            if existing:
                logger.debug(f"{customer_id} already waiting for {desired_date} at {business_id}")
                return existing[0]

            entry = await self._repository.add_entry(
                WaitlistEntry(
                    business_id=business_id,
                    customer_id=customer_id,
                    service_id=service_id,
                    staff_id=staff_id,
                    desired_date=desired_date,
                    position=0,
                    language=language,
                    created_at=self._clock(),
                )
            )
        logger.info(
            f"Waitlisted {customer_id} for {desired_date} at {business_id} "
            f"(position {entry.position})"
        )
        return entry

    async def run_sweep(
        self,
        business_id: str,
        day: date,
        skip_ids: Iterable[str] = (),
    ) -> list[WaitlistEntry]:
        """
        Re-check the queue for ``day`` and notify the first entry a slot fits.

        Returns:
            Entries notified by this sweep (zero or one)
        """
        async with self._lock(business_id, day):
            return await self._sweep(business_id, day, set(skip_ids))

    async def _sweep(self, business_id: str, day: date, skip: set[str]) -> list[WaitlistEntry]:
        now = self._clock()
        entries = await self._repository.list_entries(business_id, day, OPEN_STATUSES)
        if not entries:
            return []

        if day < await self._local_today(business_id, now):
            for entry in entries:
                entry.status = WaitlistStatus.EXPIRED
                await self._repository.save_entry(entry)
            logger.info(f"Expired {len(entries)} waitlist entr(ies) for past date {day}")
            return []

        for entry in entries:
            if entry.notification_expired(now):
                await self._requeue(entry)
                skip.add(entry.id)
                logger.info(f"Waitlist notification for {entry.customer_id} expired; requeued")

        entries = await self._repository.list_entries(business_id, day, OPEN_STATUSES)
        if any(e.status == WaitlistStatus.NOTIFIED for e in entries):
            return []

        for entry in entries:
            if entry.id in skip:
                continue
            offers = await self._finder.find_slots(
                business_id=business_id,
                staff_id=entry.staff_id,
                service_id=entry.service_id,
                from_date=day,
                to_date=day,
                max_results=1,
            )
            if not offers:
                continue

            offer = offers[0]
            entry.status = WaitlistStatus.NOTIFIED
            entry.expires_at = now + timedelta(minutes=self._notification_minutes)
            entry.offered_staff_id = offer.staff_id
            entry.offered_start = offer.start
            await self._repository.save_entry(entry)
            logger.info(
                f"Waitlist promotion: notified {entry.customer_id} (position {entry.position}) "
                f"of {offer.start.isoformat()} with {offer.staff_id}"
            )
            return [entry]
        return []

    async def accept(self, entry_id: str, customer_id: str) -> tuple[WaitlistEntry, Booking]:
        """
        Book the slot held for a NOTIFIED entry.

        On any booking rejection the entry goes back to ACTIVE at its
        original position and the error is re-raised.

        Raises:
            ValidationError: Entry unknown, not the customer's, or no longer held
            BookingError: Allocation was rejected
        """
        entry = await self._held_entry(entry_id, customer_id)
        async with self._lock(entry.business_id, entry.desired_date):
            entry = await self._held_entry(entry_id, customer_id)
            try:
                booking = await self._allocator.allocate(
                    staff_id=entry.offered_staff_id,
                    service_id=entry.service_id,
                    customer_id=customer_id,
                    requested_start=entry.offered_start,
                )
            except BookingError as e:
                if e.reason != ErrorReason.STORAGE_FAILURE:
                    entry.clear_offer()
                    await self._repository.save_entry(entry)
                    logger.info(f"Waitlist slot for {customer_id} could not be booked: {e.reason.value}")
                raise

            entry.status = WaitlistStatus.BOOKED
            entry.booking_id = booking.id
            await self._repository.save_entry(entry)

        logger.info(f"Waitlist entry {entry.id} booked as {booking.booking_code}")
        return entry, booking

    async def pass_entry(self, entry_id: str, customer_id: str) -> tuple[WaitlistEntry, list[WaitlistEntry]]:
        """
        Decline a held slot: requeue at the end and offer it to the next entry.

        Returns:
            The requeued entry and the entries notified in its place
        """
        entry = await self._held_entry(entry_id, customer_id)
        async with self._lock(entry.business_id, entry.desired_date):
            entry = await self._held_entry(entry_id, customer_id)
            await self._requeue(entry)
            notified = await self._sweep(entry.business_id, entry.desired_date, {entry.id})
        logger.info(f"{customer_id} passed on waitlist slot; requeued at {entry.position}")
        return entry, notified

    async def fulfil_for_customer(
        self,
        business_id: str,
        customer_id: str,
        day: date,
        booking_id: str,
    ) -> int:
        """Close a customer's open entries for ``day`` after they booked directly."""
        async with self._lock(business_id, day):
            entries = await self._repository.list_entries(
                business_id, day, OPEN_STATUSES, customer_id=customer_id
            )
            for entry in entries:
                entry.clear_offer()
                entry.status = WaitlistStatus.BOOKED
                entry.booking_id = booking_id
                await self._repository.save_entry(entry)
        if entries:
            logger.info(f"Closed {len(entries)} waitlist entr(ies) for {customer_id} on {day}")
        return len(entries)

    async def _held_entry(self, entry_id: str, customer_id: str) -> WaitlistEntry:
        entry = await self._repository.get_entry(entry_id) if entry_id else None
        if entry is None or entry.customer_id != customer_id:
            raise ValidationError(
                ErrorReason.WAITLIST_UNAVAILABLE, f"waitlist entry {entry_id} not found", UNAVAILABLE_KEY
            )
        if entry.status != WaitlistStatus.NOTIFIED or entry.notification_expired(self._clock()):
            raise ValidationError(
                ErrorReason.WAITLIST_UNAVAILABLE, f"waitlist entry {entry_id} holds no slot", UNAVAILABLE_KEY
            )
        return entry

    async def _requeue(self, entry: WaitlistEntry) -> None:
        entry.clear_offer()
        entry.position = await self._repository.next_position(entry.business_id, entry.desired_date)
        await self._repository.save_entry(entry)

    async def _local_today(self, business_id: str, now: datetime) -> date:
        business = await self._repository.get_business(business_id)
        zone = ZoneInfo(business.timezone) if business else timezone.utc
        return as_utc(now).astimezone(zone).date()
