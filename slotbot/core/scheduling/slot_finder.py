"""
Slot Finder.

Enumerates bookable start times for a (staff, service, date range):

1. Intersect business and staff hours into the effective schedule
2. Load CONFIRMED bookings overlapping the scan window (single query)
3. Walk each day from opening time in fixed steps
4. Keep candidates that fit working hours and overlap no booking
5. Stop at max_results

Offers are advisory; nothing here reserves anything. An empty list is a
normal outcome, not an error.
"""

import heapq
import logging
from datetime import date, datetime, time, timedelta, timezone
from itertools import islice
from typing import Callable, Iterable, Iterator, Optional
from zoneinfo import ZoneInfo

from slotbot.config import settings
from slotbot.core.availability import EffectiveSchedule, interval_fits, intersect_schedules
from slotbot.core.scheduling.repository import SchedulingRepository
from slotbot.core.scheduling.types import (
    Booking,
    Business,
    ServiceSpec,
    SlotOffer,
    Staff,
    as_utc,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def scan_slots(
    effective: EffectiveSchedule,
    bookings: list[Booking],
    duration_minutes: int,
    block_minutes: int,
    from_date: date,
    to_date: date,
    granularity_minutes: int,
    not_before: Optional[datetime] = None,
) -> Iterator[datetime]:
    """Yield acceptable start times in strictly increasing order.

    Args:
        effective: Business hours intersected with staff hours
        bookings: CONFIRMED bookings of the staff member, sorted by start
        duration_minutes: Time that must fit inside working hours
        block_minutes: Time the booking occupies (duration + buffer)
        from_date: First local calendar day to scan
        to_date: Last local calendar day to scan (inclusive)
        granularity_minutes: Step between candidates
        not_before: Earliest acceptable start (usually "now")
    """
    step = timedelta(minutes=granularity_minutes)
    duration = timedelta(minutes=duration_minutes)
    block = timedelta(minutes=block_minutes)

    day = from_date
    while day <= to_date:
        window = effective.opening_window(day)
        if window is not None:
            open_at, close_at = window
            # Only bookings touching this day can conflict with its candidates
            day_bookings = [
                b for b in bookings if b.start < close_at + block and open_at < b.end
            ]
            candidate = open_at
            while candidate + duration <= close_at:
                candidate_end = candidate + block
                if (
                    (not_before is None or candidate >= not_before)
                    and interval_fits(effective, candidate, duration_minutes)
                    and not any(b.overlaps(candidate, candidate_end) for b in day_bookings)
                ):
                    yield candidate
                candidate += step
        day += timedelta(days=1)


class SlotFinder:
    """
    Finds available slots for a staff member, or for any eligible staff.

    Storage access happens up front; the scan itself is synchronous.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        clock: Optional[Callable[[], datetime]] = None,
        granularity_minutes: Optional[int] = None,
        default_duration_minutes: Optional[int] = None,
    ):
        self._repository = repository
        self._clock = clock or _utcnow
        self._granularity = granularity_minutes or settings.slot_granularity_minutes
        self._default_duration = default_duration_minutes or settings.default_service_duration_minutes

    async def find_slots(
        self,
        business_id: str,
        staff_id: Optional[str],
        service_id: Optional[str],
        from_date: date,
        to_date: date,
        max_results: int,
        default_duration_minutes: Optional[int] = None,
        exclude_offer_ids: Iterable[str] = (),
    ) -> list[SlotOffer]:
        """Find up to ``max_results`` offers ordered by start time.

        Args:
            business_id: Business the booking is for
            staff_id: Staff member, or None for any eligible staff
            service_id: Service, or None when unknown
            from_date: First local day of the search
            to_date: Last local day of the search (inclusive)
            max_results: Maximum offers to return
            default_duration_minutes: Duration used when the service is unknown
            exclude_offer_ids: Offers known to be taken

        Returns:
            Offers in increasing start order, ties broken by staff id
        """
        if max_results <= 0 or to_date < from_date:
            return []

        business = await self._repository.get_business(business_id)
        if business is None:
            logger.warning(f"Business not found: {business_id}")
            return []

        service = await self._repository.get_service(service_id) if service_id else None
        if service is not None and (not service.is_active or service.business_id != business_id):
            logger.info(f"Service {service_id} is not bookable at {business_id}")
            return []

        staff_members = await self._eligible_staff(business_id, staff_id, service_id)
        if not staff_members:
            logger.info(f"No eligible staff for service {service_id} at {business_id}")
            return []

        duration = service.duration_minutes if service else (
            default_duration_minutes or self._default_duration
        )
        block = service.block_minutes if service else duration

        window_start, window_end = self._window(business, from_date, to_date)
        bookings = await self._repository.list_confirmed_bookings(
            [s.id for s in staff_members], window_start, window_end
        )

        excluded = set(exclude_offer_ids)
        now = self._clock()
        streams = [
            self._offers_for_staff(
                business, member, service, bookings, duration, block, from_date, to_date, now, excluded
            )
            for member in staff_members
        ]
        merged = heapq.merge(*streams, key=lambda offer: offer.sort_key)
        offers = list(islice(merged, max_results))

        logger.debug(
            f"Found {len(offers)} slot(s) for service {service_id} "
            f"({len(staff_members)} staff, {from_date}..{to_date})"
        )
        return offers

    async def _eligible_staff(
        self,
        business_id: str,
        staff_id: Optional[str],
        service_id: Optional[str],
    ) -> list[Staff]:
        if staff_id:
            member = await self._repository.get_staff(staff_id)
            if (
                member is None
                or not member.is_active
                or member.business_id != business_id
                or not member.performs(service_id)
            ):
                return []
            return [member]
        members = await self._repository.list_staff(business_id, active_only=True)
        return sorted((m for m in members if m.performs(service_id)), key=lambda m: m.id)

    def _window(self, business: Business, from_date: date, to_date: date) -> tuple[datetime, datetime]:
        """UTC bounds covering every local day in the range."""
        zone = ZoneInfo(business.schedule.timezone)
        start = datetime.combine(from_date, time.min, tzinfo=zone)
        end = datetime.combine(to_date + timedelta(days=1), time.min, tzinfo=zone)
        return as_utc(start), as_utc(end)

    def _offers_for_staff(
        self,
        business: Business,
        member: Staff,
        service: Optional[ServiceSpec],
        bookings: list[Booking],
        duration: int,
        block: int,
        from_date: date,
        to_date: date,
        now: datetime,
        excluded: set[str],
    ) -> Iterator[SlotOffer]:
        effective = intersect_schedules(business.schedule, member.hours(business))
        own_bookings = [b for b in bookings if b.staff_id == member.id]
        service_id = service.id if service else None
        for start in scan_slots(
            effective, own_bookings, duration, block, from_date, to_date, self._granularity, now
        ):
            offer = SlotOffer(
                staff_id=member.id,
                staff_name=member.name,
                service_id=service_id,
                start=start,
                end=start + timedelta(minutes=block),
            )
            if offer.offer_id not in excluded:
                yield offer
