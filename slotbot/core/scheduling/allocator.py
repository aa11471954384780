"""
Booking Allocator.

Validates one requested slot and commits it atomically.

Validation order (first failure wins):
1. Start is timezone-aware and not in the past
2. Staff exists and is active (and the service, when given)
3. The service duration fits the effective working hours
4. No CONFIRMED overlap for the staff member, re-checked inside the
   commit transaction

Transient storage failures during the commit are retried a bounded number
of times. Conflicts are never retried.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from uuid import uuid4

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from slotbot.config import settings
from slotbot.core.availability import intersect_schedules, interval_fits
from slotbot.core.scheduling.errors import (
    ConflictError,
    ErrorReason,
    NotFoundError,
    StorageError,
    ValidationError,
)
from slotbot.core.scheduling.repository import (
    AllocationTransaction,
    EventPublisher,
    SchedulingRepository,
)
from slotbot.core.scheduling.types import (
    Booking,
    BookingCreatedEvent,
    BookingStatus,
    ServiceSpec,
    Staff,
    as_utc,
)

logger = logging.getLogger(__name__)

BOOKING_CODE_PREFIX = "BK-"
MAX_CODE_ATTEMPTS = 10


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def generate_booking_code() -> str:
    """Short human-readable code, e.g. BK-3F9A1C."""
    return BOOKING_CODE_PREFIX + secrets.token_hex(3).upper()


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, StorageError) and exc.transient


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        f"Transient storage failure on commit, retrying "
        f"(attempt {retry_state.attempt_number}): {retry_state.outcome.exception()}"
    )


class BookingAllocator:
    """
    Turns a requested start time into a CONFIRMED booking, or rejects it.

    Example:
        allocator = BookingAllocator(repository, publisher)
        booking = await allocator.allocate(
            staff_id="anna",
            service_id="haircut",
            customer_id="+15550001",
            requested_start=datetime(2025, 3, 3, 10, 0, tzinfo=ZoneInfo("Europe/Lisbon")),
        )
        print(booking.booking_code)  # BK-3F9A1C
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        publisher: Optional[EventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        retry_attempts: Optional[int] = None,
        default_duration_minutes: Optional[int] = None,
        retry_wait_seconds: float = 0.05,
    ):
        self._repository = repository
        self._publisher = publisher
        self._clock = clock or _utcnow
        self._retry_attempts = retry_attempts or settings.commit_retry_attempts
        self._default_duration = default_duration_minutes or settings.default_service_duration_minutes
        self._retry_wait = retry_wait_seconds

    async def allocate(
        self,
        staff_id: str,
        service_id: Optional[str],
        customer_id: str,
        requested_start: datetime,
    ) -> Booking:
        """
        Validate and commit a booking.

        Raises:
            ValidationError: Bad input, start in the past, or outside working hours
            NotFoundError: Staff or service missing or inactive
            ConflictError: Interval overlaps a CONFIRMED booking
            StorageError: Commit failed for reasons unrelated to business rules
        """
        if not customer_id:
            raise ValidationError(ErrorReason.INVALID_INPUT, "customer id is required")
        if requested_start is None or requested_start.tzinfo is None:
            raise ValidationError(ErrorReason.INVALID_INPUT, "start time must be timezone-aware")

        # (1) Not in the past
        if requested_start < self._clock():
            raise ValidationError(ErrorReason.START_IN_PAST, f"{requested_start.isoformat()} has passed")

        # (2) Staff / service
        staff = await self._load_staff(staff_id)
        service = await self._load_service(service_id, staff)

        # (3) Working hours
        business = await self._repository.get_business(staff.business_id)
        if business is None:
            raise NotFoundError(ErrorReason.BUSINESS_NOT_FOUND, f"business {staff.business_id} not found")
        effective = intersect_schedules(business.schedule, staff.hours(business))
        duration = service.duration_minutes if service else self._default_duration
        if not interval_fits(effective, requested_start, duration):
            raise ValidationError(
                ErrorReason.OUTSIDE_WORKING_HOURS,
                f"{requested_start.isoformat()} + {duration}m is outside working hours",
            )

        start = as_utc(requested_start)
        block = service.block_minutes if service else duration
        end = start + timedelta(minutes=block)

        # (4) Overlap, inside the commit
        booking = await self._commit_with_retry(
            Booking(
                id=str(uuid4()),
                business_id=staff.business_id,
                staff_id=staff.id,
                service_id=service.id if service else None,
                customer_id=customer_id,
                start=start,
                end=end,
                booking_code="",
                created_at=self._clock(),
            )
        )

        logger.info(
            f"Booking {booking.booking_code} confirmed: staff={staff.id} "
            f"start={booking.start.isoformat()} customer={customer_id}"
        )
        await self._publish(booking)
        return booking

    async def cancel_booking(self, booking_id: str) -> Booking:
        """Flip a CONFIRMED booking to CANCELLED so it stops blocking its interval."""
        booking = await self._repository.get_booking(booking_id)
        if booking is None:
            raise NotFoundError(ErrorReason.BOOKING_NOT_FOUND, f"booking {booking_id} not found")
        if booking.status != BookingStatus.CONFIRMED:
            return booking

        updated = await self._repository.set_booking_status(booking_id, BookingStatus.CANCELLED)
        logger.info(f"Booking {booking.booking_code} cancelled")
        return updated or booking

    async def _load_staff(self, staff_id: str) -> Staff:
        staff = await self._repository.get_staff(staff_id) if staff_id else None
        if staff is None:
            raise NotFoundError(ErrorReason.STAFF_NOT_FOUND, f"staff {staff_id} not found")
        if not staff.is_active:
            raise NotFoundError(ErrorReason.STAFF_INACTIVE, f"staff {staff_id} is inactive")
        return staff

    async def _load_service(self, service_id: Optional[str], staff: Staff) -> Optional[ServiceSpec]:
        if service_id is None:
            return None
        service = await self._repository.get_service(service_id)
        if service is None or not service.is_active or service.business_id != staff.business_id:
            raise NotFoundError(ErrorReason.SERVICE_NOT_FOUND, f"service {service_id} not available")
        if not staff.performs(service_id):
            raise ValidationError(
                ErrorReason.INVALID_INPUT,
                f"staff {staff.id} does not perform service {service_id}",
            )
        return service

    async def _commit_with_retry(self, draft: Booking) -> Booking:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            wait=wait_exponential(multiplier=self._retry_wait, max=2),
            stop=stop_after_attempt(self._retry_attempts),
            before_sleep=_log_retry,
            reraise=True,
        ):
            with attempt:
                return await self._commit(draft)
        raise StorageError("booking commit did not run")  # safety net

    async def _commit(self, draft: Booking) -> Booking:
        async with self._repository.allocation(draft.staff_id) as tx:
            clashes = await tx.find_overlapping(draft.staff_id, draft.start, draft.end)
            if clashes:
                logger.info(
                    f"Allocation conflict for staff {draft.staff_id} at "
                    f"{draft.start.isoformat()} (held by {clashes[0].booking_code})"
                )
                raise ConflictError(detail=f"slot {draft.start.isoformat()} is already booked")

            draft.booking_code = await self._unique_code(tx, draft.business_id)
            return await tx.insert_booking(draft)

    async def _unique_code(self, tx: AllocationTransaction, business_id: str) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_booking_code()
            if not await tx.booking_code_exists(business_id, code):
                return code
        raise StorageError(f"could not generate a unique booking code for {business_id}")

    async def _publish(self, booking: Booking) -> None:
        if self._publisher is None:
            return
        try:
            await self._publisher.publish(BookingCreatedEvent.from_booking(booking))
        except Exception as e:
            # The booking is committed; a lost event must not undo it
            logger.error(f"Failed to publish booking-created event for {booking.id}: {e}", exc_info=True)
