"""Tests for booking allocation."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from slotbot.core.scheduling import (
    BookingAllocator,
    BookingStatus,
    ConflictError,
    ErrorReason,
    NotFoundError,
    ServiceSpec,
    Staff,
    StorageError,
    ValidationError,
    generate_booking_code,
)
from tests.helpers import MONDAY, SUNDAY, at, booking, weekly


class TestValidation:
    """Validation order: first failure wins."""

    @pytest.mark.asyncio
    async def test_naive_start_rejected(self, allocator):
        with pytest.raises(ValidationError) as exc:
            await allocator.allocate("anna", "haircut", "c1", datetime(2030, 3, 4, 10, 0))
        assert exc.value.reason == ErrorReason.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_missing_customer_rejected(self, allocator):
        with pytest.raises(ValidationError):
            await allocator.allocate("anna", "haircut", "", at(MONDAY, "10:00"))

    @pytest.mark.asyncio
    async def test_past_checked_before_staff(self, allocator, clock):
        # Unknown staff, but the past-start rule fires first
        with pytest.raises(ValidationError) as exc:
            await allocator.allocate("nobody", "haircut", "c1", clock.now - timedelta(minutes=1))
        assert exc.value.reason == ErrorReason.START_IN_PAST
        assert exc.value.message_key == "error.start_in_past"

    @pytest.mark.asyncio
    async def test_unknown_staff(self, allocator):
        with pytest.raises(NotFoundError) as exc:
            await allocator.allocate("nobody", "haircut", "c1", at(MONDAY, "10:00"))
        assert exc.value.reason == ErrorReason.STAFF_NOT_FOUND

    @pytest.mark.asyncio
    async def test_inactive_staff(self, allocator, repository):
        repository.add_staff(Staff(id="gone", business_id="salon-1", name="Gone", schedule=weekly(), is_active=False))
        with pytest.raises(NotFoundError) as exc:
            await allocator.allocate("gone", "haircut", "c1", at(MONDAY, "10:00"))
        assert exc.value.reason == ErrorReason.STAFF_INACTIVE

    @pytest.mark.asyncio
    async def test_unknown_or_inactive_service(self, allocator, repository):
        with pytest.raises(NotFoundError) as exc:
            await allocator.allocate("anna", "massage", "c1", at(MONDAY, "10:00"))
        assert exc.value.reason == ErrorReason.SERVICE_NOT_FOUND

        repository.add_service(
            ServiceSpec(id="retired", business_id="salon-1", name="Retired", duration_minutes=30, is_active=False)
        )
        with pytest.raises(NotFoundError):
            await allocator.allocate("anna", "retired", "c1", at(MONDAY, "10:00"))

    @pytest.mark.asyncio
    async def test_staff_not_performing_service(self, allocator):
        with pytest.raises(ValidationError) as exc:
            await allocator.allocate("boris", "color", "c1", at(MONDAY, "14:00"))
        assert exc.value.reason == ErrorReason.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_outside_working_hours(self, allocator):
        for start in (at(MONDAY, "08:00"), at(MONDAY, "12:30"), at(MONDAY, "17:30"), at(SUNDAY + timedelta(days=7), "10:00")):
            with pytest.raises(ValidationError) as exc:
                await allocator.allocate("anna", "haircut", "c1", start)
            assert exc.value.reason == ErrorReason.OUTSIDE_WORKING_HOURS

    @pytest.mark.asyncio
    async def test_staff_hours_apply(self, allocator):
        # Boris starts at noon
        with pytest.raises(ValidationError) as exc:
            await allocator.allocate("boris", "haircut", "c1", at(MONDAY, "10:00"))
        assert exc.value.reason == ErrorReason.OUTSIDE_WORKING_HOURS

    @pytest.mark.asyncio
    async def test_staff_without_schedule_uses_business_hours(self, allocator, repository):
        repository.add_staff(Staff(id="walt", business_id="salon-1", name="Walt"))

        assert await allocator.allocate("walt", "haircut", "c1", at(MONDAY, "09:00"))
        with pytest.raises(ValidationError) as exc:
            await allocator.allocate("walt", "haircut", "c2", at(MONDAY, "12:30"))
        assert exc.value.reason == ErrorReason.OUTSIDE_WORKING_HOURS

    @pytest.mark.asyncio
    async def test_missing_business(self, allocator, repository):
        repository.add_staff(Staff(id="ghost", business_id="nowhere", name="Ghost", schedule=weekly()))

        with pytest.raises(NotFoundError) as exc:
            await allocator.allocate("ghost", None, "c1", at(MONDAY, "10:00"))
        assert exc.value.reason == ErrorReason.BUSINESS_NOT_FOUND


class TestAllocation:
    """Overlap and commit behaviour."""

    @pytest.mark.asyncio
    async def test_allocates_confirmed_booking(self, allocator, repository):
        result = await allocator.allocate("anna", "color", "c1", at(MONDAY, "10:00"))

        assert result.status == BookingStatus.CONFIRMED
        assert result.booking_code.startswith("BK-")
        assert len(result.booking_code) == 9
        assert result.end - result.start == timedelta(minutes=105)
        assert result.start.utcoffset() == timedelta(0)
        assert repository.bookings[result.id] is result

    @pytest.mark.asyncio
    async def test_existing_booking_conflicts(self, allocator, repository):
        """Existing 14:00-15:00: 14:30 conflicts, 13:00 is lunch, 12:00 and 15:00 succeed."""
        repository.add_booking(booking("anna", at(MONDAY, "14:00"), 60))

        with pytest.raises(ConflictError) as exc:
            await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "14:30"))
        assert exc.value.reason == ErrorReason.SLOT_TAKEN

        before = await allocator.allocate("anna", "haircut", "c2", at(MONDAY, "12:00"))
        after = await allocator.allocate("anna", "haircut", "c3", at(MONDAY, "15:00"))
        assert before.end == at(MONDAY, "13:00")
        assert after.start == at(MONDAY, "15:00")

    @pytest.mark.asyncio
    async def test_adjacent_bookings_without_lunch(self, allocator, repository):
        """Same rule with no break in the way: 13:00-14:00 touches 14:00 and is fine."""
        repository.add_staff(Staff(id="vera", business_id="barber-1", name="Vera", schedule=weekly()))
        repository.add_booking(booking("vera", at(MONDAY, "14:00"), 60, business_id="barber-1", service_id="cut"))

        with pytest.raises(ConflictError):
            await allocator.allocate("vera", "cut", "c1", at(MONDAY, "14:30"))
        assert await allocator.allocate("vera", "cut", "c2", at(MONDAY, "13:00"))
        assert await allocator.allocate("vera", "cut", "c3", at(MONDAY, "15:00"))

    @pytest.mark.asyncio
    async def test_buffer_blocks_following_start(self, allocator):
        await allocator.allocate("anna", "color", "c1", at(MONDAY, "09:00"))  # busy until 10:45
        with pytest.raises(ConflictError):
            await allocator.allocate("anna", "haircut", "c2", at(MONDAY, "10:30"))
        assert await allocator.allocate("anna", "haircut", "c2", at(MONDAY, "10:45"))

    @pytest.mark.asyncio
    async def test_concurrent_requests_one_winner(self, allocator, repository):
        results = await asyncio.gather(
            *(allocator.allocate("anna", "haircut", f"c{i}", at(MONDAY, "10:00")) for i in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert all(isinstance(e, ConflictError) for e in losers)
        assert len([b for b in repository.bookings.values() if b.staff_id == "anna"]) == 1

    @pytest.mark.asyncio
    async def test_staff_locks_released_after_commit(self, allocator, repository):
        await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))
        await allocator.allocate("boris", "haircut", "c2", at(MONDAY, "15:00"))

        assert len(repository._staff_locks) == 0

    @pytest.mark.asyncio
    async def test_concurrent_overlapping_intervals(self, allocator, repository):
        starts = [at(MONDAY, "10:00"), at(MONDAY, "10:15"), at(MONDAY, "10:30"), at(MONDAY, "11:30")]
        results = await asyncio.gather(
            *(allocator.allocate("anna", "haircut", f"c{i}", s) for i, s in enumerate(starts)),
            return_exceptions=True,
        )

        confirmed = sorted(
            (b for b in repository.bookings.values() if b.staff_id == "anna"), key=lambda b: b.start
        )
        for left, right in zip(confirmed, confirmed[1:]):
            assert left.end <= right.start
        assert any(isinstance(r, ConflictError) for r in results)

    @pytest.mark.asyncio
    async def test_booking_codes_unique(self, allocator):
        codes = set()
        for hour in ("09:00", "10:00", "11:00", "12:00", "14:00"):
            codes.add((await allocator.allocate("anna", "haircut", "c1", at(MONDAY, hour))).booking_code)
        assert len(codes) == 5

    def test_booking_code_format(self):
        code = generate_booking_code()
        assert code.startswith("BK-")
        assert code[3:] == code[3:].upper()
        int(code[3:], 16)


class FlakyRepository:
    """Delegates to a real repository but fails the first N allocations."""

    def __init__(self, inner, failures: int, transient: bool = True):
        self._inner = inner
        self.failures = failures
        self.transient = transient
        self.attempts = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    @asynccontextmanager
    async def allocation(self, staff_id):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("serialization failure", transient=self.transient)
        async with self._inner.allocation(staff_id) as tx:
            yield tx


class TestRetry:
    """Transient commit failures are retried; nothing else is."""

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, repository, clock):
        flaky = FlakyRepository(repository, failures=2)
        allocator = BookingAllocator(flaky, clock=clock, retry_attempts=3, retry_wait_seconds=0)

        result = await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))

        assert result.status == BookingStatus.CONFIRMED
        assert flaky.attempts == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, repository, clock):
        flaky = FlakyRepository(repository, failures=5)
        allocator = BookingAllocator(flaky, clock=clock, retry_attempts=3, retry_wait_seconds=0)

        with pytest.raises(StorageError):
            await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))
        assert flaky.attempts == 3
        assert not any(b.staff_id == "anna" for b in repository.bookings.values())

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, repository, clock):
        flaky = FlakyRepository(repository, failures=1, transient=False)
        allocator = BookingAllocator(flaky, clock=clock, retry_attempts=3, retry_wait_seconds=0)

        with pytest.raises(StorageError):
            await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))
        assert flaky.attempts == 1

    @pytest.mark.asyncio
    async def test_conflict_not_retried(self, repository, clock):
        repository.add_booking(booking("anna", at(MONDAY, "10:00"), 60))
        flaky = FlakyRepository(repository, failures=0)
        allocator = BookingAllocator(flaky, clock=clock, retry_attempts=3, retry_wait_seconds=0)

        with pytest.raises(ConflictError):
            await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))
        assert flaky.attempts == 1


class TestEventsAndCancellation:

    @pytest.mark.asyncio
    async def test_publishes_booking_created(self, repository, clock):
        publisher = AsyncMock()
        allocator = BookingAllocator(repository, publisher, clock=clock)

        result = await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))

        publisher.publish.assert_awaited_once()
        event = publisher.publish.await_args.args[0]
        assert event.booking_id == result.id
        assert event.booking_code == result.booking_code
        assert event.to_dict()["start"] == result.start.isoformat()

    @pytest.mark.asyncio
    async def test_publish_failure_keeps_booking(self, repository, clock):
        publisher = AsyncMock()
        publisher.publish.side_effect = RuntimeError("broker down")
        allocator = BookingAllocator(repository, publisher, clock=clock)

        result = await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))
        assert repository.bookings[result.id].status == BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_cancel_frees_interval(self, allocator):
        first = await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))
        cancelled = await allocator.cancel_booking(first.id)

        assert cancelled.status == BookingStatus.CANCELLED
        again = await allocator.allocate("anna", "haircut", "c2", at(MONDAY, "10:00"))
        assert again.status == BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self, allocator):
        first = await allocator.allocate("anna", "haircut", "c1", at(MONDAY, "10:00"))
        await allocator.cancel_booking(first.id)
        assert (await allocator.cancel_booking(first.id)).status == BookingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, allocator):
        with pytest.raises(NotFoundError) as exc:
            await allocator.cancel_booking("missing")
        assert exc.value.reason == ErrorReason.BOOKING_NOT_FOUND
