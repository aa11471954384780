"""Tests for the waitlist queue."""

from datetime import timedelta

import pytest

from slotbot.core.scheduling import (
    BookingStatus,
    ConflictError,
    ErrorReason,
    ValidationError,
    WaitlistStatus,
)
from tests.helpers import MONDAY, at, booking

TUESDAY = MONDAY + timedelta(days=1)


@pytest.fixture
def blocker(repository):
    """Ivan is booked for the whole of Tuesday."""
    return repository.add_booking(
        booking("ivan", at(TUESDAY, "09:00"), 9 * 60, business_id="barber-1", service_id="cut")
    )


async def _enqueue(waitlist, *customers):
    return [
        await waitlist.enqueue("barber-1", customer, "cut", None, TUESDAY)
        for customer in customers
    ]


class TestEnqueue:

    @pytest.mark.asyncio
    async def test_positions_increase(self, waitlist):
        first, second = await _enqueue(waitlist, "c1", "c2")
        assert (first.position, second.position) == (1, 2)
        assert first.status == WaitlistStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_same_customer_keeps_entry(self, waitlist):
        first, again = await _enqueue(waitlist, "c1", "c1")
        assert again.id == first.id

    @pytest.mark.asyncio
    async def test_day_locks_released(self, waitlist):
        await _enqueue(waitlist, "c1", "c2")
        await waitlist.run_sweep("barber-1", TUESDAY)

        assert len(waitlist._locks) == 0

    @pytest.mark.asyncio
    async def test_language_stored(self, waitlist):
        entry = await waitlist.enqueue("barber-1", "c1", "cut", None, TUESDAY, language="pt")
        assert entry.language == "pt"


class TestSweep:
    """Promotion after a booking frees up."""

    @pytest.mark.asyncio
    async def test_nothing_free_nothing_notified(self, waitlist, blocker):
        await _enqueue(waitlist, "c1")
        assert await waitlist.run_sweep("barber-1", TUESDAY) == []

    @pytest.mark.asyncio
    async def test_first_in_line_notified(self, waitlist, allocator, blocker, clock):
        first, second = await _enqueue(waitlist, "c1", "c2")
        await allocator.cancel_booking(blocker.id)

        notified = await waitlist.run_sweep("barber-1", TUESDAY)

        assert [e.id for e in notified] == [first.id]
        entry = notified[0]
        assert entry.status == WaitlistStatus.NOTIFIED
        assert entry.offered_staff_id == "ivan"
        assert entry.offered_start == at(TUESDAY, "09:00")
        assert entry.expires_at == clock.now + timedelta(minutes=15)

    @pytest.mark.asyncio
    async def test_sweep_is_idempotent(self, waitlist, allocator, repository, blocker):
        await _enqueue(waitlist, "c1", "c2")
        await allocator.cancel_booking(blocker.id)
        await waitlist.run_sweep("barber-1", TUESDAY)
        before = await repository.list_entries("barber-1", TUESDAY)

        assert await waitlist.run_sweep("barber-1", TUESDAY) == []
        assert await repository.list_entries("barber-1", TUESDAY) == before

    @pytest.mark.asyncio
    async def test_expired_notification_requeued_at_end(self, waitlist, allocator, repository, blocker, clock):
        first, second, third = await _enqueue(waitlist, "c1", "c2", "c3")
        await allocator.cancel_booking(blocker.id)
        await waitlist.run_sweep("barber-1", TUESDAY)
        clock.advance(minutes=16)

        notified = await waitlist.run_sweep("barber-1", TUESDAY)

        assert [e.customer_id for e in notified] == ["c2"]
        requeued = await repository.get_entry(first.id)
        assert requeued.status == WaitlistStatus.ACTIVE
        assert requeued.position == 4
        assert requeued.offered_start is None

    @pytest.mark.asyncio
    async def test_past_date_expires_entries(self, waitlist, repository, clock):
        entry, = await _enqueue(waitlist, "c1")
        clock.advance(days=2)

        assert await waitlist.run_sweep("barber-1", TUESDAY) == []
        assert (await repository.get_entry(entry.id)).status == WaitlistStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_staff_specific_entry(self, waitlist, allocator, repository, blocker):
        entry = await waitlist.enqueue("barber-1", "c1", "cut", "somebody-else", TUESDAY)
        await allocator.cancel_booking(blocker.id)

        assert await waitlist.run_sweep("barber-1", TUESDAY) == []
        assert (await repository.get_entry(entry.id)).status == WaitlistStatus.ACTIVE


class TestAnswers:
    """Accepting or passing on a held slot."""

    @pytest.mark.asyncio
    async def test_accept_books_offered_slot(self, waitlist, allocator, blocker, repository):
        first, _ = await _enqueue(waitlist, "c1", "c2")
        await allocator.cancel_booking(blocker.id)
        await waitlist.run_sweep("barber-1", TUESDAY)

        entry, booked = await waitlist.accept(first.id, "c1")

        assert entry.status == WaitlistStatus.BOOKED
        assert entry.booking_id == booked.id
        assert booked.start == at(TUESDAY, "09:00")
        assert repository.bookings[booked.id].status == BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_accept_by_other_customer_rejected(self, waitlist, allocator, blocker):
        first, _ = await _enqueue(waitlist, "c1", "c2")
        await allocator.cancel_booking(blocker.id)
        await waitlist.run_sweep("barber-1", TUESDAY)

        with pytest.raises(ValidationError) as exc:
            await waitlist.accept(first.id, "c2")
        assert exc.value.reason == ErrorReason.WAITLIST_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_accept_after_expiry_rejected(self, waitlist, allocator, blocker, clock):
        first, _ = await _enqueue(waitlist, "c1", "c2")
        await allocator.cancel_booking(blocker.id)
        await waitlist.run_sweep("barber-1", TUESDAY)
        clock.advance(minutes=15)

        with pytest.raises(ValidationError):
            await waitlist.accept(first.id, "c1")

    @pytest.mark.asyncio
    async def test_slot_taken_meanwhile_keeps_place(self, waitlist, allocator, repository, blocker):
        first, _ = await _enqueue(waitlist, "c1", "c2")
        await allocator.cancel_booking(blocker.id)
        await waitlist.run_sweep("barber-1", TUESDAY)
        await allocator.allocate("ivan", "cut", "walk-in", at(TUESDAY, "09:00"))

        with pytest.raises(ConflictError):
            await waitlist.accept(first.id, "c1")

        entry = await repository.get_entry(first.id)
        assert entry.status == WaitlistStatus.ACTIVE
        assert entry.position == 1

    @pytest.mark.asyncio
    async def test_pass_offers_slot_to_next(self, waitlist, allocator, repository, blocker):
        first, second = await _enqueue(waitlist, "c1", "c2")
        await allocator.cancel_booking(blocker.id)
        await waitlist.run_sweep("barber-1", TUESDAY)

        entry, notified = await waitlist.pass_entry(first.id, "c1")

        assert entry.status == WaitlistStatus.ACTIVE
        assert entry.position == 3
        assert [e.id for e in notified] == [second.id]

    @pytest.mark.asyncio
    async def test_fulfil_for_customer(self, waitlist, repository):
        entry, = await _enqueue(waitlist, "c1")

        assert await waitlist.fulfil_for_customer("barber-1", "c1", TUESDAY, "bk-1") == 1

        stored = await repository.get_entry(entry.id)
        assert stored.status == WaitlistStatus.BOOKED
        assert stored.booking_id == "bk-1"
