"""Tests for slot finding."""

from datetime import datetime, timedelta, timezone

import pytest

from slotbot.core.availability import DAY_NAMES
from slotbot.core.scheduling import (
    BookingAllocator,
    Business,
    BookingStatus,
    InMemoryRepository,
    ServiceSpec,
    SlotFinder,
    Staff,
    scan_slots,
)
from slotbot.core.scheduling.types import make_offer_id
from tests.helpers import MONDAY, NEXT_MONDAY, NEXT_SUNDAY, at, booking, seed_salon, weekly


def starts(offers):
    return [o.start.strftime("%H:%M") for o in offers]


class TestScanSlots:
    """Test the synchronous scan."""

    def test_steps_through_open_hours(self):
        result = list(
            scan_slots(weekly(end="11:00"), [], 60, 60, MONDAY, MONDAY, granularity_minutes=30)
        )
        assert [r.strftime("%H:%M") for r in result] == ["09:00", "09:30", "10:00"]

    def test_skips_booked_interval(self):
        bookings = [booking("anna", at(MONDAY, "09:30"), 30)]
        result = list(
            scan_slots(weekly(end="11:00"), bookings, 30, 30, MONDAY, MONDAY, granularity_minutes=30)
        )
        assert [r.strftime("%H:%M") for r in result] == ["09:00", "10:00", "10:30"]

    def test_not_before(self):
        result = list(
            scan_slots(
                weekly(end="11:00"), [], 30, 30, MONDAY, MONDAY, 30,
                not_before=at(MONDAY, "09:45"),
            )
        )
        assert result[0] == at(MONDAY, "10:00")

    def test_strictly_increasing_across_days(self):
        result = list(scan_slots(weekly(), [], 60, 60, MONDAY, MONDAY + timedelta(days=2), 60))
        assert result == sorted(result)
        assert len(set(result)) == len(result)


class TestSlotFinder:
    """Test slot search against the in-memory store."""

    @pytest.mark.asyncio
    async def test_single_staff_day(self, finder):
        offers = await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY, 100)

        assert starts(offers)[0] == "09:00"
        assert "12:00" in starts(offers)       # ends exactly when lunch starts
        assert "12:15" not in starts(offers)   # runs into lunch
        assert "14:00" in starts(offers)
        assert starts(offers)[-1] == "17:00"
        assert len(offers) == 26
        assert all(o.staff_id == "anna" and o.staff_name == "Anna" for o in offers)

    @pytest.mark.asyncio
    async def test_max_results(self, finder):
        offers = await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY, 3)
        assert starts(offers) == ["09:00", "09:15", "09:30"]

    @pytest.mark.asyncio
    async def test_end_includes_buffer(self, finder):
        offers = await finder.find_slots("salon-1", "anna", "color", MONDAY, MONDAY, 1)
        assert offers[0].end - offers[0].start == timedelta(minutes=105)

    @pytest.mark.asyncio
    async def test_buffer_blocks_but_fit_uses_duration(self, finder, repository):
        repository.add_booking(booking("anna", at(MONDAY, "10:00"), 60))

        offers = await finder.find_slots("salon-1", "anna", "color", MONDAY, MONDAY, 4)

        # 11:30 + 90m ends at lunch; its buffer may run into the break
        assert starts(offers) == ["11:00", "11:15", "11:30", "14:00"]

    @pytest.mark.asyncio
    async def test_staff_without_schedule_works_business_hours(self, finder, repository):
        repository.add_staff(Staff(id="walt", business_id="salon-1", name="Walt"))

        offers = await finder.find_slots("salon-1", "walt", "haircut", MONDAY, MONDAY, 100)

        assert starts(offers)[0] == "09:00"
        assert "12:15" not in starts(offers)   # business lunch still applies
        assert len(offers) == 26

    @pytest.mark.asyncio
    async def test_cancelled_bookings_do_not_block(self, finder, repository):
        old = repository.add_booking(booking("anna", at(MONDAY, "09:00"), 60))
        old.status = BookingStatus.CANCELLED

        offers = await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY, 1)
        assert starts(offers) == ["09:00"]

    @pytest.mark.asyncio
    async def test_past_slots_skipped(self, finder, clock):
        clock.now = datetime(2030, 3, 4, 10, 7, tzinfo=timezone.utc)
        offers = await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY, 1)
        assert starts(offers) == ["10:15"]

    @pytest.mark.asyncio
    async def test_any_staff_merges_in_time_order(self, finder):
        offers = await finder.find_slots("salon-1", None, "haircut", MONDAY, MONDAY, 100)

        assert [o.sort_key for o in offers] == sorted(o.sort_key for o in offers)
        noon = [o.staff_id for o in offers if o.start == at(MONDAY, "12:00")]
        assert noon == ["anna", "boris"]

    @pytest.mark.asyncio
    async def test_any_staff_only_those_performing_service(self, finder):
        offers = await finder.find_slots("salon-1", None, "color", MONDAY, MONDAY, 100)
        assert {o.staff_id for o in offers} == {"anna"}

    @pytest.mark.asyncio
    async def test_staff_not_performing_service(self, finder):
        assert await finder.find_slots("salon-1", "boris", "color", MONDAY, MONDAY, 5) == []

    @pytest.mark.asyncio
    async def test_inactive_staff(self, finder, repository):
        repository.add_staff(Staff(id="gone", business_id="salon-1", name="Gone", schedule=weekly(), is_active=False))
        assert await finder.find_slots("salon-1", "gone", "haircut", MONDAY, MONDAY, 5) == []

    @pytest.mark.asyncio
    async def test_unknown_business_or_service(self, finder, repository):
        assert await finder.find_slots("nope", None, "haircut", MONDAY, MONDAY, 5) == []

        repository.add_service(
            ServiceSpec(id="retired", business_id="salon-1", name="Retired", duration_minutes=30, is_active=False)
        )
        assert await finder.find_slots("salon-1", None, "retired", MONDAY, MONDAY, 5) == []

    @pytest.mark.asyncio
    async def test_unknown_service_uses_default_duration(self, finder):
        offers = await finder.find_slots(
            "salon-1", "anna", None, MONDAY, MONDAY, 1, default_duration_minutes=45
        )
        assert offers[0].end - offers[0].start == timedelta(minutes=45)
        assert offers[0].service_id is None

    @pytest.mark.asyncio
    async def test_exclude_offer_ids(self, finder):
        first = await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY, 1)
        again = await finder.find_slots(
            "salon-1", "anna", "haircut", MONDAY, MONDAY, 1, exclude_offer_ids={first[0].offer_id}
        )
        assert starts(again) == ["09:15"]

    @pytest.mark.asyncio
    async def test_offer_ids_stable(self, finder):
        a = await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY, 3)
        b = await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY, 3)
        assert [o.offer_id for o in a] == [o.offer_id for o in b]
        assert a[0].offer_id == make_offer_id("anna", "haircut", at(MONDAY, "09:00"))
        assert len({o.offer_id for o in a}) == 3

    @pytest.mark.asyncio
    async def test_empty_range(self, finder):
        assert await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY - timedelta(days=1), 5) == []
        assert await finder.find_slots("salon-1", "anna", "haircut", MONDAY, MONDAY, 0) == []

    @pytest.mark.asyncio
    async def test_offers_in_business_timezone(self, repository, clock):
        repository.add_business(
            Business(id="berlin", name="Berlin", schedule=weekly(), timezone="Europe/Berlin")
        )
        repository.add_staff(Staff(id="kai", business_id="berlin", name="Kai", schedule=weekly()))
        finder = SlotFinder(repository, clock=clock, granularity_minutes=60)

        offers = await finder.find_slots("berlin", "kai", None, MONDAY, MONDAY, 1, default_duration_minutes=60)

        assert offers[0].start.hour == 9
        assert offers[0].start.astimezone(timezone.utc).hour == 8


class TestStaffDayOff:
    """Business open every day, staff off on Sundays."""

    @pytest.fixture
    def seeded(self, repository):
        repository.add_business(
            Business(id="daily", name="Daily", schedule=weekly(days=DAY_NAMES), timezone="UTC")
        )
        repository.add_service(ServiceSpec(id="trim", business_id="daily", name="Trim", duration_minutes=60))
        repository.add_staff(
            Staff(id="olga", business_id="daily", name="Olga", schedule=weekly(days=DAY_NAMES[:6]))
        )
        return repository

    @pytest.mark.asyncio
    async def test_sunday_empty_monday_not(self, seeded, finder):
        assert await finder.find_slots("daily", "olga", "trim", NEXT_SUNDAY, NEXT_SUNDAY, 5) == []

        monday = await finder.find_slots("daily", "olga", "trim", NEXT_MONDAY, NEXT_MONDAY, 5)
        assert monday
        assert monday[0].start == at(NEXT_MONDAY, "09:00")


class TestOffersAreBookable:
    """Every offer can be booked as long as nothing else was booked meanwhile."""

    @staticmethod
    def _salon_with_booking():
        repo = seed_salon(InMemoryRepository())
        repo.add_booking(booking("anna", at(MONDAY, "10:00"), 60))
        repo.add_booking(booking("boris", at(MONDAY, "15:00"), 60))
        return repo

    @pytest.mark.asyncio
    @pytest.mark.parametrize("service_id", ["color", "haircut"])
    async def test_each_offer_allocates(self, clock, service_id):
        finder = SlotFinder(self._salon_with_booking(), clock=clock, granularity_minutes=15)
        offers = await finder.find_slots("salon-1", None, service_id, MONDAY, MONDAY, 200)
        assert offers

        for offer in offers:
            allocator = BookingAllocator(self._salon_with_booking(), clock=clock, retry_wait_seconds=0)
            created = await allocator.allocate(offer.staff_id, service_id, "c1", offer.start)
            assert (created.start, created.end) == (offer.start, offer.end)
