"""Builders shared by the unit tests."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from slotbot.core.availability import DAY_NAMES, WorkingSchedule
from slotbot.core.scheduling import (
    Booking,
    Business,
    InMemoryRepository,
    ServiceSpec,
    Staff,
)

# Monday 2030-03-04, 07:00 UTC: before any salon opens
NOW = datetime(2030, 3, 4, 7, 0, tzinfo=timezone.utc)
MONDAY = date(2030, 3, 4)
SUNDAY = date(2030, 3, 3)
NEXT_SUNDAY = date(2030, 3, 10)
NEXT_MONDAY = date(2030, 3, 11)


class FrozenClock:
    """Injected "now" that tests move by hand."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def weekly(
    start: str = "09:00",
    end: str = "18:00",
    breaks: tuple = (),
    days: tuple = DAY_NAMES[:5],
    tz: str = "UTC",
) -> WorkingSchedule:
    """Same hours on each of ``days``; other days closed."""
    entry = {"start": start, "end": end, "breaks": [{"start": s, "end": e} for s, e in breaks]}
    return WorkingSchedule.from_dict({day: entry for day in days}, timezone=tz)


def at(day: date, clock: str, tz: str = "UTC") -> datetime:
    """Aware datetime for ``day`` at "HH:MM" in ``tz``."""
    hours, minutes = clock.split(":")
    return datetime.combine(day, time(int(hours), int(minutes)), tzinfo=ZoneInfo(tz))


def booking(
    staff_id: str,
    start: datetime,
    minutes: int = 60,
    customer_id: str = "someone",
    code: str = "BK-000001",
    business_id: str = "salon-1",
    service_id: Optional[str] = "haircut",
) -> Booking:
    return Booking(
        id=f"b-{staff_id}-{start.isoformat()}",
        business_id=business_id,
        staff_id=staff_id,
        service_id=service_id,
        customer_id=customer_id,
        start=start,
        end=start + timedelta(minutes=minutes),
        booking_code=code,
    )


def seed_salon(repo: InMemoryRepository) -> InMemoryRepository:
    """
    salon-1 (UTC): open Mon-Fri 09:00-18:00, lunch 13:00-14:00.

    Staff: anna (full hours), boris (from 12:00, haircuts only).
    Services: haircut 60m, color 90m + 15m buffer.
    """
    repo.add_business(
        Business(
            id="salon-1",
            name="Salon",
            schedule=weekly(breaks=(("13:00", "14:00"),)),
            timezone="UTC",
        )
    )
    repo.add_service(ServiceSpec(id="haircut", business_id="salon-1", name="Haircut", duration_minutes=60))
    repo.add_service(
        ServiceSpec(id="color", business_id="salon-1", name="Color", duration_minutes=90, buffer_minutes=15)
    )
    repo.add_staff(Staff(id="anna", business_id="salon-1", name="Anna", schedule=weekly()))
    repo.add_staff(
        Staff(
            id="boris",
            business_id="salon-1",
            name="Boris",
            schedule=weekly(start="12:00"),
            service_ids=frozenset({"haircut"}),
        )
    )
    return repo


def seed_barber(repo: InMemoryRepository) -> InMemoryRepository:
    """barber-1: one staff member, one service, open every day but Sunday."""
    repo.add_business(
        Business(
            id="barber-1",
            name="Barber",
            schedule=weekly(days=DAY_NAMES[:6]),
            timezone="UTC",
            default_language="en",
        )
    )
    repo.add_service(ServiceSpec(id="cut", business_id="barber-1", name="Haircut", duration_minutes=60))
    repo.add_staff(Staff(id="ivan", business_id="barber-1", name="Ivan", schedule=weekly(days=DAY_NAMES[:6])))
    return repo
