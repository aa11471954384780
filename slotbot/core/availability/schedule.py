"""
Working-hour schedules and the availability predicates built on them.

Everything here is pure: no storage, no clock. Instants are converted into
the schedule's timezone before comparison; naive datetimes are taken to be
business-local already. All intervals are half-open ``[start, end)``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Mapping, Optional
from zoneinfo import ZoneInfo


DAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)


def parse_clock(value: str | time) -> time:
    """Parse "HH:MM" (24h) into a time."""
    if isinstance(value, time):
        return value
    hours, minutes = value.strip().split(":")[:2]
    return time(int(hours), int(minutes))


@dataclass(frozen=True)
class TimeRange:
    """A local wall-clock range within a single day."""

    start: time
    end: time

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValueError(f"Range start {self.start} must be before end {self.end}")

    def overlaps(self, start: time, end: time) -> bool:
        return start < self.end and self.start < end

    def to_dict(self) -> dict:
        return {"start": self.start.strftime("%H:%M"), "end": self.end.strftime("%H:%M")}


@dataclass(frozen=True)
class DayHours:
    """Opening range for one weekday plus the breaks inside it."""

    start: time
    end: time
    breaks: tuple[TimeRange, ...] = ()

    def __post_init__(self) -> None:
        if not self.start < self.end:
            raise ValueError(f"Day start {self.start} must be before end {self.end}")
        ordered = sorted(self.breaks, key=lambda b: b.start)
        for brk in ordered:
            if brk.start < self.start or brk.end > self.end:
                raise ValueError(f"Break {brk} is outside working hours {self.start}-{self.end}")
        for left, right in zip(ordered, ordered[1:]):
            if right.start < left.end:
                raise ValueError(f"Breaks {left} and {right} overlap")
        object.__setattr__(self, "breaks", tuple(ordered))

    def contains(self, moment: time) -> bool:
        """True if ``moment`` is in the opening range and outside every break."""
        if not (self.start <= moment < self.end):
            return False
        return not any(brk.start <= moment < brk.end for brk in self.breaks)

    def fits(self, start: time, end: time) -> bool:
        """True if the whole of ``[start, end)`` is open time."""
        if start < self.start or end > self.end:
            return False
        return not any(brk.overlaps(start, end) for brk in self.breaks)

    def to_dict(self) -> dict:
        data = {"start": self.start.strftime("%H:%M"), "end": self.end.strftime("%H:%M")}
        if self.breaks:
            data["breaks"] = [brk.to_dict() for brk in self.breaks]
        return data


@dataclass(frozen=True)
class WorkingSchedule:
    """
    Weekly working hours of a business or a staff member.

    ``days`` maps ``date.weekday()`` (0 = Monday) to that day's hours; a
    missing weekday means closed.
    """

    days: Mapping[int, DayHours] = field(default_factory=dict)
    timezone: str = "UTC"

    def hours_for(self, day: date) -> Optional[DayHours]:
        return self.days.get(day.weekday())

    def to_local(self, instant: datetime) -> datetime:
        """Express ``instant`` in this schedule's wall-clock time."""
        if instant.tzinfo is None:
            return instant
        return instant.astimezone(ZoneInfo(self.timezone))

    def opening_window(self, day: date) -> Optional[tuple[datetime, datetime]]:
        """Aware local open/close datetimes for ``day``, or None when closed."""
        hours = self.hours_for(day)
        if hours is None:
            return None
        tz = ZoneInfo(self.timezone)
        return (
            datetime.combine(day, hours.start, tzinfo=tz),
            datetime.combine(day, hours.end, tzinfo=tz),
        )

    def to_dict(self) -> dict:
        return {DAY_NAMES[weekday]: hours.to_dict() for weekday, hours in sorted(self.days.items())}

    @classmethod
    def from_dict(cls, data: Optional[Mapping], timezone: str = "UTC") -> "WorkingSchedule":
        """
        Build a schedule from its stored JSON form.

        Example:
            {"monday": {"start": "09:00", "end": "18:00",
                        "breaks": [{"start": "13:00", "end": "14:00"}]},
             "sunday": null}

        Keys may be day names or weekday numbers. Null or empty entries are
        closed days.
        """
        days: dict[int, DayHours] = {}
        for key, entry in (data or {}).items():
            if not entry or not entry.get("start") or not entry.get("end"):
                continue
            weekday = DAY_NAMES.index(key.lower()) if isinstance(key, str) and not key.isdigit() else int(key)
            breaks = tuple(
                TimeRange(parse_clock(b["start"]), parse_clock(b["end"]))
                for b in entry.get("breaks") or ()
            )
            days[weekday] = DayHours(parse_clock(entry["start"]), parse_clock(entry["end"]), breaks)
        return cls(days=days, timezone=timezone)


# An effective schedule has the same shape; the alias documents intent.
EffectiveSchedule = WorkingSchedule


def is_within_working_hours(schedule: WorkingSchedule, instant: datetime) -> bool:
    """True iff ``instant`` falls in its weekday's open range and outside every break."""
    local = schedule.to_local(instant)
    hours = schedule.hours_for(local.date())
    if hours is None:
        return False
    return hours.contains(local.time())


def interval_fits(schedule: WorkingSchedule, start: datetime, duration_minutes: int) -> bool:
    """
    True iff every minute of ``[start, start + duration)`` is working time.

    A service may end exactly at closing time or exactly when a break starts,
    but may not run into either, and may not cross midnight.
    """
    if duration_minutes <= 0:
        return False
    local_start = schedule.to_local(start)
    local_end = local_start + timedelta(minutes=duration_minutes)
    if local_end.date() != local_start.date():
        return False
    hours = schedule.hours_for(local_start.date())
    if hours is None:
        return False
    return hours.fits(local_start.time(), local_end.time())


def _merge_breaks(breaks: list[TimeRange], start: time, end: time) -> tuple[TimeRange, ...]:
    """Clip breaks to ``[start, end)`` and merge any that touch or overlap."""
    clipped = []
    for brk in sorted(breaks, key=lambda b: b.start):
        lo, hi = max(brk.start, start), min(brk.end, end)
        if lo < hi:
            clipped.append((lo, hi))

    merged: list[list[time]] = []
    for lo, hi in clipped:
        if merged and lo <= merged[-1][1]:
            merged[-1][1] = max(merged[-1][1], hi)
        else:
            merged.append([lo, hi])
    return tuple(TimeRange(lo, hi) for lo, hi in merged)


def intersect_schedules(
    business_schedule: WorkingSchedule,
    staff_schedule: WorkingSchedule,
) -> EffectiveSchedule:
    """
    Per weekday, the hours when both the business is open and the staff works.

    A weekday missing from either schedule is missing from the result, as is a
    weekday whose ranges do not overlap. Breaks from both sides are kept.
    """
    days: dict[int, DayHours] = {}
    for weekday, business_hours in business_schedule.days.items():
        staff_hours = staff_schedule.days.get(weekday)
        if staff_hours is None:
            continue
        start = max(business_hours.start, staff_hours.start)
        end = min(business_hours.end, staff_hours.end)
        if not start < end:
            continue
        breaks = _merge_breaks(list(business_hours.breaks) + list(staff_hours.breaks), start, end)
        days[weekday] = DayHours(start, end, breaks)
    return WorkingSchedule(days=days, timezone=business_schedule.timezone)
