"""
Availability Module

Pure functions over working-hour schedules.

Usage:
    from slotbot.core.availability import (
        WorkingSchedule,
        intersect_schedules,
        interval_fits,
    )

    effective = intersect_schedules(business.schedule, staff.schedule)
    if interval_fits(effective, start, service.duration_minutes):
        ...
"""

from slotbot.core.availability.schedule import (
    DAY_NAMES,
    DayHours,
    EffectiveSchedule,
    TimeRange,
    WorkingSchedule,
    interval_fits,
    intersect_schedules,
    is_within_working_hours,
    parse_clock,
)

__all__ = [
    "DAY_NAMES",
    "DayHours",
    "EffectiveSchedule",
    "TimeRange",
    "WorkingSchedule",
    "interval_fits",
    "intersect_schedules",
    "is_within_working_hours",
    "parse_clock",
]
