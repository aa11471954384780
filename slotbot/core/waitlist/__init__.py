"""
Waitlist Module

Usage:
    from slotbot.core.waitlist import WaitlistService

    waitlist = WaitlistService(repository, slot_finder, allocator)
    entry = await waitlist.enqueue("salon-1", "+15550001", "haircut", None, date(2025, 3, 3))
    notified = await waitlist.run_sweep("salon-1", date(2025, 3, 3))
"""

from slotbot.core.waitlist.service import OPEN_STATUSES, WaitlistService

__all__ = [
    "OPEN_STATUSES",
    "WaitlistService",
]
