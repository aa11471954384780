"""
Scheduling Module

Slot finding, alternative ranking and atomic booking allocation.

Usage:
    from slotbot.core.scheduling import (
        BookingAllocator,
        ConflictError,
        SlotFinder,
    )

    finder = SlotFinder(repository)
    offers = await finder.find_slots(
        business_id="salon-1",
        staff_id=None,            # any staff
        service_id="haircut",
        from_date=date(2025, 3, 3),
        to_date=date(2025, 3, 9),
        max_results=5,
    )

    allocator = BookingAllocator(repository, publisher)
    try:
        booking = await allocator.allocate(
            offers[0].staff_id, "haircut", "+15550001", offers[0].start
        )
    except ConflictError:
        ...  # re-offer
"""

# Errors
from slotbot.core.scheduling.errors import (
    BookingError,
    ConflictError,
    ErrorReason,
    NotFoundError,
    StorageError,
    ValidationError,
)

# Domain records
from slotbot.core.scheduling.types import (
    Booking,
    BookingCreatedEvent,
    BookingStatus,
    Business,
    ServiceSpec,
    SlotOffer,
    Staff,
    WaitlistEntry,
    WaitlistStatus,
)

# Storage ports
from slotbot.core.scheduling.repository import (
    AllocationTransaction,
    EventPublisher,
    InMemoryRepository,
    SchedulingRepository,
    WaitlistRepository,
)

# Slot finding
from slotbot.core.scheduling.slot_finder import SlotFinder, scan_slots
from slotbot.core.scheduling.alternatives import closest_offers, proximity_score

# Allocation
from slotbot.core.scheduling.allocator import BookingAllocator, generate_booking_code

__all__ = [
    # Errors
    "BookingError",
    "ConflictError",
    "ErrorReason",
    "NotFoundError",
    "StorageError",
    "ValidationError",
    # Domain records
    "Booking",
    "BookingCreatedEvent",
    "BookingStatus",
    "Business",
    "ServiceSpec",
    "SlotOffer",
    "Staff",
    "WaitlistEntry",
    "WaitlistStatus",
    # Storage ports
    "AllocationTransaction",
    "EventPublisher",
    "InMemoryRepository",
    "SchedulingRepository",
    "WaitlistRepository",
    # Slot finding
    "SlotFinder",
    "scan_slots",
    "closest_offers",
    "proximity_score",
    # Allocation
    "BookingAllocator",
    "generate_booking_code",
]
