"""
SQLAlchemy implementation of the scheduling and waitlist storage ports.

Every call runs in its own short session from the factory. Allocation
locks the staff row (``SELECT ... FOR UPDATE``) for the duration of the
transaction; the overlap re-check and the insert commit together.

SQLAlchemy failures surface as StorageError. Serialization failures,
deadlocks, "database is locked" and booking-code collisions are transient.
"""

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import AsyncIterator, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slotbot.core.availability import WorkingSchedule
from slotbot.core.scheduling.errors import StorageError
from slotbot.core.scheduling.repository import (
    AllocationTransaction,
    SchedulingRepository,
    WaitlistRepository,
)
from slotbot.core.scheduling.types import (
    Booking,
    BookingStatus,
    Business,
    ServiceSpec,
    Staff,
    WaitlistEntry,
    WaitlistStatus,
)
from slotbot.models.database import (
    BookingRow,
    BookingStatusDB,
    BusinessRow,
    ServiceRow,
    StaffRow,
    WaitlistEntryRow,
    WaitlistStatusDB,
)

logger = logging.getLogger(__name__)

# SQLSTATE codes worth retrying
TRANSIENT_SQLSTATES = {"40001", "40P01"}


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return value.astimezone(timezone.utc) if value is not None and value.tzinfo else value


def is_transient(error: SQLAlchemyError) -> bool:
    """Whether a failed transaction is worth retrying."""
    if isinstance(error, IntegrityError):
        # A booking-code collision is retried with a fresh code; other
        # constraint violations fail the same way every time
        orig = error.orig
        constraint = getattr(orig, "constraint_name", None) or str(orig)
        return "booking_code" in constraint
    if isinstance(error, DBAPIError):
        orig = error.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if code in TRANSIENT_SQLSTATES:
            return True
        return "database is locked" in str(orig).lower()
    return False


def _storage_error(action: str, error: SQLAlchemyError) -> StorageError:
    transient = is_transient(error)
    logger.error(f"Database failure during {action} (transient={transient}): {error}", exc_info=True)
    return StorageError(f"{action} failed", transient=transient)


# === Row mapping ===

def _business(row: BusinessRow) -> Business:
    return Business(
        id=row.id,
        name=row.name,
        schedule=WorkingSchedule.from_dict(row.business_hours, row.timezone),
        timezone=row.timezone,
        default_language=row.default_language,
    )


def _staff(row: StaffRow, business: BusinessRow) -> Staff:
    # NULL schedule means the staff member works business hours
    schedule = None
    if row.schedule is not None:
        schedule = WorkingSchedule.from_dict(row.schedule, business.timezone)
    return Staff(
        id=row.id,
        business_id=row.business_id,
        name=row.name,
        schedule=schedule,
        is_active=row.is_active,
        service_ids=frozenset(row.service_ids or ()),
    )


def _service(row: ServiceRow) -> ServiceSpec:
    return ServiceSpec(
        id=row.id,
        business_id=row.business_id,
        name=row.name,
        duration_minutes=row.duration_minutes,
        buffer_minutes=row.buffer_minutes,
        is_active=row.is_active,
    )


def _booking(row: BookingRow) -> Booking:
    return Booking(
        id=row.id,
        business_id=row.business_id,
        staff_id=row.staff_id,
        service_id=row.service_id,
        customer_id=row.customer_id,
        start=_aware(row.start_at),
        end=_aware(row.end_at),
        booking_code=row.booking_code,
        status=BookingStatus(row.status.value),
        created_at=_aware(row.created_at),
    )


def _entry(row: WaitlistEntryRow) -> WaitlistEntry:
    return WaitlistEntry(
        id=row.id,
        business_id=row.business_id,
        customer_id=row.customer_id,
        service_id=row.service_id,
        staff_id=row.staff_id,
        desired_date=row.desired_date,
        position=row.position,
        status=WaitlistStatus(row.status.value),
        expires_at=_aware(row.expires_at),
        offered_staff_id=row.offered_staff_id,
        offered_start=_aware(row.offered_start),
        booking_id=row.booking_id,
        language=row.language,
        created_at=_aware(row.created_at),
    )


def _copy_entry(entry: WaitlistEntry, row: WaitlistEntryRow) -> None:
    row.business_id = entry.business_id
    row.customer_id = entry.customer_id
    row.service_id = entry.service_id
    row.staff_id = entry.staff_id
    row.desired_date = entry.desired_date
    row.position = entry.position
    row.status = WaitlistStatusDB(entry.status.value)
    row.expires_at = _utc(entry.expires_at)
    row.offered_staff_id = entry.offered_staff_id
    row.offered_start = _utc(entry.offered_start)
    row.booking_id = entry.booking_id
    row.language = entry.language


class _SqlAllocation(AllocationTransaction):
    """Runs inside the transaction that holds the staff row lock."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def find_overlapping(self, staff_id: str, start: datetime, end: datetime) -> list[Booking]:
        result = await self._session.execute(
            select(BookingRow).where(
                BookingRow.staff_id == staff_id,
                BookingRow.status == BookingStatusDB.CONFIRMED,
                BookingRow.start_at < _utc(end),
                BookingRow.end_at > _utc(start),
            )
        )
        return [_booking(row) for row in result.scalars()]

    async def booking_code_exists(self, business_id: str, code: str) -> bool:
        result = await self._session.execute(
            select(BookingRow.id).where(
                BookingRow.business_id == business_id,
                BookingRow.booking_code == code,
            )
        )
        return result.first() is not None

    async def insert_booking(self, booking: Booking) -> Booking:
        self._session.add(
            BookingRow(
                id=booking.id,
                business_id=booking.business_id,
                staff_id=booking.staff_id,
                service_id=booking.service_id,
                customer_id=booking.customer_id,
                start_at=_utc(booking.start),
                end_at=_utc(booking.end),
                booking_code=booking.booking_code,
                status=BookingStatusDB(booking.status.value),
            )
        )
        await self._session.flush()
        return booking


class SqlRepository(SchedulingRepository, WaitlistRepository):
    """Scheduling and waitlist storage on SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self, action: str, write: bool = False) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                if write:
                    async with session.begin():
                        yield session
                else:
                    yield session
        except SQLAlchemyError as e:
            raise _storage_error(action, e) from e

    # === SchedulingRepository ===

    async def get_business(self, business_id: str) -> Optional[Business]:
        async with self._session("get_business") as session:
            row = await session.get(BusinessRow, business_id)
            return _business(row) if row else None

    async def get_staff(self, staff_id: str) -> Optional[Staff]:
        async with self._session("get_staff") as session:
            result = await session.execute(
                select(StaffRow, BusinessRow)
                .join(BusinessRow, StaffRow.business_id == BusinessRow.id)
                .where(StaffRow.id == staff_id)
            )
            found = result.first()
            return _staff(found[0], found[1]) if found else None

    async def list_staff(self, business_id: str, active_only: bool = True) -> list[Staff]:
        async with self._session("list_staff") as session:
            query = (
                select(StaffRow, BusinessRow)
                .join(BusinessRow, StaffRow.business_id == BusinessRow.id)
                .where(StaffRow.business_id == business_id)
                .order_by(StaffRow.id)
            )
            if active_only:
                query = query.where(StaffRow.is_active.is_(True))
            result = await session.execute(query)
            return [_staff(staff, business) for staff, business in result.all()]

    async def get_service(self, service_id: str) -> Optional[ServiceSpec]:
        async with self._session("get_service") as session:
            row = await session.get(ServiceRow, service_id)
            return _service(row) if row else None

    async def list_services(self, business_id: str, active_only: bool = True) -> list[ServiceSpec]:
        async with self._session("list_services") as session:
            query = select(ServiceRow).where(ServiceRow.business_id == business_id).order_by(ServiceRow.name)
            if active_only:
                query = query.where(ServiceRow.is_active.is_(True))
            result = await session.execute(query)
            return [_service(row) for row in result.scalars()]

    async def list_confirmed_bookings(
        self,
        staff_ids: Iterable[str],
        window_start: datetime,
        window_end: datetime,
    ) -> list[Booking]:
        wanted = list(staff_ids)
        if not wanted:
            return []
        async with self._session("list_confirmed_bookings") as session:
            result = await session.execute(
                select(BookingRow)
                .where(
                    BookingRow.staff_id.in_(wanted),
                    BookingRow.status == BookingStatusDB.CONFIRMED,
                    BookingRow.start_at < _utc(window_end),
                    BookingRow.end_at > _utc(window_start),
                )
                .order_by(BookingRow.start_at)
            )
            return [_booking(row) for row in result.scalars()]

    async def get_booking(self, booking_id: str) -> Optional[Booking]:
        async with self._session("get_booking") as session:
            row = await session.get(BookingRow, booking_id)
            return _booking(row) if row else None

    async def set_booking_status(self, booking_id: str, status: BookingStatus) -> Optional[Booking]:
        async with self._session("set_booking_status", write=True) as session:
            row = await session.get(BookingRow, booking_id)
            if row is None:
                return None
            row.status = BookingStatusDB(status.value)
            if status == BookingStatus.CANCELLED:
                row.cancelled_at = datetime.now(timezone.utc)
            return _booking(row)

    @asynccontextmanager
    async def allocation(self, staff_id: str) -> AsyncIterator[AllocationTransaction]:
        async with self._session("allocation", write=True) as session:
            # Row lock serializes allocations for this staff member
            await session.execute(
                select(StaffRow.id).where(StaffRow.id == staff_id).with_for_update()
            )
            yield _SqlAllocation(session)

    # === WaitlistRepository ===

    async def next_position(self, business_id: str, desired_date: date) -> int:
        async with self._session("next_position") as session:
            return await self._next_position(session, business_id, desired_date)

    async def _next_position(self, session: AsyncSession, business_id: str, desired_date: date) -> int:
        result = await session.execute(
            select(func.max(WaitlistEntryRow.position)).where(
                WaitlistEntryRow.business_id == business_id,
                WaitlistEntryRow.desired_date == desired_date,
            )
        )
        return (result.scalar() or 0) + 1

    async def add_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        async with self._session("add_entry", write=True) as session:
            entry.position = await self._next_position(session, entry.business_id, entry.desired_date)
            row = WaitlistEntryRow(id=entry.id)
            _copy_entry(entry, row)
            session.add(row)
        return entry

    async def get_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        async with self._session("get_entry") as session:
            row = await session.get(WaitlistEntryRow, entry_id)
            return _entry(row) if row else None

    async def list_entries(
        self,
        business_id: str,
        desired_date: Optional[date] = None,
        statuses: Optional[Iterable[WaitlistStatus]] = None,
        customer_id: Optional[str] = None,
    ) -> list[WaitlistEntry]:
        async with self._session("list_entries") as session:
            query = select(WaitlistEntryRow).where(WaitlistEntryRow.business_id == business_id)
            if desired_date is not None:
                query = query.where(WaitlistEntryRow.desired_date == desired_date)
            if statuses is not None:
                query = query.where(
                    WaitlistEntryRow.status.in_([WaitlistStatusDB(s.value) for s in statuses])
                )
            if customer_id is not None:
                query = query.where(WaitlistEntryRow.customer_id == customer_id)
            query = query.order_by(WaitlistEntryRow.desired_date, WaitlistEntryRow.position)
            result = await session.execute(query)
            return [_entry(row) for row in result.scalars()]

    async def save_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        async with self._session("save_entry", write=True) as session:
            row = await session.get(WaitlistEntryRow, entry.id)
            if row is None:
                row = WaitlistEntryRow(id=entry.id)
                session.add(row)
            _copy_entry(entry, row)
        return entry

    # === Seeding ===

    async def add_business(self, business: Business) -> Business:
        async with self._session("add_business", write=True) as session:
            session.add(
                BusinessRow(
                    id=business.id,
                    name=business.name,
                    timezone=business.timezone,
                    default_language=business.default_language,
                    business_hours=business.schedule.to_dict(),
                )
            )
        return business

    async def add_staff(self, staff: Staff) -> Staff:
        async with self._session("add_staff", write=True) as session:
            session.add(
                StaffRow(
                    id=staff.id,
                    business_id=staff.business_id,
                    name=staff.name,
                    is_active=staff.is_active,
                    schedule=staff.schedule.to_dict() if staff.schedule is not None else None,
                    service_ids=sorted(staff.service_ids),
                )
            )
        return staff

    async def add_service(self, service: ServiceSpec) -> ServiceSpec:
        async with self._session("add_service", write=True) as session:
            session.add(
                ServiceRow(
                    id=service.id,
                    business_id=service.business_id,
                    name=service.name,
                    duration_minutes=service.duration_minutes,
                    buffer_minutes=service.buffer_minutes,
                    is_active=service.is_active,
                )
            )
        return service
