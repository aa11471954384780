"""
Database Models

SQLAlchemy ORM models for the multi-tenant booking system.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Enum as SQLEnum,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class BookingStatusDB(str, Enum):
    """Booking status enumeration."""
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"


class WaitlistStatusDB(str, Enum):
    """Waitlist entry status enumeration."""
    ACTIVE = "ACTIVE"
    NOTIFIED = "NOTIFIED"
    BOOKED = "BOOKED"
    EXPIRED = "EXPIRED"


class BusinessRow(Base, TimestampMixin):
    """
    Business model (Tenant).

    Each business has its own staff, services, bookings and waitlist.
    Opening hours are stored as a weekday -> hours mapping in local time.
    """

    __tablename__ = "businesses"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(50), default="UTC")
    default_language: Mapped[str] = mapped_column(String(10), default="en")
    business_hours: Mapped[dict] = mapped_column(JSON, default=dict)

    # Relationships
    staff: Mapped[List["StaffRow"]] = relationship("StaffRow", back_populates="business")
    services: Mapped[List["ServiceRow"]] = relationship("ServiceRow", back_populates="business")

    def __repr__(self) -> str:
        return f"<Business(id={self.id}, name='{self.name}', timezone='{self.timezone}')>"


class StaffRow(Base, TimestampMixin):
    """
    Staff model.

    The allocator locks this row while it re-checks and inserts a booking,
    so allocations for one staff member commit one at a time.
    """

    __tablename__ = "staff"
    __table_args__ = (
        Index("idx_staff_business", "business_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    business_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    schedule: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    service_ids: Mapped[list] = mapped_column(JSON, default=list)

    # Relationships
    business: Mapped["BusinessRow"] = relationship("BusinessRow", back_populates="staff")

    def __repr__(self) -> str:
        return f"<Staff(id={self.id}, name='{self.name}', active={self.is_active})>"


class ServiceRow(Base, TimestampMixin):
    """Service model. Duration and buffer are minutes."""

    __tablename__ = "services"
    __table_args__ = (
        Index("idx_service_business", "business_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    business_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    buffer_minutes: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Relationships
    business: Mapped["BusinessRow"] = relationship("BusinessRow", back_populates="services")

    def __repr__(self) -> str:
        return f"<Service(id={self.id}, name='{self.name}', duration={self.duration_minutes})>"


class BookingRow(Base, TimestampMixin):
    """
    Booking model.

    ``start_at``/``end_at`` are UTC; ``end_at`` includes the service buffer.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        UniqueConstraint("business_id", "booking_code", name="uq_booking_code"),
        Index("idx_booking_staff_start", "staff_id", "start_at"),
        Index("idx_booking_status", "business_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    business_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    staff_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("staff.id", ondelete="CASCADE"),
        nullable=False
    )
    service_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("services.id", ondelete="SET NULL"),
        nullable=True
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    booking_code: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[BookingStatusDB] = mapped_column(
        SQLEnum(BookingStatusDB),
        default=BookingStatusDB.CONFIRMED
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, code={self.booking_code}, staff_id={self.staff_id}, "
            f"start={self.start_at}, status={self.status.value})>"
        )


class WaitlistEntryRow(Base, TimestampMixin):
    """
    Waitlist entry model.

    Positions are monotonic per (business, desired_date); requeued entries
    take a new, larger position.
    """

    __tablename__ = "waitlist_entries"
    __table_args__ = (
        Index("idx_waitlist_queue", "business_id", "desired_date", "position"),
        Index("idx_waitlist_customer", "business_id", "customer_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    business_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False
    )
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    service_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    staff_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    desired_date: Mapped[date] = mapped_column(Date, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[WaitlistStatusDB] = mapped_column(
        SQLEnum(WaitlistStatusDB),
        default=WaitlistStatusDB.ACTIVE
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    offered_staff_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    offered_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    booking_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    language: Mapped[str] = mapped_column(String(10), default="en")

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, customer_id={self.customer_id}, "
            f"date={self.desired_date}, position={self.position}, status={self.status.value})>"
        )
