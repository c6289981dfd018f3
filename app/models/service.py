import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Text, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import JSONType, Money, UTCDateTime, UUIDType, utc_now


SERVICE_CATEGORIES = (
    "Water Leakage Repair",
    "AC Gas Refilling",
    "AC Foam Wash",
    "AC Jet Wash Service",
    "AC Repair Inspection",
    "Split AC Installation",
)

TIME_SLOTS = ("10-12", "12-2", "2-4", "4-6", "6-8")


class ServiceBookingStatus(str, Enum):
    NEW = "New"
    CONTACTED = "Contacted"
    IN_PROGRESS = "In-Progress"
    RESOLVED = "Resolved"
    REJECTED = "Rejected"
    CANCELLED = "Cancelled"


class Service(Base):
    """In-home service offering (gas refill, jet wash, installation...)."""
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[float] = mapped_column(Money(), nullable=False)
    original_price: Mapped[Optional[float]] = mapped_column(Money(), nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return f"<Service(title='{self.title}', price={self.price})>"


class ServiceBooking(Base):
    """
    A scheduled service visit.

    Bookings synthesized from an order carry its id in `order_id` so that
    cancelling the order cancels the visit.
    """
    __tablename__ = "service_bookings"
    __table_args__ = (
        Index('ix_service_booking_status_created', 'status', 'created_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUIDType, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[str] = mapped_column(String(30), unique=True, nullable=False, index=True)

    service_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("services.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    order_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="SET NULL"),
        nullable=True,
        index=True
    )

    # Snapshot of the service at booking time
    service_title: Mapped[str] = mapped_column(String(200), nullable=False)
    service_price: Mapped[float] = mapped_column(Money(), nullable=False)

    # Contact & address
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    date: Mapped[Optional[str]] = mapped_column(String(10), nullable=True, comment="YYYY-MM-DD")
    time: Mapped[Optional[str]] = mapped_column(String(10), nullable=True, comment="10-12, 12-2, 2-4, 4-6, 6-8")
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    near_landmark: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    pincode: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)
    alternate_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    address_type: Mapped[str] = mapped_column(String(10), nullable=False, default="myself")
    contact_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    images: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    payment_option: Mapped[str] = mapped_column(String(20), nullable=False, default="payLater")
    payment_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=ServiceBookingStatus.NEW.value,
        index=True
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<ServiceBooking(booking_id='{self.booking_id}', status='{self.status}')>"
