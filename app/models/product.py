import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Boolean, Text, Index
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import JSONType, Money, UTCDateTime, UUIDType, utc_now


class ProductCategory(str, Enum):
    """Rentable appliance categories."""
    AC = "AC"
    REFRIGERATOR = "Refrigerator"
    WASHING_MACHINE = "WashingMachine"


class ProductStatus(str, Enum):
    """Availability of a physical rental unit."""
    AVAILABLE = "Available"
    RENTED_OUT = "RentedOut"
    UNDER_MAINTENANCE = "UnderMaintenance"


# Rental tenures (months) every product must be priced for
RENTAL_DURATIONS: tuple[int, ...] = (3, 6, 9, 11, 12, 24)
MIN_MONTHLY_TENURE = 3


class Product(Base):
    """
    Rentable appliance.

    Prices are held one column per tenure so a product can never be saved
    without a price for each supported duration.
    """
    __tablename__ = "products"
    __table_args__ = (
        Index('ix_product_category_status', 'category', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Basic Info
    category: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        index=True,
        comment="AC, Refrigerator, WashingMachine"
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    type: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
        comment="Split/Window, Single/Double Door, Top/Front Load"
    )
    capacity: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    images: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    # Duration price map (all required)
    price_3: Mapped[float] = mapped_column(Money(), nullable=False)
    price_6: Mapped[float] = mapped_column(Money(), nullable=False)
    price_9: Mapped[float] = mapped_column(Money(), nullable=False)
    price_11: Mapped[float] = mapped_column(Money(), nullable=False)
    price_12: Mapped[float] = mapped_column(Money(), nullable=False)
    price_24: Mapped[float] = mapped_column(Money(), nullable=False)

    discount: Mapped[float] = mapped_column(
        Money(),
        nullable=False,
        default=0,
        comment="Product-level discount percentage (0-100)"
    )

    # Monthly payment plan
    monthly_payment_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    monthly_price: Mapped[Optional[float]] = mapped_column(Money(), nullable=True)
    security_deposit: Mapped[Optional[float]] = mapped_column(Money(), nullable=True)

    # AC only: {"amount": 1500, "includedItems": [...], "extraMaterialRates": {...}}
    installation_charges: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    status: Mapped[str] = mapped_column(
        String(30),
        nullable=False,
        default=ProductStatus.AVAILABLE.value,
        index=True,
        comment="Available, RentedOut, UnderMaintenance"
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    @property
    def price_map(self) -> dict[int, float]:
        return {duration: self.price_for(duration) for duration in RENTAL_DURATIONS}

    def price_for(self, duration: int) -> Optional[float]:
        """List price for a tenure, or None when the tenure is not supported."""
        if duration not in RENTAL_DURATIONS:
            return None
        return getattr(self, f"price_{duration}")

    @property
    def installation_amount(self) -> float:
        if self.category != ProductCategory.AC.value or not self.installation_charges:
            return 0.0
        return float(self.installation_charges.get("amount") or 0)

    def __repr__(self) -> str:
        return f"<Product(name='{self.name}', category='{self.category}', status='{self.status}')>"
