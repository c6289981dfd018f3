from datetime import datetime
from typing import Optional

from sqlalchemy import Integer, String, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.db_types import Money, UTCDateTime, utc_now


SETTINGS_ROW_ID = 1


class PricingSettings(Base):
    """
    Single-row table with the discounts and advance amount used at checkout.

    The row is created lazily with defaults on first read; see
    app.services.settings_service.
    """
    __tablename__ = "settings"
    __table_args__ = (
        CheckConstraint('id = 1', name='ck_settings_single_row'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SETTINGS_ROW_ID)
    instant_payment_discount: Mapped[float] = mapped_column(
        Money(),
        nullable=False,
        default=10,
        comment="Percentage off for payNow orders"
    )
    advance_payment_discount: Mapped[float] = mapped_column(
        Money(),
        nullable=False,
        default=5,
        comment="Percentage off for payAdvance orders"
    )
    advance_payment_amount: Mapped[float] = mapped_column(
        Money(),
        nullable=False,
        default=500,
        comment="Amount collected up-front for payAdvance orders"
    )
    updated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<PricingSettings(instant={self.instant_payment_discount}, "
            f"advance={self.advance_payment_discount}, advance_amount={self.advance_payment_amount})>"
        )
