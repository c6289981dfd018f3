"""Pricing settings schemas."""
from datetime import datetime
from typing import Optional

from app.schemas.base import CamelModel, BaseUpdateSchema


class PublicSettings(CamelModel):
    """What checkout needs to preview discounts and the advance amount."""
    instant_payment_discount: float
    advance_payment_discount: float
    advance_payment_amount: float


class SettingsResponse(PublicSettings):
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None


class SettingsUpdate(BaseUpdateSchema):
    """Partial update; ranges are checked by the settings service."""
    instant_payment_discount: Optional[float] = None
    advance_payment_discount: Optional[float] = None
    advance_payment_amount: Optional[float] = None
