"""
Pricing settings provider.

The settings live in a single-row table (id=1) that is created with defaults
the first time it is read. Reads go through a short-lived process-wide cache;
updates invalidate it.
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Optional
import logging

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings as app_settings
from app.core.errors import ValidationError
from app.core.money import validate_and_round_money
from app.db_types import utc_now
from app.models.settings import PricingSettings, SETTINGS_ROW_ID
from app.services.cache_service import get_cache

logger = logging.getLogger(__name__)

SETTINGS_CACHE_KEY = "pricing_settings"

# field -> (min, max)
SETTINGS_BOUNDS: dict[str, tuple[float, float]] = {
    "instant_payment_discount": (0, 100),
    "advance_payment_discount": (0, 100),
    "advance_payment_amount": (1, 10000),
}


@dataclass(frozen=True)
class PricingSnapshot:
    """Immutable view of the settings row, safe to cache."""
    instant_payment_discount: float
    advance_payment_discount: float
    advance_payment_amount: float
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: PricingSettings) -> "PricingSnapshot":
        return cls(
            instant_payment_discount=float(row.instant_payment_discount),
            advance_payment_discount=float(row.advance_payment_discount),
            advance_payment_amount=float(row.advance_payment_amount),
            updated_by=row.updated_by,
            updated_at=row.updated_at,
        )

    def to_cache(self) -> dict[str, Any]:
        data = asdict(self)
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data

    @classmethod
    def from_cache(cls, data: dict[str, Any]) -> "PricingSnapshot":
        updated_at = data.get("updated_at")
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at)
        return cls(
            instant_payment_discount=float(data["instant_payment_discount"]),
            advance_payment_discount=float(data["advance_payment_discount"]),
            advance_payment_amount=float(data["advance_payment_amount"]),
            updated_by=data.get("updated_by"),
            updated_at=updated_at,
        )


def _insert_for(db: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


def _defaults() -> dict[str, float]:
    return {
        "instant_payment_discount": app_settings.DEFAULT_INSTANT_PAYMENT_DISCOUNT,
        "advance_payment_discount": app_settings.DEFAULT_ADVANCE_PAYMENT_DISCOUNT,
        "advance_payment_amount": app_settings.DEFAULT_ADVANCE_PAYMENT_AMOUNT,
    }


class SettingsService:
    """Get-or-create accessor and partial updater for pricing settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _load_row(self) -> Optional[PricingSettings]:
        result = await self.db.execute(
            select(PricingSettings)
            .where(PricingSettings.id == SETTINGS_ROW_ID)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_row(self) -> PricingSettings:
        row = await self._load_row()
        if row is not None:
            return row

        now = utc_now()
        insert = _insert_for(self.db)
        stmt = (
            insert(PricingSettings)
            .values(id=SETTINGS_ROW_ID, created_at=now, updated_at=now, **_defaults())
            .on_conflict_do_nothing(index_elements=["id"])
        )
        await self.db.execute(stmt)
        await self.db.commit()
        logger.info("Pricing settings initialised with defaults")
        return await self._load_row()

    async def get_settings(self) -> PricingSnapshot:
        """Current settings, from cache when fresh."""
        cache = get_cache()
        cached = await cache.get_global(SETTINGS_CACHE_KEY)
        if cached:
            return PricingSnapshot.from_cache(cached)

        snapshot = PricingSnapshot.from_row(await self._get_or_create_row())
        await cache.set_global(
            SETTINGS_CACHE_KEY,
            snapshot.to_cache(),
            ttl=app_settings.SETTINGS_CACHE_TTL,
        )
        return snapshot

    async def update_settings(self, fields: dict[str, Any], updated_by: Optional[str]) -> PricingSnapshot:
        """
        Partially update the settings row.

        Each supplied field is range-checked on its own; None values count as
        not supplied. Raises ValidationError when nothing is supplied.
        """
        supplied = {k: v for k, v in fields.items() if k in SETTINGS_BOUNDS and v is not None}
        if not supplied:
            raise ValidationError(
                "At least one setting must be provided: "
                "instantPaymentDiscount, advancePaymentDiscount or advancePaymentAmount"
            )

        values: dict[str, float] = {}
        for field, raw in supplied.items():
            low, high = SETTINGS_BOUNDS[field]
            value = validate_and_round_money(raw, field)
            if value < low or value > high:
                raise ValidationError(
                    f"{field} must be between {low} and {high}",
                    details={"field": field, "value": raw},
                )
            values[field] = value

        now = utc_now()
        insert = _insert_for(self.db)
        stmt = insert(PricingSettings).values(
            id=SETTINGS_ROW_ID,
            created_at=now,
            updated_at=now,
            updated_by=updated_by,
            **{**_defaults(), **values},
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={**values, "updated_by": updated_by, "updated_at": now},
        )
        await self.db.execute(stmt)
        await self.db.commit()

        await get_cache().delete_global(SETTINGS_CACHE_KEY)
        logger.info(f"Pricing settings updated by {updated_by}: {values}")

        return PricingSnapshot.from_row(await self._load_row())
