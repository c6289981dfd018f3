"""Pricing settings endpoints (public read, admin read/update)."""

import logging

from fastapi import APIRouter

from app.api.deps import DB, AdminUser
from app.schemas.common import APIResponse
from app.schemas.settings import PublicSettings, SettingsResponse, SettingsUpdate
from app.services.settings_service import SettingsService

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()


@router.get("", response_model=APIResponse[PublicSettings])
async def get_public_settings(db: DB):
    """Discount percentages and advance amount shown at checkout."""
    snapshot = await SettingsService(db).get_settings()
    return APIResponse(
        data=PublicSettings(
            instant_payment_discount=snapshot.instant_payment_discount,
            advance_payment_discount=snapshot.advance_payment_discount,
            advance_payment_amount=snapshot.advance_payment_amount,
        )
    )


@admin_router.get("", response_model=APIResponse[SettingsResponse])
async def get_admin_settings(db: DB, admin: AdminUser):
    snapshot = await SettingsService(db).get_settings()
    return APIResponse(data=SettingsResponse(**snapshot.to_cache()))


@admin_router.put("", response_model=APIResponse[SettingsResponse])
async def update_settings(data: SettingsUpdate, db: DB, admin: AdminUser):
    """Partial update; at least one field is required."""
    snapshot = await SettingsService(db).update_settings(data.model_dump(), updated_by=admin.user_id)
    return APIResponse(
        message="Settings updated successfully",
        data=SettingsResponse(**snapshot.to_cache()),
    )
