"""
Nearmatch: Users API

The slice of profile management the matching core depends on: the current
user's coordinate (kept in step with the spatial index) and discovery
preferences.  Account creation and login live in the account service.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id, get_matching_service
from app.database import get_db
from app.errors import UserNotFound
from app.models.user import User
from app.schemas.user import (
    CoordinateIn,
    LocationResponse,
    PreferencesResponse,
    PreferencesUpdate,
)
from app.services.matching_service import MatchingService

logger = structlog.get_logger("nearmatch.api.users")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# PUT /me/location: Set coordinate
# ──────────────────────────────────────────────────────────────────────────────

@router.put(
    "/me/location",
    response_model=LocationResponse,
    summary="Set the current user's location",
)
async def set_location(
    payload: CoordinateIn,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: MatchingService = Depends(get_matching_service),
    db: AsyncSession = Depends(get_db),
) -> LocationResponse:
    user = await service.set_location(user_id, payload.to_coordinate(), db)
    return LocationResponse(
        user_id=user.id,
        latitude=user.latitude,
        longitude=user.longitude,
        indexed=user.id in service.index,
    )


# ──────────────────────────────────────────────────────────────────────────────
# DELETE /me/location: Hide from discovery
# ──────────────────────────────────────────────────────────────────────────────

@router.delete(
    "/me/location",
    response_model=LocationResponse,
    summary="Clear the current user's location",
)
async def clear_location(
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: MatchingService = Depends(get_matching_service),
    db: AsyncSession = Depends(get_db),
) -> LocationResponse:
    """Remove the coordinate; the user stops appearing in searches."""
    user = await service.clear_location(user_id, db)
    return LocationResponse(user_id=user.id, indexed=False)


# ──────────────────────────────────────────────────────────────────────────────
# PUT /me/preferences: Discovery preferences
# ──────────────────────────────────────────────────────────────────────────────

@router.put(
    "/me/preferences",
    response_model=PreferencesResponse,
    summary="Update discovery preferences",
)
async def update_preferences(
    payload: PreferencesUpdate,
    user_id: uuid.UUID = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
) -> PreferencesResponse:
    """Replace the gender/age preferences used to filter candidates.

    Omitted or null fields clear that preference.
    """
    log = logger.bind(user_id=str(user_id))

    stmt = select(User).where(User.id == user_id, User.is_active.is_(True))
    user = (await db.execute(stmt)).scalar_one_or_none()
    if user is None:
        log.warning("update_preferences_user_not_found")
        raise UserNotFound(user_id=str(user_id))

    user.preferred_gender = payload.preferred_gender
    user.preferred_age_min = payload.preferred_age_min
    user.preferred_age_max = payload.preferred_age_max
    await db.flush()

    log.info("update_preferences_complete")
    return PreferencesResponse(
        user_id=user.id,
        preferred_gender=payload.preferred_gender,
        preferred_age_min=payload.preferred_age_min,
        preferred_age_max=payload.preferred_age_max,
    )
