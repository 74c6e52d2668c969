"""
Nearmatch: User Directory

Read-only view of the ``users`` table shaped for the matching core.  Rows are
converted into immutable ``UserProfile`` snapshots so eligibility rules stay
pure functions that never touch the session.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User
from app.utils.geo import Coordinate

logger = structlog.get_logger("nearmatch.user_directory")


def age_on(date_of_birth: date | None, today: date) -> int | None:
    """Whole years between ``date_of_birth`` and ``today``."""
    if date_of_birth is None:
        return None
    had_birthday = (today.month, today.day) >= (date_of_birth.month, date_of_birth.day)
    return today.year - date_of_birth.year - (0 if had_birthday else 1)


@dataclass(frozen=True)
class DemographicPreferences:
    gender: str | None = None
    min_age: int | None = None
    max_age: int | None = None


@dataclass(frozen=True)
class UserProfile:
    user_id: uuid.UUID
    nickname: str
    gender: str | None = None
    age: int | None = None
    bio: str | None = None
    region: str | None = None
    profile_image_url: str | None = None
    coordinate: Coordinate | None = None
    preferences: DemographicPreferences = DemographicPreferences()

    @classmethod
    def from_user(cls, user: User, today: date | None = None) -> "UserProfile":
        today = today or date.today()
        coordinate = None
        if user.has_location:
            coordinate = Coordinate(user.latitude, user.longitude)
        return cls(
            user_id=user.id,
            nickname=user.nickname,
            gender=user.gender,
            age=age_on(user.date_of_birth, today),
            bio=user.bio,
            region=user.region,
            profile_image_url=user.profile_image_url,
            coordinate=coordinate,
            preferences=DemographicPreferences(
                gender=user.preferred_gender,
                min_age=user.preferred_age_min,
                max_age=user.preferred_age_max,
            ),
        )


class UserDirectory:
    """Lookups of active users by id and by location."""

    async def get_profile(self, user_id: uuid.UUID, db_session: AsyncSession) -> UserProfile | None:
        stmt = select(User).where(User.id == user_id, User.is_active.is_(True))
        user = (await db_session.execute(stmt)).scalar_one_or_none()
        if user is None:
            return None
        return UserProfile.from_user(user)

    async def get_profiles(
        self,
        user_ids: Iterable[uuid.UUID],
        db_session: AsyncSession,
    ) -> dict[uuid.UUID, UserProfile]:
        """Return active profiles keyed by id; unknown or inactive ids are absent."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        stmt = select(User).where(User.id.in_(ids), User.is_active.is_(True))
        users = (await db_session.execute(stmt)).scalars().all()
        today = date.today()
        return {u.id: UserProfile.from_user(u, today) for u in users}

    async def exists(self, user_id: uuid.UUID, db_session: AsyncSession) -> bool:
        stmt = select(User.id).where(User.id == user_id, User.is_active.is_(True))
        return (await db_session.execute(stmt)).scalar_one_or_none() is not None

    async def located_users(
        self,
        db_session: AsyncSession,
        bounds: tuple[float, float, float, float] | None = None,
    ) -> list[tuple[uuid.UUID, Coordinate]]:
        """Active users with a coordinate, optionally inside
        ``(lat_min, lat_max, lon_min, lon_max)`` (inclusive)."""
        stmt = select(User.id, User.latitude, User.longitude).where(
            User.is_active.is_(True),
            User.latitude.is_not(None),
            User.longitude.is_not(None),
        )
        if bounds is not None:
            lat_min, lat_max, lon_min, lon_max = bounds
            stmt = stmt.where(
                User.latitude.between(lat_min, lat_max),
                User.longitude.between(lon_min, lon_max),
            )
        rows = (await db_session.execute(stmt)).all()
        logger.debug("located_users_loaded", count=len(rows), bounded=bounds is not None)
        return [(row.id, Coordinate(row.latitude, row.longitude)) for row in rows]
