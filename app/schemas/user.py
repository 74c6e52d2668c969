from pydantic import BaseModel, Field, model_validator
from uuid import UUID
from typing import Optional

from app.utils.geo import Coordinate


class CoordinateIn(BaseModel):
    latitude: float = Field(ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(ge=-180, le=180, allow_inf_nan=False)

    def to_coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


class LocationResponse(BaseModel):
    user_id: UUID
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    indexed: bool


class PreferencesUpdate(BaseModel):
    preferred_gender: Optional[str] = Field(None, max_length=16)
    preferred_age_min: Optional[int] = Field(None, ge=18, le=120)
    preferred_age_max: Optional[int] = Field(None, ge=18, le=120)

    @model_validator(mode="after")
    def _age_range_ordered(self) -> "PreferencesUpdate":
        lo, hi = self.preferred_age_min, self.preferred_age_max
        if lo is not None and hi is not None and lo > hi:
            raise ValueError("preferred_age_min must not exceed preferred_age_max")
        return self


class PreferencesResponse(BaseModel):
    user_id: UUID
    preferred_gender: Optional[str] = None
    preferred_age_min: Optional[int] = None
    preferred_age_max: Optional[int] = None
