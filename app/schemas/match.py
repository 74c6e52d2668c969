from pydantic import BaseModel
from uuid import UUID
from datetime import datetime
from typing import Optional

from app.services.candidate_filter import MatchCandidate


class MatchCandidateResponse(BaseModel):
    user_id: UUID
    nickname: str
    gender: Optional[str] = None
    age: Optional[int] = None
    bio: Optional[str] = None
    region: Optional[str] = None
    profile_image_url: Optional[str] = None
    distance_m: float

    @classmethod
    def from_candidate(cls, candidate: MatchCandidate) -> "MatchCandidateResponse":
        profile = candidate.profile
        return cls(
            user_id=candidate.candidate_id,
            nickname=profile.nickname,
            gender=profile.gender,
            age=profile.age,
            bio=profile.bio,
            region=profile.region,
            profile_image_url=profile.profile_image_url,
            distance_m=round(candidate.distance_m, 1),
        )


class MatchRespondRequest(BaseModel):
    accept: bool


class MatchRequestResponse(BaseModel):
    id: UUID
    requester_id: UUID
    recipient_id: UUID
    status: str
    created_at: datetime
    responded_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
