"""
Nearmatch: Matching API

Endpoints for discovering nearby candidates, proposing a match and
responding to a proposal.  The acting user always comes from the bearer
token, never from the request body.
"""

from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id, get_matching_service
from app.database import get_db
from app.models.match import MatchRequest, MatchStatus
from app.schemas.match import (
    MatchCandidateResponse,
    MatchRequestResponse,
    MatchRespondRequest,
)
from app.services.matching_service import MatchingService

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# GET /: Nearby candidates for the current user
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=list[MatchCandidateResponse],
    summary="Find nearby match candidates",
)
async def find_matches(
    radius: Optional[float] = Query(None, gt=0, description="Search radius in metres"),
    limit: Optional[int] = Query(None, ge=1, description="Max candidates to return"),
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: MatchingService = Depends(get_matching_service),
    db: AsyncSession = Depends(get_db),
) -> list[MatchCandidateResponse]:
    """Return eligible users within ``radius`` metres, nearest first.

    Users the caller has already matched with, or has a pending request
    with (either direction), are excluded, as are users outside the
    caller's gender/age preferences.
    """
    candidates = await service.find_matches(user_id, db, radius_m=radius, limit=limit)
    return [MatchCandidateResponse.from_candidate(c) for c in candidates]


# ──────────────────────────────────────────────────────────────────────────────
# GET /requests: Match requests involving the current user
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/requests",
    response_model=list[MatchRequestResponse],
    summary="List match requests for the current user",
)
async def list_requests(
    status_filter: Optional[MatchStatus] = Query(None, alias="status"),
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: MatchingService = Depends(get_matching_service),
    db: AsyncSession = Depends(get_db),
) -> list[MatchRequest]:
    """Requests the caller sent or received, newest first."""
    return await service.list_requests(user_id, db, status=status_filter)


# ──────────────────────────────────────────────────────────────────────────────
# POST /{target_user_id}: Propose a match
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{target_user_id}",
    response_model=MatchRequestResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Propose a match to another user",
)
async def propose_match(
    target_user_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: MatchingService = Depends(get_matching_service),
    db: AsyncSession = Depends(get_db),
) -> MatchRequest:
    """Create a pending match request.

    Fails with 409 if a pending or accepted request already exists for the
    pair, whichever user proposed it.
    """
    return await service.propose_match(user_id, target_user_id, db)


# ──────────────────────────────────────────────────────────────────────────────
# POST /{match_id}/respond: Accept or reject
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{match_id}/respond",
    response_model=MatchRequestResponse,
    summary="Accept or reject a match request",
)
async def respond_to_match(
    match_id: uuid.UUID,
    payload: MatchRespondRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    service: MatchingService = Depends(get_matching_service),
    db: AsyncSession = Depends(get_db),
) -> MatchRequest:
    """Only the recipient may respond, and only while the request is pending."""
    return await service.respond_to_match(match_id, user_id, payload.accept, db)
