"""
Nearmatch: Shared API dependencies.

``get_current_user_id`` verifies the bearer token issued by the account
service and resolves it to a user id; the matching core trusts that id and
never sees credentials.
"""

from __future__ import annotations

import uuid

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import Settings, get_settings
from app.errors import AuthenticationError
from app.services.matching_service import MatchingService
from app.services.spatial_index import SpatialIndex

logger = structlog.get_logger("nearmatch.api.auth")

_bearer = HTTPBearer(auto_error=False)


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    settings: Settings = Depends(get_app_settings),
) -> uuid.UUID:
    """Resolve ``Authorization: Bearer <jwt>`` to the ``sub`` user id."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Missing bearer token.")

    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["sub"]},
        )
        return uuid.UUID(str(claims["sub"]))
    except jwt.ExpiredSignatureError:
        logger.info("auth_token_expired")
        raise AuthenticationError("Token has expired.") from None
    except (jwt.InvalidTokenError, ValueError):
        logger.info("auth_token_invalid")
        raise AuthenticationError("Invalid token.") from None


def get_spatial_index(request: Request) -> SpatialIndex:
    return request.app.state.spatial_index


def get_matching_service(
    index: SpatialIndex = Depends(get_spatial_index),
    settings: Settings = Depends(get_app_settings),
) -> MatchingService:
    return MatchingService(index=index, settings=settings)
