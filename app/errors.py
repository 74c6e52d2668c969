"""
Nearmatch: Error taxonomy.

Every failure the matching core can report is a ``NearmatchError`` carrying
the HTTP status it maps to and a stable machine-readable ``code``.  The
application registers a single exception handler for the base class.
"""

from __future__ import annotations

from typing import Any


class NearmatchError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "Internal error."

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


# ── 400 ──────────────────────────────────────────────────────────────────────

class InputValidationError(NearmatchError):
    status_code = 400
    code = "invalid_input"
    default_message = "Invalid input."


class InvalidCoordinate(InputValidationError):
    code = "invalid_coordinate"
    default_message = "Latitude must be in [-90, 90] and longitude in [-180, 180]."


class InvalidRadius(InputValidationError):
    code = "invalid_radius"
    default_message = "Radius must be a positive number of metres."


class InvalidLimit(InputValidationError):
    code = "invalid_limit"
    default_message = "Limit is out of range."


class SelfMatch(InputValidationError):
    code = "self_match"
    default_message = "Users cannot propose a match to themselves."


class LocationMissing(InputValidationError):
    code = "location_missing"
    default_message = "Set a location before searching for matches."


# ── 401 / 403 ────────────────────────────────────────────────────────────────

class AuthenticationError(NearmatchError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Missing or invalid credentials."


class AuthorizationError(NearmatchError):
    status_code = 403
    code = "forbidden"
    default_message = "Not allowed."


class NotAuthorized(AuthorizationError):
    code = "not_recipient"
    default_message = "Only the recipient can respond to this match request."


# ── 404 ──────────────────────────────────────────────────────────────────────

class NotFoundError(NearmatchError):
    status_code = 404
    code = "not_found"
    default_message = "Not found."


class UserNotFound(NotFoundError):
    code = "user_not_found"
    default_message = "User not found."


class MatchNotFound(NotFoundError):
    code = "match_not_found"
    default_message = "Match request not found."


# ── 409 ──────────────────────────────────────────────────────────────────────

class ConflictError(NearmatchError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict."


class DuplicateRequest(ConflictError):
    code = "duplicate_request"
    default_message = "A match request between these users already exists."


class AlreadyResolved(ConflictError):
    code = "already_resolved"
    default_message = "This match request has already been resolved."


# ── 500 / 504 ────────────────────────────────────────────────────────────────

class InternalError(NearmatchError):
    status_code = 500
    code = "internal_error"


class IndexCorruption(InternalError):
    code = "index_corruption"
    default_message = "Spatial index bucket is inconsistent."

    def __init__(self, cell: tuple[int, int], message: str | None = None) -> None:
        self.cell = cell
        super().__init__(message, cell=list(cell))


class OperationTimeout(NearmatchError):
    status_code = 504
    code = "timeout"
    default_message = "Operation timed out."
