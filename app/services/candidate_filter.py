"""
Nearmatch: Candidate Filter

Narrows spatial-index hits to users the requester may be shown.  Rules run
in a fixed order and the first failing rule decides the rejection reason:

  1. self             - the requester never sees themselves
  2. already_matched  - an accepted request exists for the pair
  3. pending_request  - a pending request exists in either direction
  4. gender/age       - the requester's configured preferences

Every rule is a pure function ``(requester, candidate, history) -> reason``
returning ``None`` when the candidate passes.  Rejections are kept with
their reason for audit logging and are never returned to the end user.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

import structlog

from app.services.user_directory import UserProfile

logger = structlog.get_logger("nearmatch.candidate_filter")


@dataclass(frozen=True)
class MatchHistory:
    """Counterparties of the requester grouped by request state."""

    accepted: frozenset[uuid.UUID] = frozenset()
    pending: frozenset[uuid.UUID] = frozenset()

    def __len__(self) -> int:
        return len(self.accepted) + len(self.pending)


@dataclass
class MatchCandidate:
    requester_id: uuid.UUID
    candidate_id: uuid.UUID
    distance_m: float
    profile: UserProfile | None = None
    eligible: bool = True
    reason: str | None = None


Rule = Callable[[UserProfile, UserProfile, MatchHistory], "str | None"]


def exclude_self(requester: UserProfile, candidate: UserProfile, history: MatchHistory) -> str | None:
    return "self" if candidate.user_id == requester.user_id else None


def exclude_accepted(requester: UserProfile, candidate: UserProfile, history: MatchHistory) -> str | None:
    return "already_matched" if candidate.user_id in history.accepted else None


def exclude_pending(requester: UserProfile, candidate: UserProfile, history: MatchHistory) -> str | None:
    return "pending_request" if candidate.user_id in history.pending else None


def demographic_preferences(
    requester: UserProfile,
    candidate: UserProfile,
    history: MatchHistory,
) -> str | None:
    """Apply the requester's gender and age preferences.

    A configured preference is only satisfied by a known value, so a
    candidate with no gender or date of birth on file fails it.
    """
    prefs = requester.preferences
    if prefs.gender is not None:
        if candidate.gender is None or candidate.gender.lower() != prefs.gender.lower():
            return "gender_preference"
    if prefs.min_age is not None or prefs.max_age is not None:
        if candidate.age is None:
            return "age_preference"
        if prefs.min_age is not None and candidate.age < prefs.min_age:
            return "age_preference"
        if prefs.max_age is not None and candidate.age > prefs.max_age:
            return "age_preference"
    return None


DEFAULT_RULES: tuple[Rule, ...] = (
    exclude_self,
    exclude_accepted,
    exclude_pending,
    demographic_preferences,
)


@dataclass
class FilterResult:
    eligible: list[MatchCandidate] = field(default_factory=list)
    rejected: list[MatchCandidate] = field(default_factory=list)


class CandidateFilter:
    def __init__(self, rules: Sequence[Rule] = DEFAULT_RULES) -> None:
        self.rules = tuple(rules)

    def evaluate(self, requester: UserProfile, candidate: UserProfile, history: MatchHistory) -> str | None:
        """Return the first rejection reason, or ``None`` if eligible."""
        for rule in self.rules:
            reason = rule(requester, candidate, history)
            if reason is not None:
                return reason
        return None

    def apply(
        self,
        requester: UserProfile,
        candidates: Iterable[MatchCandidate],
        history: MatchHistory,
    ) -> FilterResult:
        """Split candidates into eligible and rejected, preserving order.

        Each candidate must carry its ``profile``.
        """
        result = FilterResult()
        for candidate in candidates:
            reason = self.evaluate(requester, candidate.profile, history)
            if reason is None:
                candidate.eligible = True
                candidate.reason = None
                result.eligible.append(candidate)
            else:
                candidate.eligible = False
                candidate.reason = reason
                result.rejected.append(candidate)
                logger.debug(
                    "candidate_rejected",
                    requester_id=str(requester.user_id),
                    candidate_id=str(candidate.candidate_id),
                    reason=reason,
                )
        return result
