"""
Nearmatch: Matching Service

Public contract for proximity matching:

  find_matches     requester coordinate -> spatial index -> candidate filter
  propose_match    create a pending request for an unordered pair
  respond_to_match pending -> accepted | rejected (compare-and-set)
  list_requests    requests where the user is either party

It also keeps the spatial index in step with the ``users`` table when a
user's coordinate changes (``set_location`` / ``clear_location``).

Every public operation runs under ``MATCH_OPERATION_TIMEOUT_SECONDS``.
Index work is CPU-bound and runs in a worker thread, which is why the index
guards itself with a reader-writer lock.
"""

from __future__ import annotations

import asyncio
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, TypeVar

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import Settings, get_settings
from app.errors import (
    AlreadyResolved,
    DuplicateRequest,
    IndexCorruption,
    InvalidLimit,
    InvalidRadius,
    LocationMissing,
    MatchNotFound,
    NotAuthorized,
    OperationTimeout,
    SelfMatch,
    UserNotFound,
)
from app.models.match import OPEN_STATUSES, MatchRequest, MatchStatus
from app.models.user import User
from app.services.candidate_filter import CandidateFilter, MatchCandidate, MatchHistory
from app.services.spatial_index import IndexHit, SpatialIndex
from app.services.user_directory import UserDirectory
from app.utils.geo import Coordinate

logger = structlog.get_logger("nearmatch.matching_service")

T = TypeVar("T")


class MatchingService:
    """Match discovery and match-request lifecycle.

    Collaborators are injected so tests can swap any of them; methods take
    the request-scoped ``AsyncSession`` explicitly.
    """

    def __init__(
        self,
        index: SpatialIndex,
        directory: UserDirectory | None = None,
        candidate_filter: CandidateFilter | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.index = index
        self.directory = directory or UserDirectory()
        self.candidate_filter = candidate_filter or CandidateFilter()

        self.default_radius_m: float = settings.MATCH_DEFAULT_RADIUS_M
        self.max_radius_m: float = settings.MATCH_MAX_RADIUS_M
        self.default_limit: int = settings.MATCH_DEFAULT_LIMIT
        self.max_limit: int = settings.MATCH_MAX_LIMIT
        self.operation_timeout: float = settings.MATCH_OPERATION_TIMEOUT_SECONDS

    # ── Discovery ─────────────────────────────────────────────────────────

    async def find_matches(
        self,
        user_id: uuid.UUID,
        db_session: AsyncSession,
        radius_m: float | None = None,
        limit: int | None = None,
    ) -> list[MatchCandidate]:
        """Return eligible users near ``user_id``, nearest first.

        Raises
        ------
        InvalidRadius / InvalidLimit
            Bad search bounds (checked before any lookup).
        UserNotFound
            Unknown or inactive requester.
        LocationMissing
            The requester has no coordinate on file.
        """
        radius_m, limit = self._resolve_search(radius_m, limit)
        return await self._within_budget(
            "find_matches",
            self._find_matches(user_id, radius_m, limit, db_session),
        )

    def _resolve_search(self, radius_m: float | None, limit: int | None) -> tuple[float, int]:
        radius = self.default_radius_m if radius_m is None else radius_m
        if not math.isfinite(radius) or radius <= 0 or radius > self.max_radius_m:
            raise InvalidRadius(
                f"Radius must be greater than 0 and at most {self.max_radius_m:g} metres.",
                radius_m=radius,
            )
        size = self.default_limit if limit is None else limit
        if not 1 <= size <= self.max_limit:
            raise InvalidLimit(
                f"Limit must be between 1 and {self.max_limit}.",
                limit=size,
            )
        return float(radius), size

    async def _find_matches(
        self,
        user_id: uuid.UUID,
        radius_m: float,
        limit: int,
        db_session: AsyncSession,
    ) -> list[MatchCandidate]:
        log = logger.bind(user_id=str(user_id))
        log.info("find_matches_start", radius_m=radius_m, limit=limit)

        requester = await self.directory.get_profile(user_id, db_session)
        if requester is None:
            raise UserNotFound(user_id=str(user_id))
        if requester.coordinate is None:
            raise LocationMissing(user_id=str(user_id))

        history = await self._load_history(user_id, db_session)

        # Over-fetch past everyone the filter is certain to drop, then keep
        # doubling while the radius still has unseen users.
        fetch = limit + len(history) + 1
        while True:
            hits = await self._query_index(requester.coordinate, radius_m, fetch, db_session)
            candidates = await self._resolve_candidates(user_id, hits, db_session)
            result = self.candidate_filter.apply(requester, candidates, history)
            if len(result.eligible) >= limit or len(hits) < fetch:
                break
            fetch *= 2

        eligible = result.eligible[:limit]
        log.info(
            "find_matches_complete",
            scanned=len(hits),
            rejected=len(result.rejected),
            returned=len(eligible),
        )
        return eligible

    async def _resolve_candidates(
        self,
        user_id: uuid.UUID,
        hits: list[IndexHit],
        db_session: AsyncSession,
    ) -> list[MatchCandidate]:
        profiles = await self.directory.get_profiles((h.user_id for h in hits), db_session)

        candidates: list[MatchCandidate] = []
        orphans: list[uuid.UUID] = []
        for hit in hits:
            profile = profiles.get(hit.user_id)
            if profile is None:
                orphans.append(hit.user_id)
                continue
            candidates.append(MatchCandidate(
                requester_id=user_id,
                candidate_id=hit.user_id,
                distance_m=hit.distance_m,
                profile=profile,
            ))

        if orphans:
            # Indexed users that are gone or deactivated in the directory
            for orphan in orphans:
                await asyncio.to_thread(self.index.remove, orphan)
            logger.info("index_orphans_evicted", count=len(orphans))

        return candidates

    async def _query_index(
        self,
        center: Coordinate,
        radius_m: float,
        limit: int,
        db_session: AsyncSession,
    ) -> list[IndexHit]:
        try:
            return await asyncio.to_thread(self.index.query, center, radius_m, limit)
        except IndexCorruption as exc:
            logger.error("spatial_index_corruption", cell=list(exc.cell))
            await self.repair_cell(exc.cell, db_session)
        # A second failure propagates as an internal error
        return await asyncio.to_thread(self.index.query, center, radius_m, limit)

    async def repair_cell(self, cell: tuple[int, int], db_session: AsyncSession) -> int:
        """Rebuild one index bucket from the ``users`` table."""
        bounds = self.index.cell_bounds(cell)
        entries = await self.directory.located_users(db_session, bounds=bounds)
        placed = await asyncio.to_thread(self.index.rebuild_cell, cell, entries)
        logger.warning("spatial_index_cell_repaired", cell=list(cell), users=placed)
        return placed

    async def _load_history(self, user_id: uuid.UUID, db_session: AsyncSession) -> MatchHistory:
        stmt = select(
            MatchRequest.requester_id,
            MatchRequest.recipient_id,
            MatchRequest.status,
        ).where(
            or_(MatchRequest.requester_id == user_id, MatchRequest.recipient_id == user_id),
            MatchRequest.status.in_(OPEN_STATUSES),
        )
        accepted: set[uuid.UUID] = set()
        pending: set[uuid.UUID] = set()
        for row in (await db_session.execute(stmt)).all():
            other = row.recipient_id if row.requester_id == user_id else row.requester_id
            if row.status == MatchStatus.ACCEPTED.value:
                accepted.add(other)
            else:
                pending.add(other)
        return MatchHistory(accepted=frozenset(accepted), pending=frozenset(pending))

    # ── Match lifecycle ───────────────────────────────────────────────────

    async def propose_match(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
        db_session: AsyncSession,
    ) -> MatchRequest:
        """Create a pending request from ``from_user_id`` to ``to_user_id``.

        Raises ``SelfMatch``, ``UserNotFound`` or ``DuplicateRequest`` (a
        pending or accepted request already exists for the pair in either
        direction).
        """
        if from_user_id == to_user_id:
            raise SelfMatch(user_id=str(from_user_id))
        return await self._within_budget(
            "propose_match",
            self._propose_match(from_user_id, to_user_id, db_session),
        )

    async def _propose_match(
        self,
        from_user_id: uuid.UUID,
        to_user_id: uuid.UUID,
        db_session: AsyncSession,
    ) -> MatchRequest:
        log = logger.bind(from_user_id=str(from_user_id), to_user_id=str(to_user_id))
        log.info("propose_match_start")

        for uid in (from_user_id, to_user_id):
            if not await self.directory.exists(uid, db_session):
                raise UserNotFound(user_id=str(uid))

        low, high = MatchRequest.pair_key(from_user_id, to_user_id)
        stmt = select(MatchRequest).where(
            MatchRequest.user_low_id == low,
            MatchRequest.user_high_id == high,
            MatchRequest.status.in_(OPEN_STATUSES),
        )
        existing = (await db_session.execute(stmt)).scalar_one_or_none()
        if existing is not None:
            log.warning("propose_match_duplicate", match_id=str(existing.id), status=existing.status)
            raise DuplicateRequest(match_id=str(existing.id), status=existing.status)

        request = MatchRequest.propose(from_user_id, to_user_id)
        db_session.add(request)
        try:
            await db_session.flush()
        except IntegrityError as exc:
            # A concurrent proposal for the same pair committed first
            await db_session.rollback()
            log.warning("propose_match_duplicate", reason="unique_index")
            raise DuplicateRequest() from exc

        log.info("propose_match_complete", match_id=str(request.id))
        return request

    async def respond_to_match(
        self,
        match_id: uuid.UUID,
        user_id: uuid.UUID,
        accept: bool,
        db_session: AsyncSession,
    ) -> MatchRequest:
        """Accept or reject a pending request addressed to ``user_id``.

        Raises ``MatchNotFound``, ``NotAuthorized`` (caller is not the
        recipient) or ``AlreadyResolved`` (request is not pending).
        """
        return await self._within_budget(
            "respond_to_match",
            self._respond_to_match(match_id, user_id, accept, db_session),
        )

    async def _respond_to_match(
        self,
        match_id: uuid.UUID,
        user_id: uuid.UUID,
        accept: bool,
        db_session: AsyncSession,
    ) -> MatchRequest:
        log = logger.bind(match_id=str(match_id), user_id=str(user_id), accept=accept)
        log.info("respond_to_match_start")

        request = await db_session.get(MatchRequest, match_id)
        if request is None:
            raise MatchNotFound(match_id=str(match_id))
        if request.recipient_id != user_id:
            log.warning("respond_to_match_not_recipient")
            raise NotAuthorized(match_id=str(match_id))
        if request.status != MatchStatus.PENDING.value:
            raise AlreadyResolved(match_id=str(match_id), status=request.status)

        new_status = MatchStatus.ACCEPTED if accept else MatchStatus.REJECTED
        stmt = (
            update(MatchRequest)
            .where(
                MatchRequest.id == match_id,
                MatchRequest.status == MatchStatus.PENDING.value,
            )
            .values(status=new_status.value, responded_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        result = await db_session.execute(stmt)
        if result.rowcount != 1:
            # Lost the compare-and-set to a concurrent response
            raise AlreadyResolved(match_id=str(match_id))

        await db_session.refresh(request)
        log.info("respond_to_match_complete", status=request.status)
        return request

    async def list_requests(
        self,
        user_id: uuid.UUID,
        db_session: AsyncSession,
        status: MatchStatus | None = None,
    ) -> list[MatchRequest]:
        """Requests where ``user_id`` is either party, newest first."""
        stmt = select(MatchRequest).where(
            or_(MatchRequest.requester_id == user_id, MatchRequest.recipient_id == user_id)
        )
        if status is not None:
            stmt = stmt.where(MatchRequest.status == status.value)
        stmt = stmt.order_by(MatchRequest.created_at.desc(), MatchRequest.id)
        return await self._within_budget(
            "list_requests",
            self._scalars(stmt, db_session),
        )

    @staticmethod
    async def _scalars(stmt: Any, db_session: AsyncSession) -> list[Any]:
        return list((await db_session.execute(stmt)).scalars().all())

    # ── Location upkeep ───────────────────────────────────────────────────

    async def set_location(
        self,
        user_id: uuid.UUID,
        coordinate: Coordinate,
        db_session: AsyncSession,
    ) -> User:
        """Store a user's coordinate and index it.

        The row is committed before the index changes so a failed write
        never leaves the index ahead of the ``users`` table.  ``region`` is
        derived from the old coordinate and is cleared when the user moves.
        """
        return await self._within_budget(
            "set_location",
            self._set_location(user_id, coordinate, db_session),
        )

    async def _set_location(
        self,
        user_id: uuid.UUID,
        coordinate: Coordinate,
        db_session: AsyncSession,
    ) -> User:
        user = await self._get_active_user(user_id, db_session)
        if (user.latitude, user.longitude) != (coordinate.latitude, coordinate.longitude):
            user.region = None
        user.latitude = coordinate.latitude
        user.longitude = coordinate.longitude
        await db_session.commit()
        await asyncio.to_thread(self.index.insert, user_id, coordinate)
        logger.info("location_updated", user_id=str(user_id))
        return user

    async def clear_location(self, user_id: uuid.UUID, db_session: AsyncSession) -> User:
        """Forget a user's coordinate and drop them from the index."""
        return await self._within_budget(
            "clear_location",
            self._clear_location(user_id, db_session),
        )

    async def _clear_location(self, user_id: uuid.UUID, db_session: AsyncSession) -> User:
        user = await self._get_active_user(user_id, db_session)
        user.latitude = None
        user.longitude = None
        user.region = None
        await db_session.commit()
        await asyncio.to_thread(self.index.remove, user_id)
        logger.info("location_cleared", user_id=str(user_id))
        return user

    async def _get_active_user(self, user_id: uuid.UUID, db_session: AsyncSession) -> User:
        stmt = select(User).where(User.id == user_id, User.is_active.is_(True))
        user = (await db_session.execute(stmt)).scalar_one_or_none()
        if user is None:
            raise UserNotFound(user_id=str(user_id))
        return user

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _within_budget(self, operation: str, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("operation_timeout", operation=operation, timeout=self.operation_timeout)
            raise OperationTimeout(operation=operation) from exc
