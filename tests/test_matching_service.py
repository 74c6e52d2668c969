"""Unit tests for MatchingService: discovery and the match-request lifecycle."""
import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import event, select, update
from sqlalchemy.exc import IntegrityError, OperationalError

from app.errors import (
    AlreadyResolved,
    DuplicateRequest,
    InvalidLimit,
    InvalidRadius,
    LocationMissing,
    MatchNotFound,
    NotAuthorized,
    OperationTimeout,
    SelfMatch,
    UserNotFound,
)
from app.models import MatchRequest, MatchStatus, User
from app.services.matching_service import MatchingService
from app.utils.geo import Coordinate
from conftest import BUSAN, SEOUL, SEOUL_2KM_EAST, SEOUL_11M_NORTH


async def _located(user_factory, session, index, location, **fields):
    user = await user_factory(session, location=location, **fields)
    index.insert(user.id, location)
    return user


def _offset(base, metres_north):
    """A point roughly ``metres_north`` metres north of ``base``."""
    return (base[0] + metres_north / 111_195.0, base[1])


class TestFindMatches:

    @pytest.mark.asyncio
    async def test_fifty_metre_radius_scenario(self, matching_service, spatial_index, db_session, user_factory):
        """A at (37.5, 127.0) finds B at (37.5001, 127.0) about 11 m away."""
        a = await _located(user_factory, db_session, spatial_index, (37.5, 127.0))
        b = await _located(user_factory, db_session, spatial_index, (37.5001, 127.0))

        matches = await matching_service.find_matches(a.id, db_session, radius_m=50, limit=10)

        assert [m.candidate_id for m in matches] == [b.id]
        assert matches[0].distance_m == pytest.approx(11.12, abs=0.1)

    @pytest.mark.asyncio
    async def test_finds_user_eleven_metres_away(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        b = await _located(user_factory, db_session, spatial_index, SEOUL_11M_NORTH)
        await _located(user_factory, db_session, spatial_index, SEOUL_2KM_EAST)

        matches = await matching_service.find_matches(a.id, db_session, radius_m=1_000)

        assert [m.candidate_id for m in matches] == [b.id]
        assert matches[0].distance_m == pytest.approx(11.12, abs=0.1)
        assert matches[0].profile.nickname == b.nickname

    @pytest.mark.asyncio
    async def test_default_radius_orders_by_distance(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        far = await _located(user_factory, db_session, spatial_index, SEOUL_2KM_EAST)
        near = await _located(user_factory, db_session, spatial_index, SEOUL_11M_NORTH)
        await _located(user_factory, db_session, spatial_index, BUSAN)

        matches = await matching_service.find_matches(a.id, db_session)

        assert [m.candidate_id for m in matches] == [near.id, far.id]

    @pytest.mark.asyncio
    async def test_never_returns_requester(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        assert await matching_service.find_matches(a.id, db_session) == []

    @pytest.mark.asyncio
    async def test_limit_keeps_nearest(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        users = [
            await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 100 * (i + 1)))
            for i in range(5)
        ]

        matches = await matching_service.find_matches(a.id, db_session, limit=2)

        assert [m.candidate_id for m in matches] == [users[0].id, users[1].id]

    @pytest.mark.asyncio
    async def test_excludes_pending_in_both_directions(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        outgoing = await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 50))
        incoming = await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 60))
        free = await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 70))

        await matching_service.propose_match(a.id, outgoing.id, db_session)
        await matching_service.propose_match(incoming.id, a.id, db_session)

        matches = await matching_service.find_matches(a.id, db_session)
        assert [m.candidate_id for m in matches] == [free.id]

    @pytest.mark.asyncio
    async def test_excludes_accepted_but_not_rejected(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        matched = await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 50))
        declined = await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 60))

        r1 = await matching_service.propose_match(a.id, matched.id, db_session)
        await matching_service.respond_to_match(r1.id, matched.id, True, db_session)
        r2 = await matching_service.propose_match(a.id, declined.id, db_session)
        await matching_service.respond_to_match(r2.id, declined.id, False, db_session)

        matches = await matching_service.find_matches(a.id, db_session)
        assert [m.candidate_id for m in matches] == [declined.id]

    @pytest.mark.asyncio
    async def test_limit_filled_past_excluded_neighbours(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        users = [
            await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 10 * (i + 1)))
            for i in range(6)
        ]
        for u in users[:3]:
            await matching_service.propose_match(a.id, u.id, db_session)

        matches = await matching_service.find_matches(a.id, db_session, limit=2)

        assert [m.candidate_id for m in matches] == [users[3].id, users[4].id]

    @pytest.mark.asyncio
    async def test_applies_demographic_preferences(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(
            user_factory, db_session, spatial_index, SEOUL,
            preferred_gender="female", preferred_age_min=25, preferred_age_max=35,
        )
        ok = await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 10), gender="female", age=30)
        await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 20), gender="male", age=30)
        await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 30), gender="female", age=40)
        await _located(user_factory, db_session, spatial_index, _offset(SEOUL, 40))

        matches = await matching_service.find_matches(a.id, db_session)

        assert [m.candidate_id for m in matches] == [ok.id]

    @pytest.mark.asyncio
    async def test_monotonic_in_radius(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        for metres in (30, 300, 900, 2_500, 4_000):
            await _located(user_factory, db_session, spatial_index, _offset(SEOUL, metres))

        previous: set = set()
        for radius in (100, 1_000, 3_000, 5_000):
            current = {m.candidate_id for m in await matching_service.find_matches(a.id, db_session, radius_m=radius)}
            assert previous <= current
            previous = current
        assert len(previous) == 5

    @pytest.mark.asyncio
    async def test_inactive_indexed_user_evicted(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        gone = await _located(user_factory, db_session, spatial_index, SEOUL_11M_NORTH, is_active=False)

        assert await matching_service.find_matches(a.id, db_session) == []
        assert gone.id not in spatial_index

    @pytest.mark.asyncio
    async def test_unknown_requester(self, matching_service, db_session):
        with pytest.raises(UserNotFound):
            await matching_service.find_matches(uuid.uuid4(), db_session)

    @pytest.mark.asyncio
    async def test_requester_without_location(self, matching_service, db_session, user_factory):
        a = await user_factory(db_session)
        with pytest.raises(LocationMissing):
            await matching_service.find_matches(a.id, db_session)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("radius", [0, -1, 100_001, float("nan")])
    async def test_invalid_radius(self, matching_service, db_session, radius):
        with pytest.raises(InvalidRadius):
            await matching_service.find_matches(uuid.uuid4(), db_session, radius_m=radius)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 101])
    async def test_invalid_limit(self, matching_service, db_session, limit):
        with pytest.raises(InvalidLimit):
            await matching_service.find_matches(uuid.uuid4(), db_session, limit=limit)

    @pytest.mark.asyncio
    async def test_times_out(self, spatial_index, settings, db_session):
        async def _slow(*args, **kwargs):
            await asyncio.sleep(1)

        directory = MagicMock()
        directory.get_profile = AsyncMock(side_effect=_slow)
        service = MatchingService(
            index=spatial_index,
            directory=directory,
            settings=settings.model_copy(update={"MATCH_OPERATION_TIMEOUT_SECONDS": 0.05}),
        )

        with pytest.raises(OperationTimeout):
            await service.find_matches(uuid.uuid4(), db_session)

    @pytest.mark.asyncio
    async def test_repairs_corrupted_cell(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        b = await _located(user_factory, db_session, spatial_index, SEOUL_11M_NORTH)
        # Bucket still lists b but its position record is lost
        del spatial_index._positions[b.id]
        assert spatial_index.verify()

        matches = await matching_service.find_matches(a.id, db_session)

        assert [m.candidate_id for m in matches] == [b.id]
        assert spatial_index.verify() == []
        assert spatial_index.position(b.id) == Coordinate(*SEOUL_11M_NORTH)


class TestProposeMatch:

    @pytest.mark.asyncio
    async def test_creates_pending_request(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)

        request = await matching_service.propose_match(a.id, b.id, db_session)

        assert request.status == MatchStatus.PENDING.value
        assert request.requester_id == a.id
        assert request.recipient_id == b.id
        assert request.responded_at is None
        assert {request.user_low_id, request.user_high_id} == {a.id, b.id}
        assert request.user_low_id < request.user_high_id

    @pytest.mark.asyncio
    async def test_duplicate_same_direction(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        await matching_service.propose_match(a.id, b.id, db_session)
        with pytest.raises(DuplicateRequest):
            await matching_service.propose_match(a.id, b.id, db_session)

    @pytest.mark.asyncio
    async def test_duplicate_reverse_direction(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        await matching_service.propose_match(a.id, b.id, db_session)
        with pytest.raises(DuplicateRequest):
            await matching_service.propose_match(b.id, a.id, db_session)

    @pytest.mark.asyncio
    async def test_accepted_pair_cannot_be_proposed_again(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        request = await matching_service.propose_match(a.id, b.id, db_session)
        await matching_service.respond_to_match(request.id, b.id, True, db_session)
        with pytest.raises(DuplicateRequest):
            await matching_service.propose_match(b.id, a.id, db_session)

    @pytest.mark.asyncio
    async def test_rejected_pair_can_be_proposed_again(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        first = await matching_service.propose_match(a.id, b.id, db_session)
        await matching_service.respond_to_match(first.id, b.id, False, db_session)

        second = await matching_service.propose_match(b.id, a.id, db_session)

        assert second.id != first.id
        assert second.status == MatchStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_self_match(self, matching_service, db_session, user_factory):
        a = await user_factory(db_session)
        with pytest.raises(SelfMatch):
            await matching_service.propose_match(a.id, a.id, db_session)

    @pytest.mark.asyncio
    async def test_unknown_target(self, matching_service, db_session, user_factory):
        a = await user_factory(db_session)
        with pytest.raises(UserNotFound):
            await matching_service.propose_match(a.id, uuid.uuid4(), db_session)

    @pytest.mark.asyncio
    async def test_inactive_target(self, matching_service, db_session, user_factory):
        a = await user_factory(db_session)
        b = await user_factory(db_session, is_active=False)
        with pytest.raises(UserNotFound):
            await matching_service.propose_match(a.id, b.id, db_session)

    @pytest.mark.asyncio
    async def test_open_pair_unique_index(self, db_session, user_factory):
        """The database refuses a second open request even without the pre-check."""
        a, b = await user_factory(db_session), await user_factory(db_session)
        db_session.add(MatchRequest.propose(a.id, b.id))
        await db_session.flush()
        db_session.add(MatchRequest.propose(b.id, a.id))
        with pytest.raises(IntegrityError):
            await db_session.flush()
        await db_session.rollback()


class TestRespondToMatch:

    @pytest.mark.asyncio
    async def test_accept(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        request = await matching_service.propose_match(a.id, b.id, db_session)

        result = await matching_service.respond_to_match(request.id, b.id, True, db_session)

        assert result.status == MatchStatus.ACCEPTED.value
        assert result.responded_at is not None

    @pytest.mark.asyncio
    async def test_reject(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        request = await matching_service.propose_match(a.id, b.id, db_session)

        result = await matching_service.respond_to_match(request.id, b.id, False, db_session)

        assert result.status == MatchStatus.REJECTED.value

    @pytest.mark.asyncio
    async def test_second_response_rejected(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        request = await matching_service.propose_match(a.id, b.id, db_session)
        await matching_service.respond_to_match(request.id, b.id, True, db_session)

        with pytest.raises(AlreadyResolved):
            await matching_service.respond_to_match(request.id, b.id, False, db_session)

        stored = (await db_session.execute(select(MatchRequest.status).where(MatchRequest.id == request.id))).scalar_one()
        assert stored == MatchStatus.ACCEPTED.value

    @pytest.mark.asyncio
    async def test_requester_cannot_respond(self, matching_service, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        request = await matching_service.propose_match(a.id, b.id, db_session)
        with pytest.raises(NotAuthorized):
            await matching_service.respond_to_match(request.id, a.id, True, db_session)

    @pytest.mark.asyncio
    async def test_third_party_cannot_respond(self, matching_service, db_session, user_factory):
        a, b, c = await user_factory(db_session), await user_factory(db_session), await user_factory(db_session)
        request = await matching_service.propose_match(a.id, b.id, db_session)
        with pytest.raises(NotAuthorized):
            await matching_service.respond_to_match(request.id, c.id, True, db_session)

    @pytest.mark.asyncio
    async def test_unknown_match(self, matching_service, db_session, user_factory):
        b = await user_factory(db_session)
        with pytest.raises(MatchNotFound):
            await matching_service.respond_to_match(uuid.uuid4(), b.id, True, db_session)

    @pytest.mark.asyncio
    async def test_lost_compare_and_set(self, matching_service, db_session, user_factory):
        """A response that raced another one sees zero rows updated."""
        a, b = await user_factory(db_session), await user_factory(db_session)
        request = await matching_service.propose_match(a.id, b.id, db_session)
        # Resolve the row behind the session's back; the loaded object stays stale
        await db_session.execute(
            update(MatchRequest)
            .where(MatchRequest.id == request.id)
            .values(status=MatchStatus.REJECTED.value)
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(AlreadyResolved):
            await matching_service.respond_to_match(request.id, b.id, True, db_session)

    @pytest.mark.asyncio
    async def test_request_lookup_is_a_single_query(self, matching_service, database, db_session, user_factory):
        a, b = await user_factory(db_session), await user_factory(db_session)
        request = await matching_service.propose_match(a.id, b.id, db_session)
        db_session.expunge(request)
        statements = []

        def _record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement)

        event.listen(database.engine.sync_engine, "before_cursor_execute", _record)
        try:
            loaded = await db_session.get(MatchRequest, request.id)
        finally:
            event.remove(database.engine.sync_engine, "before_cursor_execute", _record)

        assert loaded.recipient_id == b.id
        assert len(statements) == 1


class TestListRequests:

    @pytest.mark.asyncio
    async def test_lists_both_directions_with_filter(self, matching_service, db_session, user_factory):
        a, b, c = await user_factory(db_session), await user_factory(db_session), await user_factory(db_session)
        sent = await matching_service.propose_match(a.id, b.id, db_session)
        received = await matching_service.propose_match(c.id, a.id, db_session)
        await matching_service.respond_to_match(received.id, a.id, True, db_session)

        everything = await matching_service.list_requests(a.id, db_session)
        pending = await matching_service.list_requests(a.id, db_session, status=MatchStatus.PENDING)

        assert {r.id for r in everything} == {sent.id, received.id}
        assert [r.id for r in pending] == [sent.id]
        assert await matching_service.list_requests(b.id, db_session, status=MatchStatus.ACCEPTED) == []


class TestLocationUpkeep:

    @pytest.mark.asyncio
    async def test_set_and_clear_location(self, matching_service, spatial_index, db_session, user_factory):
        user = await user_factory(db_session)

        await matching_service.set_location(user.id, Coordinate(*SEOUL), db_session)
        row = (await db_session.execute(select(User.latitude, User.longitude).where(User.id == user.id))).one()
        assert (row.latitude, row.longitude) == SEOUL
        assert spatial_index.position(user.id) == Coordinate(*SEOUL)

        await matching_service.clear_location(user.id, db_session)
        row = (await db_session.execute(select(User.latitude, User.longitude).where(User.id == user.id))).one()
        assert (row.latitude, row.longitude) == (None, None)
        assert user.id not in spatial_index

    @pytest.mark.asyncio
    async def test_location_is_visible_to_next_search(self, matching_service, spatial_index, db_session, user_factory):
        a = await _located(user_factory, db_session, spatial_index, SEOUL)
        b = await user_factory(db_session)
        assert await matching_service.find_matches(a.id, db_session) == []

        await matching_service.set_location(b.id, Coordinate(*SEOUL_11M_NORTH), db_session)

        assert [m.candidate_id for m in await matching_service.find_matches(a.id, db_session)] == [b.id]

    @pytest.mark.asyncio
    async def test_unknown_user(self, matching_service, db_session):
        with pytest.raises(UserNotFound):
            await matching_service.set_location(uuid.uuid4(), Coordinate(*SEOUL), db_session)

    @pytest.mark.asyncio
    async def test_failed_commit_leaves_index_unchanged(self, matching_service, spatial_index, db_session, user_factory):
        user = await user_factory(db_session)
        failure = OperationalError("COMMIT", {}, Exception("database is locked"))

        with patch.object(db_session, "commit", AsyncMock(side_effect=failure)):
            with pytest.raises(OperationalError):
                await matching_service.set_location(user.id, Coordinate(*SEOUL), db_session)
        await db_session.rollback()

        assert user.id not in spatial_index

    @pytest.mark.asyncio
    async def test_failed_commit_keeps_user_indexed(self, matching_service, spatial_index, db_session, user_factory):
        user = await _located(user_factory, db_session, spatial_index, SEOUL)
        failure = OperationalError("COMMIT", {}, Exception("database is locked"))

        with patch.object(db_session, "commit", AsyncMock(side_effect=failure)):
            with pytest.raises(OperationalError):
                await matching_service.clear_location(user.id, db_session)
        await db_session.rollback()

        assert spatial_index.position(user.id) == Coordinate(*SEOUL)

    @pytest.mark.asyncio
    async def test_caller_rollback_keeps_store_and_index_in_step(
        self, matching_service, spatial_index, database, user_factory,
    ):
        """A caller failing after the update cannot leave the index ahead of the table."""
        a = await user_factory(location=(37.5, 127.0))
        spatial_index.insert(a.id, (37.5, 127.0))
        b = await user_factory()

        with pytest.raises(RuntimeError):
            async with database.session() as session:
                await matching_service.set_location(b.id, Coordinate(37.5001, 127.0), session)
                raise RuntimeError("request failed after the update")

        async with database.session() as session:
            stored = (await session.execute(select(User.latitude).where(User.id == b.id))).scalar_one()
            matches = await matching_service.find_matches(a.id, session, radius_m=50)

        # The location was committed before the index changed, so both agree
        assert stored == 37.5001
        assert b.id in spatial_index
        assert [m.candidate_id for m in matches] == [b.id]

    @pytest.mark.asyncio
    async def test_moving_clears_derived_region(self, matching_service, db_session, user_factory):
        user = await user_factory(db_session, location=SEOUL)
        user.region = "Jung-gu"
        await db_session.flush()

        await matching_service.set_location(user.id, Coordinate(*SEOUL), db_session)
        assert user.region == "Jung-gu"

        await matching_service.set_location(user.id, Coordinate(*BUSAN), db_session)
        stored = (await db_session.execute(select(User.region).where(User.id == user.id))).scalar_one()
        assert stored is None

    @pytest.mark.asyncio
    async def test_clear_location_clears_region(self, matching_service, db_session, user_factory):
        user = await user_factory(db_session, location=SEOUL)
        user.region = "Jung-gu"
        await db_session.flush()

        await matching_service.clear_location(user.id, db_session)

        stored = (await db_session.execute(select(User.region).where(User.id == user.id))).scalar_one()
        assert stored is None

    @pytest.mark.asyncio
    async def test_set_location_times_out(self, spatial_index, settings, db_session):
        async def _slow(*args, **kwargs):
            await asyncio.sleep(1)

        service = MatchingService(
            index=spatial_index,
            settings=settings.model_copy(update={"MATCH_OPERATION_TIMEOUT_SECONDS": 0.05}),
        )
        user_id = uuid.uuid4()

        with patch.object(service, "_get_active_user", AsyncMock(side_effect=_slow)):
            with pytest.raises(OperationTimeout):
                await service.set_location(user_id, Coordinate(*SEOUL), db_session)
            with pytest.raises(OperationTimeout):
                await service.clear_location(user_id, db_session)

        assert user_id not in spatial_index
