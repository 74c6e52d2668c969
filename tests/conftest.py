"""Shared pytest fixtures for Nearmatch tests."""
import os

# Settings are read when app.main is imported; keep the suite hermetic.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret")

import uuid
from datetime import date, datetime, timedelta, timezone

import httpx
import jwt
import pytest
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.database import Database
from app.models import User
from app.services.matching_service import MatchingService
from app.services.spatial_index import SpatialIndex

TEST_SECRET = "test-secret"

# Seoul City Hall and a few reference points around it
SEOUL = (37.5665, 126.9780)
SEOUL_11M_NORTH = (37.5666, 126.9780)
SEOUL_2KM_EAST = (37.5665, 127.0006)
BUSAN = (35.1796, 129.0756)


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        JWT_SECRET=TEST_SECRET,
        CLOUD_SQL_USE_UNIX_SOCKET=False,
        LOG_LEVEL="WARNING",
        _env_file=None,
    )


@pytest.fixture
async def database():
    """In-memory SQLite shared by every session of one test."""
    db = Database(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
async def db_session(database):
    async with database.session() as session:
        yield session


@pytest.fixture
def spatial_index():
    return SpatialIndex(cell_size_deg=0.05, lock_timeout=1.0)


@pytest.fixture
def matching_service(spatial_index, settings):
    return MatchingService(index=spatial_index, settings=settings)


@pytest.fixture
def user_factory(database):
    """Create users.  With ``session`` the row is flushed into that session,
    otherwise it is committed in a session of its own."""

    async def _make(
        session=None,
        *,
        location=None,
        gender=None,
        age=None,
        preferred_gender=None,
        preferred_age_min=None,
        preferred_age_max=None,
        is_active=True,
        nickname=None,
    ) -> User:
        handle = uuid.uuid4().hex[:12]
        dob = None
        if age is not None:
            today = date.today()
            dob = date(today.year - age, 1, 1)
        user = User(
            id=uuid.uuid4(),
            username=f"user_{handle}",
            email=f"{handle}@example.com",
            password_hash="x",
            nickname=nickname or f"nick_{handle[:6]}",
            gender=gender,
            date_of_birth=dob,
            latitude=location[0] if location else None,
            longitude=location[1] if location else None,
            preferred_gender=preferred_gender,
            preferred_age_min=preferred_age_min,
            preferred_age_max=preferred_age_max,
            is_active=is_active,
        )
        if session is not None:
            session.add(user)
            await session.flush()
            return user
        async with database.session() as own:
            own.add(user)
        return user

    return _make


def make_token(user_id, secret=TEST_SECRET, expires_in=timedelta(hours=1), **claims):
    payload = {"sub": str(user_id), "exp": datetime.now(timezone.utc) + expires_in, **claims}
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_header(user_id, **kwargs):
    return {"Authorization": f"Bearer {make_token(user_id, **kwargs)}"}


@pytest.fixture
async def client(settings, database):
    """HTTP client against a fully started application."""
    from app.main import create_app

    application = create_app(settings, database=database)
    async with application.router.lifespan_context(application):
        transport = httpx.ASGITransport(app=application)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            http.app = application
            yield http
