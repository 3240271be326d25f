"""
tests/conftest.py
Shared fixtures: in-memory SQLite database, fakeredis, an httpx client
bound to the app, and one user per role.
"""

import os

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "100000")
os.environ.setdefault("RATE_LIMIT_UNAUTH_PER_MINUTE", "100000")

from datetime import timedelta
from decimal import Decimal

import fakeredis
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import config.redis_client as redis_module
from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from shared.models.models import (
    AvailabilitySlot,
    City,
    GuideProfile,
    SlotStatus,
    TravelerProfile,
    User,
    UserRole,
)
from shared.utils.dates import utcnow
from shared.utils.security import create_access_token

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), UserRole(user.role).value)
    return {"Authorization": f"Bearer {token}"}


# ── Infrastructure ────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def client(session_factory, redis, monkeypatch):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    # The rate limiter reads the module-level client directly
    monkeypatch.setattr(redis_module, "redis_client", redis)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Users ─────────────────────────────────────────────────────

async def _make_user(db: AsyncSession, role: UserRole, name: str, **kwargs) -> User:
    user = User(display_name=name, role=role, **kwargs)
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def traveler(db: AsyncSession) -> User:
    user = await _make_user(db, UserRole.TRAVELER, "Alex Traveler", email="alex@rainbowtourguides.com")
    db.add(TravelerProfile(uid=user.id, display_name=user.display_name))
    await db.commit()
    return user


@pytest_asyncio.fixture
async def other_traveler(db: AsyncSession) -> User:
    user = await _make_user(db, UserRole.TRAVELER, "Sam Other")
    db.add(TravelerProfile(uid=user.id, display_name=user.display_name))
    await db.commit()
    return user


@pytest_asyncio.fixture
async def guide_user(db: AsyncSession) -> User:
    return await _make_user(db, UserRole.GUIDE, "Jo Guide", verified=True)


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    return await _make_user(db, UserRole.ADMIN, "Ada Admin")


@pytest_asyncio.fixture
async def moderator_user(db: AsyncSession) -> User:
    return await _make_user(db, UserRole.MODERATOR, "Mo Moderator")


# ── Domain ────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def city(db: AsyncSession) -> City:
    city = City(
        name="Lisbon",
        slug="lisbon",
        country_code="PT",
        country="Portugal",
        timezone="Europe/Lisbon",
    )
    db.add(city)
    await db.commit()
    return city


@pytest_asyncio.fixture
async def guide_profile(db: AsyncSession, guide_user: User, city: City) -> GuideProfile:
    profile = GuideProfile(
        uid=guide_user.id,
        handle="jo-lisbon",
        display_name=guide_user.display_name,
        city=city.name,
        city_slug=city.slug,
        city_id=city.id,
        country="Portugal",
        timezone=city.timezone,
        bio="Alfama after dark.",
        languages=["en", "pt"],
        themes=["nightlife", "history"],
        photos=[],
        prices={"h4": 200, "h6": 285, "h8": 360, "currency": "USD"},
        base_rate_hour=Decimal("50"),
        max_group_size=6,
        verified=True,
    )
    db.add(profile)
    await db.commit()
    return profile


@pytest_asyncio.fixture
async def open_slot(db: AsyncSession, guide_profile: GuideProfile) -> AvailabilitySlot:
    start = (utcnow() + timedelta(days=3)).replace(hour=9, minute=0, second=0, microsecond=0)
    slot = AvailabilitySlot(
        guide_id=guide_profile.uid,
        start_time=start,
        duration_hours=6,
        status=SlotStatus.OPEN,
    )
    db.add(slot)
    await db.commit()
    return slot
