"""
tests/test_availability.py
Availability API: range queries, calendar, create/reschedule/transition/delete and caching.
"""

import uuid
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest
from httpx import AsyncClient
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AvailabilitySlot, GuideProfile, SlotStatus, User
from shared.utils.dates import as_utc, utcnow
from tests.conftest import auth_headers


def _future(days: int = 5, hour: int = 9):
    return (utcnow() + timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)


def _parse_instant(value: str) -> datetime:
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def _range(days_before: int = 1, days_after: int = 30) -> dict:
    now = utcnow()
    return {
        "from": (now - timedelta(days=days_before)).isoformat(),
        "to": (now + timedelta(days=days_after)).isoformat(),
    }


async def _add_slot(db: AsyncSession, guide: GuideProfile, start, hours=4, status=SlotStatus.OPEN):
    slot = AvailabilitySlot(guide_id=guide.uid, start_time=start, duration_hours=hours, status=status)
    db.add(slot)
    await db.commit()
    return slot


# ── Create ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_guide_creates_slot(client: AsyncClient, guide_user: User, guide_profile: GuideProfile):
    """camelCase body, 201 with an open slot."""
    start = _future()
    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(guide_user),
        json={"guideId": str(guide_profile.uid), "startTime": start.isoformat(), "durationHours": 6},
    )
    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "open"
    assert data["duration_hours"] == 6
    assert data["guide_id"] == str(guide_profile.uid)


@pytest.mark.asyncio
async def test_create_slot_invalid_duration(client: AsyncClient, guide_user: User, guide_profile: GuideProfile):
    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(guide_user),
        json={"guideId": str(guide_profile.uid), "startTime": _future().isoformat(), "durationHours": 5},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_slot_requires_timezone(client: AsyncClient, guide_user: User, guide_profile: GuideProfile):
    naive = _future().replace(tzinfo=None)
    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(guide_user),
        json={"guideId": str(guide_profile.uid), "startTime": naive.isoformat(), "durationHours": 4},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_slot_in_past_rejected(client: AsyncClient, guide_user: User, guide_profile: GuideProfile):
    past = utcnow() - timedelta(hours=2)
    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(guide_user),
        json={"guideId": str(guide_profile.uid), "startTime": past.isoformat(), "durationHours": 4},
    )
    assert response.status_code == 400
    assert "future" in response.json()["detail"]


@pytest.mark.asyncio
async def test_create_slot_for_someone_else_forbidden(
    client: AsyncClient, traveler: User, guide_profile: GuideProfile
):
    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(traveler),
        json={"guideId": str(guide_profile.uid), "startTime": _future().isoformat(), "durationHours": 4},
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_create_slot_unknown_guide(client: AsyncClient, admin_user: User):
    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(admin_user),
        json={"guideId": str(uuid.uuid4()), "startTime": _future().isoformat(), "durationHours": 4},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_create_slot_requires_auth(client: AsyncClient, guide_profile: GuideProfile):
    response = await client.post(
        "/api/guides/availability",
        json={"guideId": str(guide_profile.uid), "startTime": _future().isoformat(), "durationHours": 4},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_overlapping_slot_conflicts(
    client: AsyncClient, db: AsyncSession, guide_user: User, guide_profile: GuideProfile
):
    start = _future(hour=9)
    await _add_slot(db, guide_profile, start, hours=6)

    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(guide_user),
        json={
            "guideId": str(guide_profile.uid),
            "startTime": (start + timedelta(hours=2)).isoformat(),
            "durationHours": 4,
        },
    )
    assert response.status_code == 409
    assert "overlaps" in response.json()["detail"]


@pytest.mark.asyncio
async def test_back_to_back_slot_allowed(
    client: AsyncClient, db: AsyncSession, guide_user: User, guide_profile: GuideProfile
):
    start = _future(hour=8)
    await _add_slot(db, guide_profile, start, hours=4)

    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(guide_user),
        json={
            "guideId": str(guide_profile.uid),
            "startTime": (start + timedelta(hours=4)).isoformat(),
            "durationHours": 4,
        },
    )
    assert response.status_code == 201


@pytest.mark.asyncio
async def test_closed_slot_does_not_block_new_slot(
    client: AsyncClient, db: AsyncSession, guide_user: User, guide_profile: GuideProfile
):
    start = _future(hour=9)
    await _add_slot(db, guide_profile, start, hours=8, status=SlotStatus.CLOSED)

    response = await client.post(
        "/api/guides/availability",
        headers=auth_headers(guide_user),
        json={"guideId": str(guide_profile.uid), "startTime": start.isoformat(), "durationHours": 4},
    )
    assert response.status_code == 201


# ── List ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_returns_open_slots_in_order(
    client: AsyncClient, db: AsyncSession, guide_profile: GuideProfile
):
    later = await _add_slot(db, guide_profile, _future(days=6))
    earlier = await _add_slot(db, guide_profile, _future(days=2))
    await _add_slot(db, guide_profile, _future(days=4), status=SlotStatus.BOOKED)

    response = await client.get(
        "/api/availability", params={"guideId": str(guide_profile.uid), **_range()}
    )
    assert response.status_code == 200
    ids = [s["id"] for s in response.json()]
    assert ids == [str(earlier.id), str(later.id)]


@pytest.mark.asyncio
async def test_list_status_all_and_filter(
    client: AsyncClient, db: AsyncSession, guide_profile: GuideProfile
):
    await _add_slot(db, guide_profile, _future(days=2))
    booked = await _add_slot(db, guide_profile, _future(days=4), status=SlotStatus.BOOKED)

    response = await client.get(
        "/api/availability",
        params={"guideId": str(guide_profile.uid), "status": "all", **_range()},
    )
    assert len(response.json()) == 2

    response = await client.get(
        "/api/availability",
        params={"guideId": str(guide_profile.uid), "status": "booked", **_range()},
    )
    assert [s["id"] for s in response.json()] == [str(booked.id)]


@pytest.mark.asyncio
async def test_list_excludes_slots_outside_range(
    client: AsyncClient, db: AsyncSession, guide_profile: GuideProfile
):
    await _add_slot(db, guide_profile, _future(days=40))
    response = await client.get(
        "/api/availability", params={"guideId": str(guide_profile.uid), **_range()}
    )
    assert response.json() == []


@pytest.mark.asyncio
async def test_list_inverted_range_rejected(client: AsyncClient, guide_profile: GuideProfile):
    now = utcnow()
    response = await client.get(
        "/api/availability",
        params={
            "guideId": str(guide_profile.uid),
            "from": (now + timedelta(days=2)).isoformat(),
            "to": now.isoformat(),
        },
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_unknown_status_rejected(client: AsyncClient, guide_profile: GuideProfile):
    response = await client.get(
        "/api/availability",
        params={"guideId": str(guide_profile.uid), "status": "maybe", **_range()},
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_invalidates_cached_list(
    client: AsyncClient, guide_user: User, guide_profile: GuideProfile, redis
):
    params = {"guideId": str(guide_profile.uid), **_range()}
    first = await client.get("/api/availability", params=params)
    assert first.json() == []
    assert await redis.keys(f"availability:{guide_profile.uid}:*")

    created = await client.post(
        "/api/guides/availability",
        headers=auth_headers(guide_user),
        json={"guideId": str(guide_profile.uid), "startTime": _future().isoformat(), "durationHours": 4},
    )
    assert created.status_code == 201
    assert not await redis.keys(f"availability:{guide_profile.uid}:*")

    second = await client.get("/api/availability", params=params)
    assert [s["id"] for s in second.json()] == [created.json()["id"]]


# ── Calendar ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_calendar_groups_by_guide_local_date(
    client: AsyncClient, db: AsyncSession, guide_profile: GuideProfile
):
    base = _future(days=3)
    morning = await _add_slot(db, guide_profile, base.replace(hour=8))
    afternoon = await _add_slot(db, guide_profile, base.replace(hour=13), status=SlotStatus.BOOKED)
    local_start = as_utc(base).astimezone(ZoneInfo("Europe/Lisbon"))

    response = await client.get(
        "/api/availability/calendar",
        params={"guideId": str(guide_profile.uid), "year": local_start.year, "month": local_start.month},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["timezone"] == "Europe/Lisbon"
    day = next(d for d in data["days"] if d["date"] == local_start.date().isoformat())
    assert [s["id"] for s in day["slots"]] == [str(morning.id), str(afternoon.id)]


@pytest.mark.asyncio
async def test_calendar_unknown_guide(client: AsyncClient):
    response = await client.get(
        "/api/availability/calendar",
        params={"guideId": str(uuid.uuid4()), "year": 2030, "month": 5},
    )
    assert response.status_code == 404


# ── Transition & Delete ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_close_open_slot(
    client: AsyncClient, guide_user: User, open_slot: AvailabilitySlot
):
    response = await client.patch(
        f"/api/availability/{open_slot.id}",
        headers=auth_headers(guide_user),
        json={"status": "closed"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "closed"


@pytest.mark.asyncio
async def test_invalid_transition_conflicts(
    client: AsyncClient, guide_user: User, open_slot: AvailabilitySlot
):
    response = await client.patch(
        f"/api/availability/{open_slot.id}",
        headers=auth_headers(guide_user),
        json={"status": "booked"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_delete_open_slot(
    client: AsyncClient, db: AsyncSession, guide_user: User, open_slot: AvailabilitySlot
):
    response = await client.delete(f"/api/availability/{open_slot.id}", headers=auth_headers(guide_user))
    assert response.status_code == 200

    remaining = await db.scalar(
        select(AvailabilitySlot).where(AvailabilitySlot.id == open_slot.id).execution_options(populate_existing=True)
    )
    assert remaining is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [SlotStatus.PENDING, SlotStatus.BOOKED, SlotStatus.CLOSED])
async def test_delete_non_open_slot_conflicts(
    client: AsyncClient, db: AsyncSession, guide_user: User, guide_profile: GuideProfile, status
):
    slot = await _add_slot(db, guide_profile, _future(), status=status)
    response = await client.delete(f"/api/availability/{slot.id}", headers=auth_headers(guide_user))
    assert response.status_code == 409

    response = await client.get(f"/api/availability/{slot.id}")
    assert response.json()["status"] == status.value


@pytest.mark.asyncio
async def test_delete_someone_elses_slot_forbidden(
    client: AsyncClient, traveler: User, open_slot: AvailabilitySlot
):
    response = await client.delete(f"/api/availability/{open_slot.id}", headers=auth_headers(traveler))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_get_missing_slot(client: AsyncClient):
    response = await client.get(f"/api/availability/{uuid.uuid4()}")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_deleted_slot_leaves_cached_list(
    client: AsyncClient, guide_user: User, guide_profile: GuideProfile, open_slot: AvailabilitySlot
):
    params = {"guideId": str(guide_profile.uid), **_range()}
    before = await client.get("/api/availability", params=params)
    assert [s["id"] for s in before.json()] == [str(open_slot.id)]

    response = await client.delete(f"/api/availability/{open_slot.id}", headers=auth_headers(guide_user))
    assert response.status_code == 200

    after = await client.get("/api/availability", params=params)
    assert after.json() == []


@pytest.mark.asyncio
async def test_cache_outage_does_not_fail_committed_delete(
    client: AsyncClient, db: AsyncSession, guide_user: User, open_slot: AvailabilitySlot, redis, monkeypatch
):
    async def redis_down(*args, **kwargs):
        raise RedisError("redis down")

    monkeypatch.setattr(redis, "keys", redis_down)
    response = await client.delete(f"/api/availability/{open_slot.id}", headers=auth_headers(guide_user))
    assert response.status_code == 200

    remaining = await db.scalar(
        select(AvailabilitySlot).where(AvailabilitySlot.id == open_slot.id).execution_options(populate_existing=True)
    )
    assert remaining is None


# ── Reschedule ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reschedule_open_slot(
    client: AsyncClient, guide_user: User, guide_profile: GuideProfile, open_slot: AvailabilitySlot
):
    params = {"guideId": str(guide_profile.uid), "status": "all", **_range()}
    await client.get("/api/availability", params=params)

    new_start = _future(days=7, hour=14)
    response = await client.patch(
        f"/api/availability/{open_slot.id}",
        headers=auth_headers(guide_user),
        json={"startTime": new_start.isoformat(), "durationHours": 8},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "open"
    assert data["duration_hours"] == 8
    assert _parse_instant(data["start_time"]) == new_start

    listed = (await client.get("/api/availability", params=params)).json()
    assert [(s["id"], s["duration_hours"]) for s in listed] == [(str(open_slot.id), 8)]


@pytest.mark.asyncio
async def test_reschedule_may_overlap_its_own_window(
    client: AsyncClient, guide_user: User, open_slot: AvailabilitySlot
):
    shifted = as_utc(open_slot.start_time) + timedelta(hours=1)
    response = await client.patch(
        f"/api/availability/{open_slot.id}",
        headers=auth_headers(guide_user),
        json={"startTime": shifted.isoformat()},
    )
    assert response.status_code == 200
    assert response.json()["duration_hours"] == 6


@pytest.mark.asyncio
async def test_reschedule_onto_another_slot_conflicts(
    client: AsyncClient, db: AsyncSession, guide_user: User, guide_profile: GuideProfile, open_slot: AvailabilitySlot
):
    other = await _add_slot(db, guide_profile, _future(days=10))
    response = await client.patch(
        f"/api/availability/{open_slot.id}",
        headers=auth_headers(guide_user),
        json={"startTime": (as_utc(other.start_time) + timedelta(hours=2)).isoformat()},
    )
    assert response.status_code == 409
    assert "overlaps" in response.json()["detail"]


@pytest.mark.asyncio
async def test_reschedule_into_past_rejected(
    client: AsyncClient, guide_user: User, open_slot: AvailabilitySlot
):
    response = await client.patch(
        f"/api/availability/{open_slot.id}",
        headers=auth_headers(guide_user),
        json={"startTime": (utcnow() - timedelta(days=1)).isoformat()},
    )
    assert response.status_code == 400


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [SlotStatus.PENDING, SlotStatus.BOOKED, SlotStatus.CLOSED])
async def test_reschedule_non_open_slot_conflicts(
    client: AsyncClient, db: AsyncSession, guide_user: User, guide_profile: GuideProfile, status
):
    slot = await _add_slot(db, guide_profile, _future(), status=status)
    response = await client.patch(
        f"/api/availability/{slot.id}",
        headers=auth_headers(guide_user),
        json={"durationHours": 8},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_empty_update_rejected(client: AsyncClient, guide_user: User, open_slot: AvailabilitySlot):
    response = await client.patch(
        f"/api/availability/{open_slot.id}", headers=auth_headers(guide_user), json={}
    )
    assert response.status_code == 400
