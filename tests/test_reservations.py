"""
tests/test_reservations.py
Reservation lifecycle: create with slot hold → accept/cancel → complete,
plus pricing stored on the reservation and loyalty on completion.
"""

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import (
    AvailabilitySlot,
    Conversation,
    GuideProfile,
    Reservation,
    ReservationStatus,
    SlotStatus,
    TravelerProfile,
    User,
)
from shared.utils.dates import as_utc, utcnow
from tests.conftest import auth_headers


def _payload(guide: GuideProfile, slot: AvailabilitySlot = None, duration: int = 6, travelers: int = 1) -> dict:
    start = as_utc(slot.start_time) if slot else utcnow() + timedelta(days=4)
    payload = {
        "guideId": str(guide.uid),
        "sessions": [{"date": start.date().isoformat(), "startTime": start.strftime("%H:%M"), "durationHours": duration}],
        "meeting": {"type": "meet_at_location", "address": "Praça do Comércio"},
        "travelers": travelers,
    }
    if slot:
        payload["slotId"] = str(slot.id)
    return payload


async def _reload(db: AsyncSession, model, pk):
    return await db.scalar(
        select(model).where(model.__mapper__.primary_key[0] == pk).execution_options(populate_existing=True)
    )


async def _create(client: AsyncClient, traveler: User, guide: GuideProfile, slot=None, **kwargs) -> dict:
    response = await client.post(
        "/api/reservations", headers=auth_headers(traveler), json=_payload(guide, slot, **kwargs)
    )
    assert response.status_code == 201, response.text
    return response.json()


async def _patch(client: AsyncClient, user: User, reservation_id: str, status: str):
    return await client.patch(
        f"/api/reservations/{reservation_id}",
        headers=auth_headers(user),
        json={"status": status},
    )


# ── Creation ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_reservation_prices_from_base_rate(
    client: AsyncClient, traveler: User, guide_profile: GuideProfile
):
    """6h at $50/h: subtotal 300, discount 15, fee 10% of 285 → 29, total 314."""
    data = await _create(client, traveler, guide_profile)
    assert data["status"] == "pending"
    assert data["subtotal"] == 300
    assert data["discount"] == 15
    assert data["traveler_fee_pct"] == 10
    assert data["total"] == 314
    assert data["booking"]["sessions"][0]["duration_hours"] == 6
    assert data["booking"]["status"] == "pending"


@pytest.mark.asyncio
async def test_create_reservation_for_group(
    client: AsyncClient, traveler: User, guide_profile: GuideProfile
):
    data = await _create(client, traveler, guide_profile, duration=4, travelers=3)
    # 3 × 200 = 600, fee 60
    assert data["subtotal"] == 600
    assert data["total"] == 660
    assert data["booking"]["travelers"] == 3


@pytest.mark.asyncio
async def test_create_reservation_over_group_size(
    client: AsyncClient, traveler: User, guide_profile: GuideProfile
):
    response = await client.post(
        "/api/reservations",
        headers=auth_headers(traveler),
        json=_payload(guide_profile, travelers=guide_profile.max_group_size + 1),
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_create_reservation_legacy_prices(
    client: AsyncClient, db: AsyncSession, traveler: User, guide_profile: GuideProfile
):
    guide_profile.base_rate_hour = None
    guide_profile.prices = {"h4": 180, "h6": 260, "h8": 330, "currency": "USD"}
    await db.commit()

    data = await _create(client, traveler, guide_profile, duration=6)
    assert data["subtotal"] == 260
    assert data["discount"] == 0
    assert data["total"] == 286


@pytest.mark.asyncio
async def test_guide_cannot_create_reservation(
    client: AsyncClient, guide_user: User, guide_profile: GuideProfile
):
    response = await client.post(
        "/api/reservations", headers=auth_headers(guide_user), json=_payload(guide_profile)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_create_reservation_unknown_guide(client: AsyncClient, traveler: User, guide_profile: GuideProfile):
    payload = _payload(guide_profile)
    payload["guideId"] = str(uuid.uuid4())
    response = await client.post("/api/reservations", headers=auth_headers(traveler), json=payload)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_reservation_holds_slot(
    client: AsyncClient,
    db: AsyncSession,
    traveler: User,
    guide_profile: GuideProfile,
    open_slot: AvailabilitySlot,
    redis,
):
    data = await _create(client, traveler, guide_profile, slot=open_slot)
    assert data["slot_id"] == str(open_slot.id)

    slot = await _reload(db, AvailabilitySlot, open_slot.id)
    assert slot.status == SlotStatus.PENDING
    assert await redis.get(f"slot_hold:{open_slot.id}") == data["id"]


@pytest.mark.asyncio
async def test_reserved_slot_leaves_cached_open_list(
    client: AsyncClient,
    traveler: User,
    guide_user: User,
    guide_profile: GuideProfile,
    open_slot: AvailabilitySlot,
):
    now = utcnow()
    params = {
        "guideId": str(guide_profile.uid),
        "from": (now - timedelta(days=1)).isoformat(),
        "to": (now + timedelta(days=30)).isoformat(),
    }
    before = await client.get("/api/availability", params=params)
    assert [s["id"] for s in before.json()] == [str(open_slot.id)]

    reservation = await _create(client, traveler, guide_profile, slot=open_slot)
    assert (await client.get("/api/availability", params=params)).json() == []

    everything = await client.get("/api/availability", params={**params, "status": "all"})
    assert [s["status"] for s in everything.json()] == ["pending"]

    # Cancelling reopens the slot for later queries too
    await _patch(client, guide_user, reservation["id"], "cancelled")
    after = await client.get("/api/availability", params=params)
    assert [s["id"] for s in after.json()] == [str(open_slot.id)]


@pytest.mark.asyncio
async def test_second_reservation_on_same_slot_conflicts(
    client: AsyncClient,
    traveler: User,
    other_traveler: User,
    guide_profile: GuideProfile,
    open_slot: AvailabilitySlot,
):
    await _create(client, traveler, guide_profile, slot=open_slot)
    response = await client.post(
        "/api/reservations",
        headers=auth_headers(other_traveler),
        json=_payload(guide_profile, open_slot),
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_slot_duration_mismatch(
    client: AsyncClient, traveler: User, guide_profile: GuideProfile, open_slot: AvailabilitySlot
):
    response = await client.post(
        "/api/reservations",
        headers=auth_headers(traveler),
        json=_payload(guide_profile, open_slot, duration=4),
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_held_slot_rejects_and_rolls_back(
    client: AsyncClient,
    db: AsyncSession,
    traveler: User,
    guide_profile: GuideProfile,
    open_slot: AvailabilitySlot,
    redis,
):
    """A stale Redis hold blocks the slot; nothing is written."""
    await redis.set(f"slot_hold:{open_slot.id}", "someone-else")
    response = await client.post(
        "/api/reservations",
        headers=auth_headers(traveler),
        json=_payload(guide_profile, open_slot),
    )
    assert response.status_code == 409

    slot = await _reload(db, AvailabilitySlot, open_slot.id)
    assert slot.status == SlotStatus.OPEN
    assert (await db.execute(select(Reservation))).scalars().all() == []


# ── Lifecycle ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_guide_accepts_books_slot_and_opens_conversation(
    client: AsyncClient,
    db: AsyncSession,
    traveler: User,
    guide_user: User,
    guide_profile: GuideProfile,
    open_slot: AvailabilitySlot,
    redis,
):
    reservation = await _create(client, traveler, guide_profile, slot=open_slot)

    response = await _patch(client, guide_user, reservation["id"], "accepted")
    assert response.status_code == 200
    assert response.json()["status"] == "accepted"
    assert response.json()["booking"]["status"] == "accepted"

    slot = await _reload(db, AvailabilitySlot, open_slot.id)
    assert slot.status == SlotStatus.BOOKED
    assert await redis.get(f"slot_hold:{open_slot.id}") is None

    conversation = await db.scalar(
        select(Conversation).where(Conversation.reservation_id == uuid.UUID(reservation["id"]))
    )
    assert conversation is not None
    assert set(conversation.participant_ids) == {str(traveler.id), str(guide_user.id)}


@pytest.mark.asyncio
async def test_traveler_cannot_accept(
    client: AsyncClient, traveler: User, guide_profile: GuideProfile
):
    reservation = await _create(client, traveler, guide_profile)
    response = await _patch(client, traveler, reservation["id"], "accepted")
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_cancel_reopens_slot(
    client: AsyncClient,
    db: AsyncSession,
    traveler: User,
    guide_profile: GuideProfile,
    open_slot: AvailabilitySlot,
):
    reservation = await _create(client, traveler, guide_profile, slot=open_slot)
    response = await _patch(client, traveler, reservation["id"], "cancelled")
    assert response.status_code == 200

    slot = await _reload(db, AvailabilitySlot, open_slot.id)
    assert slot.status == SlotStatus.OPEN


@pytest.mark.asyncio
async def test_invalid_transition_conflicts(
    client: AsyncClient, traveler: User, guide_user: User, guide_profile: GuideProfile
):
    reservation = await _create(client, traveler, guide_profile)
    response = await _patch(client, guide_user, reservation["id"], "completed")
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_complete_awards_loyalty_points(
    client: AsyncClient,
    db: AsyncSession,
    traveler: User,
    guide_user: User,
    guide_profile: GuideProfile,
):
    reservation = await _create(client, traveler, guide_profile)
    assert (await _patch(client, guide_user, reservation["id"], "accepted")).status_code == 200
    assert (await _patch(client, guide_user, reservation["id"], "completed")).status_code == 200

    profile = await _reload(db, TravelerProfile, traveler.id)
    assert profile.loyalty_points == 100


@pytest.mark.asyncio
async def test_only_admin_refunds(
    client: AsyncClient,
    traveler: User,
    admin_user: User,
    guide_profile: GuideProfile,
):
    reservation = await _create(client, traveler, guide_profile)
    assert (await _patch(client, traveler, reservation["id"], "cancelled")).status_code == 200

    assert (await _patch(client, traveler, reservation["id"], "refunded")).status_code == 403
    response = await _patch(client, admin_user, reservation["id"], "refunded")
    assert response.status_code == 200
    assert response.json()["status"] == ReservationStatus.REFUNDED.value


# ── Reads ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_participants_and_staff_can_read(
    client: AsyncClient,
    traveler: User,
    other_traveler: User,
    guide_user: User,
    moderator_user: User,
    guide_profile: GuideProfile,
):
    reservation = await _create(client, traveler, guide_profile)
    url = f"/api/reservations/{reservation['id']}"

    for user in (traveler, guide_user, moderator_user):
        assert (await client.get(url, headers=auth_headers(user))).status_code == 200
    assert (await client.get(url, headers=auth_headers(other_traveler))).status_code == 403


@pytest.mark.asyncio
async def test_list_by_traveler_and_guide(
    client: AsyncClient,
    traveler: User,
    other_traveler: User,
    guide_user: User,
    guide_profile: GuideProfile,
):
    reservation = await _create(client, traveler, guide_profile)

    mine = await client.get(f"/api/reservations/traveler/{traveler.id}", headers=auth_headers(traveler))
    assert [r["id"] for r in mine.json()] == [reservation["id"]]
    assert mine.json()[0]["booking"] is not None

    guide_view = await client.get(f"/api/reservations/guide/{guide_user.id}", headers=auth_headers(guide_user))
    assert [r["id"] for r in guide_view.json()] == [reservation["id"]]

    snoop = await client.get(f"/api/reservations/traveler/{traveler.id}", headers=auth_headers(other_traveler))
    assert snoop.status_code == 403
