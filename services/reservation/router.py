"""
services/reservation/router.py
Reservation lifecycle:

    pending ──accept──▶ accepted ──complete──▶ completed
       │                   │
       └──cancel──▶ cancelled ◀──cancel──┘
                      │
                      └──refund──▶ refunded

A slot-based reservation moves its slot open → pending on creation and holds
it in Redis; accepting books the slot, cancelling reopens it.
"""

import logging
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import STAFF_ROLES, get_current_user, require_traveler
from shared.models.models import (
    AvailabilitySlot,
    Booking,
    BookingStatus,
    Conversation,
    GuideProfile,
    Reservation,
    ReservationStatus,
    SlotStatus,
    TravelerProfile,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingResponse,
    ReservationCreateRequest,
    ReservationResponse,
    ReservationStatusUpdate,
)
from shared.utils.loyalty import award_points
from shared.utils.pricing import InvalidDurationError, quote_sessions, traveler_fee
from shared.utils.slots import transition

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reservations", tags=["Reservations"])

RESERVATION_TRANSITIONS: Dict[ReservationStatus, frozenset] = {
    ReservationStatus.PENDING: frozenset({ReservationStatus.ACCEPTED, ReservationStatus.CANCELLED}),
    ReservationStatus.ACCEPTED: frozenset({ReservationStatus.COMPLETED, ReservationStatus.CANCELLED}),
    ReservationStatus.CANCELLED: frozenset({ReservationStatus.REFUNDED}),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.REFUNDED: frozenset(),
}

BOOKING_STATUS_FOR = {
    ReservationStatus.ACCEPTED: BookingStatus.ACCEPTED,
    ReservationStatus.CANCELLED: BookingStatus.CANCELLED,
    ReservationStatus.COMPLETED: BookingStatus.COMPLETED,
}


# ── Helpers ───────────────────────────────────────────────────

async def _get_reservation_or_404(reservation_id: UUID, db: AsyncSession) -> Reservation:
    reservation = await db.scalar(select(Reservation).where(Reservation.id == reservation_id))
    if not reservation:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return reservation


def _is_staff(user: User) -> bool:
    return user.role in STAFF_ROLES


def _require_participant(user: User, reservation: Reservation) -> None:
    if _is_staff(user):
        return
    if user.id not in (reservation.traveler_id, reservation.guide_id):
        raise HTTPException(status_code=403, detail="Not authorized to view this reservation")


def _require_transition_actor(user: User, reservation: Reservation, target: ReservationStatus) -> None:
    """Guide accepts and completes, either side cancels, only admins refund."""
    if user.role == UserRole.ADMIN:
        return
    is_guide = user.id == reservation.guide_id
    is_traveler = user.id == reservation.traveler_id
    allowed = {
        ReservationStatus.ACCEPTED: is_guide,
        ReservationStatus.COMPLETED: is_guide,
        ReservationStatus.CANCELLED: is_guide or is_traveler,
        ReservationStatus.REFUNDED: False,
    }.get(target, False)
    if not allowed:
        raise HTTPException(
            status_code=403,
            detail=f"Not authorized to mark this reservation {target.value}",
        )


async def _bookings_by_reservation(
    reservation_ids: Iterable[UUID], db: AsyncSession
) -> Dict[UUID, Booking]:
    ids = list(reservation_ids)
    if not ids:
        return {}
    result = await db.execute(select(Booking).where(Booking.reservation_id.in_(ids)))
    return {b.reservation_id: b for b in result.scalars()}


def _reservation_response(reservation: Reservation, booking: Optional[Booking]) -> ReservationResponse:
    response = ReservationResponse.model_validate(reservation)
    if booking is not None:
        response.booking = BookingResponse.model_validate(booking)
    return response


async def _ensure_conversation(db: AsyncSession, reservation: Reservation) -> Conversation:
    """One conversation per reservation, opened on acceptance."""
    existing = await db.scalar(
        select(Conversation).where(Conversation.reservation_id == reservation.id)
    )
    if existing:
        return existing
    conversation = Conversation(
        reservation_id=reservation.id,
        participant_ids=[str(reservation.traveler_id), str(reservation.guide_id)],
    )
    db.add(conversation)
    return conversation


async def _get_or_create_traveler_profile(db: AsyncSession, uid: UUID) -> TravelerProfile:
    profile = await db.scalar(select(TravelerProfile).where(TravelerProfile.uid == uid))
    if profile is None:
        user = await db.scalar(select(User).where(User.id == uid))
        profile = TravelerProfile(
            uid=uid,
            display_name=user.display_name if user else "Traveler",
            loyalty_points=0,
        )
        db.add(profile)
    return profile


# ── Endpoints ─────────────────────────────────────────────────

@router.post("", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    data: ReservationCreateRequest,
    current_user: User = Depends(require_traveler),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Request a tour. Steps:
    1. Validate the guide and (optionally) the slot
    2. Price every session at the guide's current rate
    3. Move the slot open → pending and hold it in Redis
    4. Create the reservation and its booking
    """
    guide = await db.scalar(select(GuideProfile).where(GuideProfile.uid == data.guide_id))
    if not guide:
        raise HTTPException(status_code=404, detail="Guide not found")
    if guide.uid == current_user.id:
        raise HTTPException(status_code=400, detail="Guides cannot book their own tours")
    if data.travelers > guide.max_group_size:
        raise HTTPException(
            status_code=400,
            detail=f"This guide accepts at most {guide.max_group_size} travelers",
        )

    slot = None
    if data.slot_id:
        slot = await db.scalar(select(AvailabilitySlot).where(AvailabilitySlot.id == data.slot_id))
        if not slot:
            raise HTTPException(status_code=404, detail="Slot not found")
        if slot.guide_id != guide.uid:
            raise HTTPException(status_code=400, detail="Slot does not belong to this guide")
        if slot.status != SlotStatus.OPEN:
            raise HTTPException(status_code=409, detail="Slot is no longer available")
        if any(s.duration_hours != slot.duration_hours for s in data.sessions):
            raise HTTPException(status_code=400, detail="Session duration must match the slot")

    try:
        price = quote_sessions(
            [s.duration_hours for s in data.sessions],
            data.travelers,
            base_rate_hour=guide.base_rate_hour,
            legacy_prices=guide.prices,
        )
    except (InvalidDurationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    fee = traveler_fee(price.total, settings.TRAVELER_FEE_PERCENT)
    reservation = Reservation(
        traveler_id=current_user.id,
        guide_id=guide.uid,
        slot_id=slot.id if slot else None,
        status=ReservationStatus.PENDING,
        currency=price.currency,
        subtotal=price.subtotal,
        discount=price.discount,
        traveler_fee_pct=settings.TRAVELER_FEE_PERCENT,
        platform_commission_pct=settings.PLATFORM_COMMISSION_PERCENT,
        platform_commission_min_usd=settings.PLATFORM_COMMISSION_MIN_USD,
        total=price.total + fee,
    )
    db.add(reservation)
    await db.flush()

    cache = RedisCache(redis)
    if slot:
        if not await cache.hold_slot(str(slot.id), str(reservation.id)):
            raise HTTPException(
                status_code=409,
                detail="This slot is temporarily held by another reservation. Please try again shortly.",
            )
        transition(slot, SlotStatus.PENDING)

    booking = Booking(
        reservation_id=reservation.id,
        traveler_id=current_user.id,
        guide_id=guide.uid,
        sessions=[s.model_dump(mode="json") for s in data.sessions],
        meeting=data.meeting.model_dump(mode="json"),
        itinerary_note=data.itinerary_note,
        travelers=data.travelers,
        status=BookingStatus.PENDING,
    )
    db.add(booking)
    await db.commit()

    if slot:
        await cache.invalidate_availability(str(guide.uid))
    logger.info(f"Reservation {reservation.id} created for guide {guide.uid} (total {reservation.total})")
    return _reservation_response(reservation, booking)


@router.get("/traveler/{traveler_id}", response_model=List[ReservationResponse])
async def list_traveler_reservations(
    traveler_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if current_user.id != traveler_id and not _is_staff(current_user):
        raise HTTPException(status_code=403, detail="Not authorized to view these reservations")

    result = await db.execute(
        select(Reservation)
        .where(Reservation.traveler_id == traveler_id)
        .order_by(Reservation.created_at.desc())
    )
    reservations = list(result.scalars())
    bookings = await _bookings_by_reservation((r.id for r in reservations), db)
    return [_reservation_response(r, bookings.get(r.id)) for r in reservations]


@router.get("/guide/{guide_id}", response_model=List[ReservationResponse])
async def list_guide_reservations(
    guide_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if current_user.id != guide_id and not _is_staff(current_user):
        raise HTTPException(status_code=403, detail="Not authorized to view these reservations")

    result = await db.execute(
        select(Reservation)
        .where(Reservation.guide_id == guide_id)
        .order_by(Reservation.created_at.desc())
    )
    reservations = list(result.scalars())
    bookings = await _bookings_by_reservation((r.id for r in reservations), db)
    return [_reservation_response(r, bookings.get(r.id)) for r in reservations]


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    reservation = await _get_reservation_or_404(reservation_id, db)
    _require_participant(current_user, reservation)
    bookings = await _bookings_by_reservation([reservation.id], db)
    return _reservation_response(reservation, bookings.get(reservation.id))


@router.patch("/{reservation_id}", response_model=ReservationResponse)
async def update_reservation_status(
    reservation_id: UUID,
    data: ReservationStatusUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Apply one lifecycle step and its side effects on slot, booking, conversation and loyalty."""
    reservation = await _get_reservation_or_404(reservation_id, db)
    _require_participant(current_user, reservation)

    current = ReservationStatus(reservation.status)
    target = ReservationStatus(data.status)
    if target not in RESERVATION_TRANSITIONS[current]:
        raise HTTPException(
            status_code=409,
            detail=f"Cannot move reservation from '{current.value}' to '{target.value}'",
        )
    _require_transition_actor(current_user, reservation, target)

    booking = await db.scalar(select(Booking).where(Booking.reservation_id == reservation.id))
    slot = None
    if reservation.slot_id:
        slot = await db.scalar(
            select(AvailabilitySlot).where(AvailabilitySlot.id == reservation.slot_id)
        )

    cache = RedisCache(redis)
    slot_changed = False

    if target == ReservationStatus.ACCEPTED:
        if slot and slot.status == SlotStatus.PENDING:
            transition(slot, SlotStatus.BOOKED)
            slot_changed = True
        await _ensure_conversation(db, reservation)

    elif target == ReservationStatus.CANCELLED:
        if slot and slot.status == SlotStatus.PENDING:
            transition(slot, SlotStatus.OPEN)
            slot_changed = True

    elif target == ReservationStatus.COMPLETED:
        profile = await _get_or_create_traveler_profile(db, reservation.traveler_id)
        award_points(profile, settings.LOYALTY_POINTS_PER_BOOKING)

    if booking and target in BOOKING_STATUS_FOR:
        booking.status = BOOKING_STATUS_FOR[target]

    reservation.status = target
    await db.commit()

    if slot_changed:
        await cache.release_slot_hold(str(slot.id))
        await cache.invalidate_availability(str(slot.guide_id))

    logger.info(f"Reservation {reservation.id}: {current.value} → {target.value} by {current_user.id}")
    return _reservation_response(reservation, booking)
