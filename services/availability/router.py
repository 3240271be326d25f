"""
services/availability/router.py
Guide availability slots: range queries, month calendar, create/reschedule/transition/delete.
List responses are cached in Redis per guide and invalidated on every mutation.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, availability_key, get_redis
from shared.middleware.auth import get_current_user, is_owner_or_admin
from shared.models.models import AvailabilitySlot, GuideProfile, SlotStatus, User
from shared.schemas.schemas import (
    CalendarDay,
    CalendarResponse,
    MessageResponse,
    SlotCreateRequest,
    SlotResponse,
    SlotUpdateRequest,
)
from shared.utils.dates import as_utc, utcnow
from shared.utils.slots import (
    ALLOWED_DURATIONS,
    MAX_DURATION_HOURS,
    SlotTransitionError,
    can_delete,
    find_overlap,
    group_by_local_date,
    month_bounds,
    transition,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Availability"])

STATUS_FILTER_PATTERN = "^(open|pending|booked|closed|all)$"


# ── Helpers ───────────────────────────────────────────────────

async def _get_guide_or_404(guide_id: UUID, db: AsyncSession) -> GuideProfile:
    guide = await db.scalar(select(GuideProfile).where(GuideProfile.uid == guide_id))
    if not guide:
        raise HTTPException(status_code=404, detail="Guide not found")
    return guide


async def _get_slot_or_404(slot_id: UUID, db: AsyncSession) -> AvailabilitySlot:
    slot = await db.scalar(select(AvailabilitySlot).where(AvailabilitySlot.id == slot_id))
    if not slot:
        raise HTTPException(status_code=404, detail="Slot not found")
    return slot


def _require_slot_owner(user: User, slot: AvailabilitySlot) -> None:
    if not is_owner_or_admin(user, slot.guide_id):
        raise HTTPException(status_code=403, detail="You can only manage your own availability")


async def _reject_overlap(
    db: AsyncSession,
    guide_id: UUID,
    start: datetime,
    duration_hours: int,
    exclude_id: Optional[UUID] = None,
) -> None:
    # Any slot that could reach into the window starts at most 8h earlier
    end = start + timedelta(hours=duration_hours)
    query = select(AvailabilitySlot).where(
        AvailabilitySlot.guide_id == guide_id,
        AvailabilitySlot.status != SlotStatus.CLOSED,
        AvailabilitySlot.start_time > start - timedelta(hours=MAX_DURATION_HOURS),
        AvailabilitySlot.start_time < end,
    )
    if exclude_id is not None:
        query = query.where(AvailabilitySlot.id != exclude_id)
    nearby = await db.execute(query)
    clash = find_overlap(nearby.scalars(), start, duration_hours)
    if clash:
        raise HTTPException(
            status_code=409,
            detail=f"Slot overlaps with an existing slot starting {as_utc(clash.start_time).isoformat()}",
        )


# ── Queries ───────────────────────────────────────────────────

@router.get("/availability", response_model=List[SlotResponse])
async def list_slots(
    guide_id: UUID = Query(..., alias="guideId"),
    range_start: datetime = Query(..., alias="from"),
    range_end: datetime = Query(..., alias="to"),
    status_filter: Optional[str] = Query(None, alias="status", pattern=STATUS_FILTER_PATTERN),
    duration: Optional[int] = Query(None),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Slots of one guide whose start_time falls in [from, to], ascending.
    Without a status filter only open (bookable) slots are returned;
    status=all returns every status.
    """
    start, end = as_utc(range_start), as_utc(range_end)
    if start > end:
        raise HTTPException(status_code=400, detail="'from' must not be after 'to'")
    if duration is not None and duration not in ALLOWED_DURATIONS:
        raise HTTPException(status_code=400, detail="duration must be 4, 6 or 8")

    wanted = status_filter or SlotStatus.OPEN.value
    cache = RedisCache(redis)
    cache_key = availability_key(guide_id, start.isoformat(), end.isoformat(), wanted, duration)

    cached = await cache.get(cache_key)
    if cached is not None:
        return [SlotResponse(**s) for s in cached]

    query = select(AvailabilitySlot).where(
        AvailabilitySlot.guide_id == guide_id,
        AvailabilitySlot.start_time >= start,
        AvailabilitySlot.start_time <= end,
    )
    if wanted != "all":
        query = query.where(AvailabilitySlot.status == SlotStatus(wanted))
    if duration is not None:
        query = query.where(AvailabilitySlot.duration_hours == duration)

    result = await db.execute(query.order_by(AvailabilitySlot.start_time.asc()))
    slots = [SlotResponse.model_validate(s) for s in result.scalars()]

    await cache.set(cache_key, [s.model_dump(mode="json") for s in slots])
    return slots


@router.get("/availability/calendar", response_model=CalendarResponse)
async def slot_calendar(
    guide_id: UUID = Query(..., alias="guideId"),
    year: int = Query(..., ge=2000, le=2100),
    month: int = Query(..., ge=1, le=12),
    status_filter: Optional[str] = Query(None, alias="status", pattern=STATUS_FILTER_PATTERN),
    db: AsyncSession = Depends(get_db),
):
    """
    Month view of a guide's slots, bucketed by date in the guide's own
    timezone. Every status is shown unless a filter is given.
    """
    guide = await _get_guide_or_404(guide_id, db)
    start, end = month_bounds(year, month, guide.timezone)

    query = select(AvailabilitySlot).where(
        AvailabilitySlot.guide_id == guide.uid,
        AvailabilitySlot.start_time >= start,
        AvailabilitySlot.start_time < end,
    )
    if status_filter and status_filter != "all":
        query = query.where(AvailabilitySlot.status == SlotStatus(status_filter))

    result = await db.execute(query)
    grouped = group_by_local_date(list(result.scalars()), guide.timezone)

    return CalendarResponse(
        guide_id=guide.uid,
        year=year,
        month=month,
        timezone=guide.timezone,
        days=[
            CalendarDay(date=day, slots=[SlotResponse.model_validate(s) for s in slots])
            for day, slots in grouped.items()
        ],
    )


@router.get("/availability/{slot_id}", response_model=SlotResponse)
async def get_slot(slot_id: UUID, db: AsyncSession = Depends(get_db)):
    return SlotResponse.model_validate(await _get_slot_or_404(slot_id, db))


# ── Mutations ─────────────────────────────────────────────────

@router.post(
    "/guides/availability",
    response_model=SlotResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_slot(
    data: SlotCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Publish a new open slot.
    - start time must be in the future
    - only the guide (or an admin) can publish
    - the window must not overlap another non-closed slot of the guide
    """
    start = as_utc(data.start_time)
    if start <= utcnow():
        raise HTTPException(status_code=400, detail="Start time must be in the future")

    guide = await _get_guide_or_404(data.guide_id, db)
    if not is_owner_or_admin(current_user, guide.uid):
        raise HTTPException(status_code=403, detail="You can only manage your own availability")

    await _reject_overlap(db, guide.uid, start, data.duration_hours)

    slot = AvailabilitySlot(
        guide_id=guide.uid,
        start_time=start,
        duration_hours=data.duration_hours,
        status=SlotStatus.OPEN,
    )
    db.add(slot)
    await db.commit()

    await RedisCache(redis).invalidate_availability(str(guide.uid))
    logger.info(f"Slot {slot.id} created for guide {guide.uid} at {start.isoformat()}")
    return SlotResponse.model_validate(slot)


@router.patch("/availability/{slot_id}", response_model=SlotResponse)
async def update_slot(
    slot_id: UUID,
    data: SlotUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Reschedule an open slot (startTime / durationHours) and/or move it along
    open → pending → booked, back to open, or to closed.
    Rescheduling runs the same checks as creation, ignoring the slot itself.
    """
    if data.status is None and data.start_time is None and data.duration_hours is None:
        raise HTTPException(status_code=400, detail="Nothing to update")

    slot = await _get_slot_or_404(slot_id, db)
    _require_slot_owner(current_user, slot)

    if data.start_time is not None or data.duration_hours is not None:
        if SlotStatus(slot.status) != SlotStatus.OPEN:
            raise HTTPException(
                status_code=409,
                detail=f"Cannot reschedule a slot with status '{SlotStatus(slot.status).value}'",
            )
        start = as_utc(data.start_time) if data.start_time is not None else as_utc(slot.start_time)
        duration_hours = data.duration_hours or slot.duration_hours
        if start <= utcnow():
            raise HTTPException(status_code=400, detail="Start time must be in the future")
        await _reject_overlap(db, slot.guide_id, start, duration_hours, exclude_id=slot.id)
        slot.start_time = start
        slot.duration_hours = duration_hours

    if data.status is not None:
        try:
            transition(slot, SlotStatus(data.status))
        except SlotTransitionError as e:
            raise HTTPException(status_code=409, detail=str(e))

    await db.commit()
    await RedisCache(redis).invalidate_availability(str(slot.guide_id))
    return SlotResponse.model_validate(slot)


@router.delete("/availability/{slot_id}", response_model=MessageResponse)
async def delete_slot(
    slot_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Only open slots can be deleted; anything else is a 409 and stays untouched."""
    slot = await _get_slot_or_404(slot_id, db)
    _require_slot_owner(current_user, slot)

    if not can_delete(slot):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot delete a slot with status '{SlotStatus(slot.status).value}'",
        )

    guide_id = slot.guide_id
    await db.delete(slot)
    await db.commit()

    await RedisCache(redis).invalidate_availability(str(guide_id))
    return MessageResponse(message="Slot deleted")
