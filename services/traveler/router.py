"""
services/traveler/router.py
Traveler profiles and the loyalty summary.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import STAFF_ROLES, get_current_user, is_owner_or_admin, require_staff
from shared.models.models import LoyaltyTier, TravelerProfile, User
from shared.schemas.schemas import LoyaltySummary, TravelerResponse, TravelerUpsertRequest
from shared.utils.loyalty import next_tier

router = APIRouter(prefix="/api/travelers", tags=["Travelers"])


async def _get_traveler_or_404(uid: UUID, db: AsyncSession) -> TravelerProfile:
    profile = await db.scalar(select(TravelerProfile).where(TravelerProfile.uid == uid))
    if not profile:
        raise HTTPException(status_code=404, detail="Traveler not found")
    return profile


@router.get("", response_model=List[TravelerResponse])
async def list_travelers(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(TravelerProfile)
        .order_by(TravelerProfile.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [TravelerResponse.model_validate(t) for t in result.scalars()]


@router.patch("/{uid}", response_model=TravelerResponse)
async def upsert_traveler(
    uid: UUID,
    data: TravelerUpsertRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create the profile on first save, update it afterwards."""
    if not is_owner_or_admin(current_user, uid):
        raise HTTPException(status_code=403, detail="You can only edit your own profile")

    owner = await db.scalar(select(User).where(User.id == uid))
    if not owner:
        raise HTTPException(status_code=404, detail="User not found")

    profile = await db.scalar(select(TravelerProfile).where(TravelerProfile.uid == uid))
    if profile is None:
        profile = TravelerProfile(uid=uid, display_name=owner.display_name)
        db.add(profile)

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(profile, field, value)

    await db.commit()
    return TravelerResponse.model_validate(profile)


@router.get("/{uid}/loyalty", response_model=LoyaltySummary)
async def get_loyalty(
    uid: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if str(current_user.id) != str(uid) and current_user.role not in STAFF_ROLES:
        raise HTTPException(status_code=403, detail="Not authorized to view this loyalty account")

    profile = await _get_traveler_or_404(uid, db)
    upcoming, needed = next_tier(profile.loyalty_points)
    return LoyaltySummary(
        uid=profile.uid,
        points=profile.loyalty_points,
        tier=LoyaltyTier(profile.loyalty_tier).value,
        next_tier=upcoming.value if upcoming else None,
        points_to_next_tier=needed,
    )
