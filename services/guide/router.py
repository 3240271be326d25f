"""
services/guide/router.py
Guide profiles: browse by city, public profile with tier prices, quote, upsert.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user, is_owner_or_admin
from shared.models.models import City, GuideProfile, User, UserRole
from shared.schemas.schemas import (
    GuideDetailResponse,
    GuideResponse,
    GuideUpsertRequest,
    QuoteResponse,
)
from shared.utils.pricing import (
    InvalidDurationError,
    calculate_all_duration_prices,
    format_price,
    get_price_description,
    quote_sessions,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/guides", tags=["Guides"])

REQUIRED_ON_CREATE = ("handle", "display_name", "city", "city_slug", "country")


# ── Helpers ───────────────────────────────────────────────────

async def _get_guide_by_handle_or_404(handle: str, db: AsyncSession) -> GuideProfile:
    guide = await db.scalar(select(GuideProfile).where(GuideProfile.handle == handle))
    if not guide:
        raise HTTPException(status_code=404, detail="Guide not found")
    return guide


def _guide_detail(guide: GuideProfile) -> GuideDetailResponse:
    detail = GuideDetailResponse.model_validate(guide)
    if guide.base_rate_hour:
        currency = (guide.prices or {}).get("currency", "USD")
        detail.price_breakdowns = calculate_all_duration_prices(guide.base_rate_hour, currency)
    return detail


def _prices_from_rate(base_rate_hour, currency: str) -> dict:
    """Keep the flat per-tour prices in sync with the hourly rate."""
    prices = {k: float(v.total) for k, v in calculate_all_duration_prices(base_rate_hour, currency).items()}
    prices["currency"] = currency
    return prices


# ── Endpoints ─────────────────────────────────────────────────

@router.get("", response_model=List[GuideResponse])
async def list_guides(
    city_slug: Optional[str] = Query(None, alias="citySlug"),
    language: Optional[str] = Query(None),
    verified: Optional[bool] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Public guide listing, best rated first."""
    query = select(GuideProfile)
    if city_slug:
        query = query.where(GuideProfile.city_slug == city_slug)
    if verified is not None:
        query = query.where(GuideProfile.verified == verified)

    result = await db.execute(
        query.order_by(GuideProfile.rating_avg.desc(), GuideProfile.display_name.asc())
    )
    guides = list(result.scalars())
    if language:
        # JSON array column; filtered here to stay portable across databases
        guides = [g for g in guides if language in (g.languages or [])]
    return [GuideResponse.model_validate(g) for g in guides]


@router.get("/{handle}", response_model=GuideDetailResponse)
async def get_guide(handle: str, db: AsyncSession = Depends(get_db)):
    """Public profile with 4h/6h/8h price breakdowns computed from the current rate."""
    guide = await _get_guide_by_handle_or_404(handle, db)
    return _guide_detail(guide)


@router.get("/{handle}/quote", response_model=QuoteResponse)
async def quote_tour(
    handle: str,
    duration: int = Query(...),
    travelers: int = Query(1, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Price for one tour at the guide's current rate; never cached."""
    guide = await _get_guide_by_handle_or_404(handle, db)
    try:
        price = quote_sessions(
            [duration], travelers,
            base_rate_hour=guide.base_rate_hour,
            legacy_prices=guide.prices,
        )
        description = get_price_description(duration)
    except InvalidDurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return QuoteResponse(
        guide_id=guide.uid,
        handle=guide.handle,
        duration_hours=duration,
        travelers=travelers,
        description=description,
        formatted_total=format_price(price.total, price.currency),
        price=price,
    )


@router.patch("/{uid}", response_model=GuideDetailResponse)
async def upsert_guide(
    uid: UUID,
    data: GuideUpsertRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Create or update the guide profile owned by uid.
    Creating a profile for a traveler account promotes it to the guide role.
    """
    if not is_owner_or_admin(current_user, uid):
        raise HTTPException(status_code=403, detail="You can only edit your own profile")

    owner = await db.scalar(select(User).where(User.id == uid))
    if not owner:
        raise HTTPException(status_code=404, detail="User not found")

    updates = data.model_dump(exclude_unset=True)

    if updates.get("handle"):
        taken = await db.scalar(
            select(GuideProfile.uid).where(
                GuideProfile.handle == updates["handle"], GuideProfile.uid != uid
            )
        )
        if taken:
            raise HTTPException(status_code=409, detail="Handle is already taken")

    if updates.get("city_slug"):
        city = await db.scalar(select(City).where(City.slug == updates["city_slug"]))
        if city:
            updates["city_id"] = city.id
            updates.setdefault("timezone", city.timezone)

    guide = await db.scalar(select(GuideProfile).where(GuideProfile.uid == uid))
    if guide is None:
        missing = [f for f in REQUIRED_ON_CREATE if not updates.get(f)]
        if missing:
            raise HTTPException(status_code=400, detail=f"Missing fields for new profile: {missing}")
        if not updates.get("prices") and not updates.get("base_rate_hour"):
            raise HTTPException(status_code=400, detail="Either prices or base_rate_hour is required")
        guide = GuideProfile(uid=uid, prices=updates.get("prices") or {})
        db.add(guide)
        if owner.role == UserRole.TRAVELER:
            owner.role = UserRole.GUIDE
        logger.info(f"Guide profile created for {uid}")

    if updates.get("base_rate_hour") and "prices" not in updates:
        currency = (guide.prices or {}).get("currency", "USD")
        updates["prices"] = _prices_from_rate(updates["base_rate_hour"], currency)

    for field, value in updates.items():
        setattr(guide, field, value)

    await db.commit()
    return _guide_detail(guide)
