"""
services/city/router.py
Public city directory.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.models.models import City, GuideProfile
from shared.schemas.schemas import CityDetailResponse, CityResponse, GuideResponse

router = APIRouter(prefix="/api/cities", tags=["Cities"])


@router.get("", response_model=List[CityResponse])
async def list_cities(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(City).order_by(City.name.asc()))
    return [CityResponse.model_validate(c) for c in result.scalars()]


@router.get("/{slug}", response_model=CityDetailResponse)
async def get_city(slug: str, db: AsyncSession = Depends(get_db)):
    """City with the guides based there."""
    city = await db.scalar(select(City).where(City.slug == slug))
    if not city:
        raise HTTPException(status_code=404, detail="City not found")

    result = await db.execute(
        select(GuideProfile)
        .where(GuideProfile.city_slug == slug)
        .order_by(GuideProfile.rating_avg.desc())
    )
    guides = [GuideResponse.model_validate(g) for g in result.scalars()]

    return CityDetailResponse(
        **CityResponse.model_validate(city).model_dump(),
        guide_count=len(guides),
        guides=guides,
    )
