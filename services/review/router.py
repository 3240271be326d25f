"""
services/review/router.py
Post-tour reviews, author edits and guide responses.
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from shared.middleware.auth import STAFF_ROLES, get_current_user, get_optional_user
from shared.models.models import (
    GuideProfile,
    Reservation,
    ReservationStatus,
    Review,
    ReviewStatus,
    TravelerProfile,
    User,
)
from shared.schemas.schemas import ReviewCreateRequest, ReviewResponse, ReviewUpdateRequest
from shared.utils.dates import utcnow
from shared.utils.loyalty import award_points

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["Reviews"])


async def recalculate_guide_rating(db: AsyncSession, guide_uid: UUID) -> None:
    """Denormalize the average of published reviews onto the guide profile."""
    avg_result = await db.execute(
        select(func.avg(Review.rating), func.count(Review.id))
        .where(Review.subject_user_id == guide_uid, Review.status == ReviewStatus.PUBLISHED)
    )
    avg, count = avg_result.one()
    await db.execute(
        update(GuideProfile)
        .where(GuideProfile.uid == guide_uid)
        .values(rating_avg=round(float(avg or 0), 2), rating_count=count)
    )


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Review a completed reservation.
    - Only the traveler of the reservation can review it
    - One review per reservation
    - Publishing earns the traveler loyalty points
    """
    reservation = await db.scalar(select(Reservation).where(Reservation.id == data.reservation_id))
    if not reservation:
        raise HTTPException(status_code=404, detail="Reservation not found")
    if reservation.traveler_id != current_user.id:
        raise HTTPException(status_code=403, detail="You can only review your own reservations")
    if reservation.status != ReservationStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Reservation must be completed before reviewing")

    existing = await db.scalar(select(Review.id).where(Review.reservation_id == reservation.id))
    if existing:
        raise HTTPException(status_code=409, detail="You have already reviewed this reservation")

    review = Review(
        subject_user_id=reservation.guide_id,
        author_user_id=current_user.id,
        reservation_id=reservation.id,
        rating=data.rating,
        text=data.text,
        status=ReviewStatus.PUBLISHED,
    )
    db.add(review)
    await db.flush()

    await recalculate_guide_rating(db, reservation.guide_id)

    profile = await db.scalar(select(TravelerProfile).where(TravelerProfile.uid == current_user.id))
    if profile:
        award_points(profile, settings.LOYALTY_POINTS_PER_REVIEW)

    await db.commit()
    return ReviewResponse.model_validate(review)


@router.get("/guide/{guide_uid}", response_model=List[ReviewResponse])
async def get_guide_reviews(
    guide_uid: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: published reviews for one guide, newest first."""
    result = await db.execute(
        select(Review)
        .where(Review.subject_user_id == guide_uid, Review.status == ReviewStatus.PUBLISHED)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [ReviewResponse.model_validate(r) for r in result.scalars()]


@router.get("/author/{author_uid}", response_model=List[ReviewResponse])
async def get_author_reviews(
    author_uid: UUID,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    """Reviews written by one user. Hidden ones are visible to the author and staff only."""
    query = select(Review).where(Review.author_user_id == author_uid)
    can_see_all = current_user is not None and (
        current_user.id == author_uid or current_user.role in STAFF_ROLES
    )
    if not can_see_all:
        query = query.where(Review.status == ReviewStatus.PUBLISHED)

    result = await db.execute(query.order_by(Review.created_at.desc()))
    return [ReviewResponse.model_validate(r) for r in result.scalars()]


@router.patch("/{review_id}", response_model=ReviewResponse)
async def update_review(
    review_id: UUID,
    data: ReviewUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    The author may edit rating and text; the first edit keeps the original text.
    The reviewed guide may post a response.
    """
    review = await db.scalar(select(Review).where(Review.id == review_id))
    if not review:
        raise HTTPException(status_code=404, detail="Review not found")

    is_author = review.author_user_id == current_user.id
    is_subject = review.subject_user_id == current_user.id
    changes = data.model_dump(exclude_unset=True)

    if not changes:
        raise HTTPException(status_code=400, detail="Nothing to update")

    if "response_text" in changes:
        if not is_subject:
            raise HTTPException(status_code=403, detail="Only the reviewed guide can respond")
        review.response_text = changes["response_text"]
        review.response_at = utcnow()

    author_fields = {k: v for k, v in changes.items() if k in ("rating", "text")}
    if author_fields:
        if not is_author:
            raise HTTPException(status_code=403, detail="Only the author can edit this review")
        if "text" in author_fields and author_fields["text"] != review.text:
            if review.original_text is None:
                review.original_text = review.text
            review.text = author_fields["text"]
        if "rating" in author_fields:
            review.rating = author_fields["rating"]
        review.edited_at = utcnow()

    await db.flush()
    await recalculate_guide_rating(db, review.subject_user_id)
    await db.commit()
    return ReviewResponse.model_validate(review)
