"""
services/admin/router.py
Back-office endpoints: users, guides, bookings, reviews, reports, cities,
platform stats and the audit log.

Staff roles (admin, support, moderator) can read; only admins mutate.
ALL mutations are logged to AdminAuditLog before returning.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import require_admin, require_staff
from shared.models.models import (
    AdminAuditLog,
    Booking,
    City,
    GuideProfile,
    Report,
    ReportStatus,
    Reservation,
    ReservationStatus,
    Review,
    ReviewStatus,
    User,
    UserRole,
    UserStatus,
)
from shared.schemas.schemas import (
    AdminGuideVerifyRequest,
    AdminStatsResponse,
    AdminUserStatusUpdate,
    AuditLogResponse,
    BookingResponse,
    CityCreateRequest,
    CityResponse,
    CityUpdateRequest,
    GuideResponse,
    MessageResponse,
    ReportResolveRequest,
    ReportResponse,
    ReservationResponse,
    ReviewResponse,
    ReviewStatusUpdate,
    UserResponse,
)
from services.review.router import recalculate_guide_rating

router = APIRouter(prefix="/api/admin", tags=["Admin"])


# ── Helpers ────────────────────────────────────────────────────────────────────

async def _log(
    db: AsyncSession,
    admin: User,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: dict | None = None,
    request: Request | None = None,
):
    """Append an immutable record to AdminAuditLog."""
    log = AdminAuditLog(
        admin_id=admin.id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=request.client.host if request and request.client else None,
    )
    db.add(log)


async def _get_or_404(db: AsyncSession, model, column, value, label: str):
    obj = await db.scalar(select(model).where(column == value))
    if not obj:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return obj


# ── Stats ──────────────────────────────────────────────────────────────────────

@router.get("/stats", response_model=AdminStatsResponse)
async def get_stats(
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    avg_rating = await db.scalar(
        select(func.avg(GuideProfile.rating_avg)).where(GuideProfile.rating_count > 0)
    )
    return AdminStatsResponse(
        total_users=await db.scalar(select(func.count(User.id))) or 0,
        total_guides=await db.scalar(select(func.count(GuideProfile.uid))) or 0,
        verified_guides=await db.scalar(
            select(func.count(GuideProfile.uid)).where(GuideProfile.verified == True)  # noqa: E712
        ) or 0,
        total_reservations=await db.scalar(select(func.count(Reservation.id))) or 0,
        pending_reservations=await db.scalar(
            select(func.count(Reservation.id)).where(Reservation.status == ReservationStatus.PENDING)
        ) or 0,
        open_reports=await db.scalar(
            select(func.count(Report.id)).where(Report.status == ReportStatus.OPEN)
        ) or 0,
        avg_guide_rating=round(float(avg_rating or 0), 2),
    )


# ── Users ──────────────────────────────────────────────────────────────────────

@router.get("/users", response_model=List[UserResponse])
async def list_users(
    role: Optional[UserRole] = Query(None),
    user_status: Optional[UserStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=100),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    query = select(User)
    if role:
        query = query.where(User.role == role)
    if user_status:
        query = query.where(User.status == user_status)
    if search:
        like = f"%{search.lower()}%"
        query = query.where(
            func.lower(User.display_name).like(like) | func.lower(User.email).like(like)
        )
    result = await db.execute(query.order_by(User.created_at.desc()))
    return [UserResponse.model_validate(u) for u in result.scalars()]


@router.patch("/users/{user_id}/status", response_model=UserResponse)
async def update_user_status(
    user_id: UUID,
    data: AdminUserStatusUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Suspend, temporarily ban, or reinstate an account."""
    user = await _get_or_404(db, User, User.id, user_id, "User")
    if user.id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot change your own status")

    user.status = UserStatus(data.status)
    user.banned_until = data.banned_until
    await _log(db, current_user, "UPDATE_USER_STATUS", "User", str(user_id),
               {"status": user.status.value,
                "banned_until": data.banned_until.isoformat() if data.banned_until else None},
               request)
    await db.commit()
    return UserResponse.model_validate(user)


# ── Guides ─────────────────────────────────────────────────────────────────────

@router.get("/guides", response_model=List[GuideResponse])
async def list_guides(
    verified: Optional[bool] = Query(None),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    query = select(GuideProfile)
    if verified is not None:
        query = query.where(GuideProfile.verified == verified)
    result = await db.execute(query.order_by(GuideProfile.created_at.asc()))
    return [GuideResponse.model_validate(g) for g in result.scalars()]


@router.patch("/guides/{uid}/verify", response_model=GuideResponse)
async def verify_guide(
    uid: UUID,
    data: AdminGuideVerifyRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    guide = await _get_or_404(db, GuideProfile, GuideProfile.uid, uid, "Guide")
    guide.verified = data.verified

    owner = await db.scalar(select(User).where(User.id == uid))
    if owner:
        owner.verified = data.verified

    await _log(db, current_user, "VERIFY_GUIDE" if data.verified else "UNVERIFY_GUIDE",
               "GuideProfile", str(uid), {"verified": data.verified}, request)
    await db.commit()
    return GuideResponse.model_validate(guide)


# ── Bookings ───────────────────────────────────────────────────────────────────

@router.get("/bookings", response_model=List[ReservationResponse])
async def list_bookings(
    reservation_status: Optional[ReservationStatus] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    """Reservations with their booking details, newest first."""
    query = select(Reservation)
    if reservation_status:
        query = query.where(Reservation.status == reservation_status)
    result = await db.execute(query.order_by(Reservation.created_at.desc()).limit(limit))
    reservations = list(result.scalars())

    bookings = {}
    if reservations:
        booking_rows = await db.execute(
            select(Booking).where(Booking.reservation_id.in_([r.id for r in reservations]))
        )
        bookings = {b.reservation_id: b for b in booking_rows.scalars()}

    items = []
    for r in reservations:
        item = ReservationResponse.model_validate(r)
        if r.id in bookings:
            item.booking = BookingResponse.model_validate(bookings[r.id])
        items.append(item)
    return items


# ── Reviews ────────────────────────────────────────────────────────────────────

@router.get("/reviews", response_model=List[ReviewResponse])
async def list_reviews(
    review_status: Optional[ReviewStatus] = Query(None, alias="status"),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    query = select(Review)
    if review_status:
        query = query.where(Review.status == review_status)
    result = await db.execute(query.order_by(Review.created_at.desc()))
    return [ReviewResponse.model_validate(r) for r in result.scalars()]


@router.patch("/reviews/{review_id}", response_model=ReviewResponse)
async def update_review_status(
    review_id: UUID,
    data: ReviewStatusUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Publish, hide or mark a review as reported; the guide's rating follows."""
    review = await _get_or_404(db, Review, Review.id, review_id, "Review")
    previous = ReviewStatus(review.status)
    review.status = ReviewStatus(data.status)
    await db.flush()

    await recalculate_guide_rating(db, review.subject_user_id)
    await _log(db, current_user, "UPDATE_REVIEW_STATUS", "Review", str(review_id),
               {"from": previous.value, "to": review.status.value}, request)
    await db.commit()
    return ReviewResponse.model_validate(review)


# ── Reports ────────────────────────────────────────────────────────────────────

@router.get("/reports", response_model=List[ReportResponse])
async def list_reports(
    report_status: Optional[ReportStatus] = Query(None, alias="status"),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    query = select(Report)
    if report_status:
        query = query.where(Report.status == report_status)
    result = await db.execute(query.order_by(Report.created_at.asc()))
    return [ReportResponse.model_validate(r) for r in result.scalars()]


@router.patch("/reports/{report_id}", response_model=ReportResponse)
async def resolve_report(
    report_id: UUID,
    data: ReportResolveRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    report = await _get_or_404(db, Report, Report.id, report_id, "Report")
    if report.status == ReportStatus.CLOSED:
        raise HTTPException(status_code=409, detail="Report is already closed")

    report.status = ReportStatus.CLOSED
    report.resolved_by = current_user.id
    report.resolution_note = data.resolution_note

    await _log(db, current_user, "RESOLVE_REPORT", "Report", str(report_id),
               {"note": data.resolution_note}, request)
    await db.commit()
    return ReportResponse.model_validate(report)


# ── Cities ─────────────────────────────────────────────────────────────────────

@router.get("/cities", response_model=List[CityResponse])
async def list_cities(
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(City).order_by(City.name.asc()))
    return [CityResponse.model_validate(c) for c in result.scalars()]


@router.post("/cities", response_model=CityResponse, status_code=status.HTTP_201_CREATED)
async def create_city(
    data: CityCreateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if await db.scalar(select(City.id).where(City.slug == data.slug)):
        raise HTTPException(status_code=409, detail="A city with this slug already exists")

    city = City(**data.model_dump())
    city.country_code = city.country_code.upper()
    db.add(city)
    await db.flush()

    await _log(db, current_user, "CREATE_CITY", "City", str(city.id), {"slug": city.slug}, request)
    await db.commit()
    return CityResponse.model_validate(city)


@router.patch("/cities/{city_id}", response_model=CityResponse)
async def update_city(
    city_id: UUID,
    data: CityUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    city = await _get_or_404(db, City, City.id, city_id, "City")
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(city, field, value.upper() if field == "country_code" else value)

    await _log(db, current_user, "UPDATE_CITY", "City", str(city_id), changes, request)
    await db.commit()
    return CityResponse.model_validate(city)


@router.delete("/cities/{city_id}", response_model=MessageResponse)
async def delete_city(
    city_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Guides keep their city name and slug; only the link is cleared."""
    city = await _get_or_404(db, City, City.id, city_id, "City")
    await _log(db, current_user, "DELETE_CITY", "City", str(city_id), {"slug": city.slug}, request)
    await db.delete(city)
    await db.commit()
    return MessageResponse(message="City deleted")


# ── Audit Log ──────────────────────────────────────────────────────────────────

@router.get("/audit-logs", response_model=List[AuditLogResponse])
async def list_audit_logs(
    entity_type: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(AdminAuditLog)
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)
    result = await db.execute(query.order_by(AdminAuditLog.created_at.desc()).limit(limit))
    return [AuditLogResponse.model_validate(log) for log in result.scalars()]
