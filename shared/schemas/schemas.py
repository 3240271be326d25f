"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
Request bodies accept the camelCase field names of the public API as well
as snake_case; responses are snake_case.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    PlainSerializer,
    field_validator,
)
from pydantic.alias_generators import to_camel

from shared.models.models import (
    BookingStatus,
    LoyaltyTier,
    ReportStatus,
    ReportType,
    ReservationStatus,
    ReviewStatus,
    SlotStatus,
    UserRole,
    UserStatus,
)
from shared.utils.dates import as_utc

# Decimal internally, JSON number on the wire
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

Duration = Literal[4, 6, 8]
Language = Literal["en", "es", "fr", "de", "pt"]
Currency = Literal["USD", "EUR", "GBP", "AUD"]


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    @field_validator("*", mode="after")
    @classmethod
    def utc_datetimes(cls, v: Any) -> Any:
        # SQLite hands back naive values; every stored instant is UTC
        return as_utc(v) if isinstance(v, datetime) else v


class RequestSchema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )


# ── Pricing ───────────────────────────────────────────────────

class PriceBreakdown(BaseSchema):
    """Derived from base_rate_hour at request time, never stored."""
    model_config = ConfigDict(frozen=True)

    subtotal: Money
    discount: Money
    discount_percentage: int
    total: Money
    currency: str = "USD"


class QuoteResponse(BaseSchema):
    guide_id: uuid.UUID
    handle: str
    duration_hours: int
    travelers: int
    description: str
    formatted_total: str
    price: PriceBreakdown


# ── Auth ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: Optional[EmailStr] = None
    role: UserRole
    display_name: str
    avatar_url: Optional[str] = None
    status: UserStatus
    verified: bool
    banned_until: Optional[datetime] = None
    created_at: datetime


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserResponse


class DemoUsersResponse(BaseSchema):
    travelers: List[UserResponse]
    guides: List[UserResponse]
    admins: List[UserResponse]


class DemoLoginRequest(RequestSchema):
    """Log in as an existing user, or create one with a role and display name."""
    role: Literal["traveler", "guide", "admin"] = "traveler"
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    user_id: Optional[uuid.UUID] = None


# ── Availability ──────────────────────────────────────────────

class SlotCreateRequest(RequestSchema):
    guide_id: uuid.UUID
    start_time: datetime
    duration_hours: Duration

    @field_validator("start_time")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("start_time must include a UTC offset")
        return v


class SlotUpdateRequest(RequestSchema):
    """Status change, reschedule of an open slot, or both."""
    status: Optional[SlotStatus] = None
    start_time: Optional[datetime] = None
    duration_hours: Optional[Duration] = None

    @field_validator("start_time")
    @classmethod
    def require_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("start_time must include a UTC offset")
        return v


class SlotResponse(BaseSchema):
    id: uuid.UUID
    guide_id: uuid.UUID
    start_time: datetime
    duration_hours: int
    status: SlotStatus
    created_at: datetime
    updated_at: datetime


class CalendarDay(BaseSchema):
    date: date
    slots: List[SlotResponse]


class CalendarResponse(BaseSchema):
    guide_id: uuid.UUID
    year: int
    month: int
    timezone: str
    days: List[CalendarDay]


# ── Guide ─────────────────────────────────────────────────────

class GuideResponse(BaseSchema):
    uid: uuid.UUID
    handle: str
    display_name: str
    avatar_url: Optional[str] = None
    city: str
    city_slug: str
    country: str
    timezone: str
    bio: str
    tagline: Optional[str] = None
    years_experience: Optional[int] = None
    languages: List[str]
    themes: List[str]
    photos: List[str]
    prices: Dict[str, Any]
    base_rate_hour: Optional[Money] = None
    max_group_size: int
    rating_avg: Money
    rating_count: int
    verified: bool
    meetup_pref: Optional[Dict[str, Any]] = None
    social_links: Optional[Dict[str, Any]] = None


class GuideDetailResponse(GuideResponse):
    price_breakdowns: Dict[str, PriceBreakdown] = {}


class GuideUpsertRequest(RequestSchema):
    handle: Optional[str] = Field(None, min_length=2, max_length=100, pattern=r"^[a-z0-9-]+$")
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    avatar_url: Optional[str] = None
    city: Optional[str] = Field(None, max_length=100)
    city_slug: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = Field(None, max_length=100)
    timezone: Optional[str] = Field(None, max_length=64)
    bio: Optional[str] = Field(None, max_length=5000)
    tagline: Optional[str] = Field(None, max_length=255)
    years_experience: Optional[int] = Field(None, ge=0, le=70)
    languages: Optional[List[str]] = None
    themes: Optional[List[str]] = None
    photos: Optional[List[str]] = None
    prices: Optional[Dict[str, Any]] = None
    base_rate_hour: Optional[Decimal] = Field(None, gt=0)
    max_group_size: Optional[int] = Field(None, ge=1, le=50)
    meetup_pref: Optional[Dict[str, Any]] = None
    social_links: Optional[Dict[str, Any]] = None
    onboarding_step: Optional[int] = Field(None, ge=0, le=10)


# ── Traveler ──────────────────────────────────────────────────

class TravelerResponse(BaseSchema):
    uid: uuid.UUID
    display_name: str
    avatar_url: Optional[str] = None
    home_country: Optional[str] = None
    preferred_language: Optional[str] = None
    bio: Optional[str] = None
    rating_avg: Money
    rating_count: int
    loyalty_points: int
    loyalty_tier: LoyaltyTier


class TravelerUpsertRequest(RequestSchema):
    display_name: Optional[str] = Field(None, min_length=1, max_length=255)
    avatar_url: Optional[str] = None
    home_country: Optional[str] = Field(None, max_length=100)
    preferred_language: Optional[Language] = None
    bio: Optional[str] = Field(None, max_length=2000)


class LoyaltySummary(BaseSchema):
    uid: uuid.UUID
    points: int
    tier: str
    next_tier: Optional[str] = None
    points_to_next_tier: Optional[int] = None


# ── City ──────────────────────────────────────────────────────

class CityResponse(BaseSchema):
    id: uuid.UUID
    name: str
    slug: str
    country_code: str
    country: Optional[str] = None
    timezone: str
    lat: Optional[float] = None
    lng: Optional[float] = None


class CityDetailResponse(CityResponse):
    guide_count: int
    guides: List[GuideResponse]


class CityCreateRequest(RequestSchema):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=255, pattern=r"^[a-z0-9-]+$")
    country_code: str = Field(..., min_length=2, max_length=2)
    country: Optional[str] = Field(None, max_length=100)
    timezone: str = Field("UTC", max_length=64)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class CityUpdateRequest(RequestSchema):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    country_code: Optional[str] = Field(None, min_length=2, max_length=2)
    country: Optional[str] = Field(None, max_length=100)
    timezone: Optional[str] = Field(None, max_length=64)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


# ── Reservation ───────────────────────────────────────────────

class SessionSchema(RequestSchema):
    date: date
    start_time: str = Field(..., pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="HH:MM")
    duration_hours: Duration


class MeetingSchema(RequestSchema):
    type: Literal["meet_at_location", "pickup", "virtual"] = "meet_at_location"
    address: Optional[str] = Field(None, max_length=500)


class ReservationCreateRequest(RequestSchema):
    guide_id: uuid.UUID
    slot_id: Optional[uuid.UUID] = None
    sessions: List[SessionSchema] = Field(..., min_length=1, max_length=10)
    meeting: MeetingSchema
    itinerary_note: Optional[str] = Field(None, max_length=2000)
    travelers: int = Field(1, ge=1, le=50)


class ReservationStatusUpdate(RequestSchema):
    status: ReservationStatus


class BookingResponse(BaseSchema):
    id: uuid.UUID
    reservation_id: uuid.UUID
    traveler_id: uuid.UUID
    guide_id: uuid.UUID
    sessions: List[Dict[str, Any]]
    meeting: Dict[str, Any]
    itinerary_note: Optional[str] = None
    travelers: int
    status: BookingStatus
    created_at: datetime


class ReservationResponse(BaseSchema):
    id: uuid.UUID
    traveler_id: uuid.UUID
    guide_id: uuid.UUID
    slot_id: Optional[uuid.UUID] = None
    status: ReservationStatus
    currency: str
    subtotal: Money
    discount: Money
    traveler_fee_pct: int
    platform_commission_pct: int
    platform_commission_min_usd: int
    total: Money
    created_at: datetime
    updated_at: datetime
    booking: Optional[BookingResponse] = None


# ── Conversation ──────────────────────────────────────────────

class ConversationResponse(BaseSchema):
    id: uuid.UUID
    reservation_id: uuid.UUID
    participant_ids: List[str]
    last_message_at: Optional[datetime] = None
    created_at: datetime


class ChatMessageCreateRequest(RequestSchema):
    text: str = Field(..., min_length=1, max_length=2000)


class ChatMessageResponse(BaseSchema):
    id: uuid.UUID
    conversation_id: uuid.UUID
    sender_id: uuid.UUID
    text: str
    created_at: datetime


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(RequestSchema):
    reservation_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    text: str = Field(..., min_length=1, max_length=2000)


class ReviewUpdateRequest(RequestSchema):
    """Author edits rating/text; the reviewed guide sets response_text."""
    rating: Optional[int] = Field(None, ge=1, le=5)
    text: Optional[str] = Field(None, min_length=1, max_length=2000)
    response_text: Optional[str] = Field(None, min_length=1, max_length=2000)


class ReviewStatusUpdate(RequestSchema):
    status: ReviewStatus


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    subject_user_id: uuid.UUID
    author_user_id: uuid.UUID
    reservation_id: uuid.UUID
    rating: int
    text: str
    response_text: Optional[str] = None
    response_at: Optional[datetime] = None
    original_text: Optional[str] = None
    edited_at: Optional[datetime] = None
    status: ReviewStatus
    created_at: datetime


# ── Report ────────────────────────────────────────────────────

class ReportCreateRequest(RequestSchema):
    type: ReportType
    target_id: str = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=5, max_length=2000)


class ReportResolveRequest(RequestSchema):
    resolution_note: str = Field(..., min_length=1, max_length=2000)


class ReportResponse(BaseSchema):
    id: uuid.UUID
    type: ReportType
    target_id: str
    reason: str
    reporter_id: uuid.UUID
    status: ReportStatus
    resolved_by: Optional[uuid.UUID] = None
    resolution_note: Optional[str] = None
    created_at: datetime


# ── Admin ─────────────────────────────────────────────────────

class AdminUserStatusUpdate(RequestSchema):
    status: UserStatus
    banned_until: Optional[datetime] = None


class AdminGuideVerifyRequest(RequestSchema):
    verified: bool


class AuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    created_at: datetime


class AdminStatsResponse(BaseSchema):
    total_users: int
    total_guides: int
    verified_guides: int
    total_reservations: int
    pending_reservations: int
    open_reports: int
    avg_guide_rating: float


# ── Content ───────────────────────────────────────────────────

class BlogCategoryResponse(BaseSchema):
    id: uuid.UUID
    name: str
    slug: str
    description: Optional[str] = None


class BlogPostSummary(BaseSchema):
    id: uuid.UUID
    category_id: Optional[uuid.UUID] = None
    title: str
    slug: str
    excerpt: Optional[str] = None
    cover_image_url: Optional[str] = None
    author_name: Optional[str] = None
    is_featured: bool
    published_at: Optional[datetime] = None
    view_count: int


class BlogPostResponse(BlogPostSummary):
    body: str


class BannerResponse(BaseSchema):
    id: uuid.UUID
    message: str
    link_url: Optional[str] = None
    link_text: Optional[str] = None
    variant: str
    priority: int
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


# ── Preferences & Consent ─────────────────────────────────────

class UserPreferences(BaseSchema):
    language: Language = "en"
    currency: Currency = "USD"


class PreferencesUpdateRequest(RequestSchema):
    language: Optional[Language] = None
    currency: Optional[Currency] = None


class PreferencesResponse(UserPreferences):
    currency_symbol: str
    exchange_rate: float


class CookiePreferences(BaseSchema):
    essential: bool = True
    analytics: bool = False
    marketing: bool = False
    preferences: bool = False

    @field_validator("essential", mode="before")
    @classmethod
    def essential_always_on(cls, v: Any) -> bool:
        return True


class ConsentRecord(BaseSchema):
    version: str
    timestamp: int  # epoch milliseconds
    preferences: CookiePreferences


class ConsentStatusResponse(BaseSchema):
    has_consented: bool
    show_banner: bool
    consent: Optional[ConsentRecord] = None
    scripts: List[str] = []


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
