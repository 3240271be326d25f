"""
shared/models/models.py
All SQLAlchemy ORM models for the Rainbow Tour Guides marketplace.
UUID primary keys throughout; JSON columns become JSONB on PostgreSQL.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base
from shared.utils.dates import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type[PyEnum]) -> Enum:
    """Store enum values (lowercase wire names), not member names."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    TRAVELER = "traveler"
    GUIDE = "guide"
    ADMIN = "admin"
    SUPPORT = "support"
    MODERATOR = "moderator"


class UserStatus(str, PyEnum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class SlotStatus(str, PyEnum):
    OPEN = "open"
    PENDING = "pending"
    BOOKED = "booked"
    CLOSED = "closed"


class ReservationStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class BookingStatus(str, PyEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ReviewStatus(str, PyEnum):
    PUBLISHED = "published"
    HIDDEN = "hidden"
    REPORTED = "reported"


class ReportType(str, PyEnum):
    PROFILE = "profile"
    REVIEW = "review"
    MESSAGE = "message"


class ReportStatus(str, PyEnum):
    OPEN = "open"
    CLOSED = "closed"


class LoyaltyTier(str, PyEnum):
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """Account for every role. Profiles hang off it one-to-one."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    role: Mapped[UserRole] = mapped_column(_enum(UserRole), nullable=False, default=UserRole.TRAVELER)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[UserStatus] = mapped_column(
        _enum(UserStatus), nullable=False, default=UserStatus.ACTIVE
    )
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    banned_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.display_name} ({self.role})>"


class TravelerProfile(TimestampMixin, Base):
    __tablename__ = "traveler_profiles"

    uid: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    home_country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    preferred_language: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rating_avg: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=0)
    rating_count: Mapped[int] = mapped_column(Integer, default=0)

    # Loyalty program
    loyalty_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    loyalty_tier: Mapped[LoyaltyTier] = mapped_column(
        _enum(LoyaltyTier), default=LoyaltyTier.BRONZE, nullable=False
    )


class City(TimestampMixin, Base):
    __tablename__ = "cities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    country_code: Mapped[str] = mapped_column(String(2), nullable=False)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class GuideProfile(TimestampMixin, Base):
    """
    Guide's public profile. Keyed by the owning user's id.
    Rating aggregates are denormalized from published reviews.
    """
    __tablename__ = "guide_profiles"

    uid: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    handle: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    avatar_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Location
    city: Mapped[str] = mapped_column(String(100), nullable=False)
    city_slug: Mapped[str] = mapped_column(String(100), nullable=False)
    city_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("cities.id", ondelete="SET NULL"), nullable=True
    )
    country: Mapped[str] = mapped_column(String(100), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")

    bio: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tagline: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    years_experience: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    languages: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    themes: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    photos: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)

    # Pricing
    prices: Mapped[dict] = mapped_column(JSONType, nullable=False)
    # e.g. {"h4": 100, "h6": 140, "h8": 180, "currency": "USD"}
    base_rate_hour: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    max_group_size: Mapped[int] = mapped_column(Integer, default=6, nullable=False)

    # Rating (denormalized for query performance)
    rating_avg: Mapped[Decimal] = mapped_column(Numeric(3, 2), default=0)
    rating_count: Mapped[int] = mapped_column(Integer, default=0)

    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    meetup_pref: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    social_links: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    onboarding_step: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)

    __table_args__ = (
        Index("ix_guide_profiles_city_slug", "city_slug"),
    )


class AvailabilitySlot(TimestampMixin, Base):
    """
    A bookable window published by a guide.
    Status moves open → pending → booked, with pending → open on release
    and open|booked → closed when the guide closes it.
    """
    __tablename__ = "availability_slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("guide_profiles.uid", ondelete="CASCADE"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_hours: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    status: Mapped[SlotStatus] = mapped_column(
        _enum(SlotStatus), nullable=False, default=SlotStatus.OPEN
    )

    __table_args__ = (
        CheckConstraint("duration_hours IN (4, 6, 8)", name="ck_slot_duration_tier"),
        Index("ix_slots_guide_start", "guide_id", "start_time"),
        Index("ix_slots_status", "status"),
    )


class Reservation(TimestampMixin, Base):
    """
    Traveler's priced request against a guide. Carries the computed money
    fields; the sessions themselves live on the linked Booking.
    """
    __tablename__ = "reservations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    traveler_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("guide_profiles.uid"), nullable=False
    )
    slot_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("availability_slots.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[ReservationStatus] = mapped_column(
        _enum(ReservationStatus), nullable=False, default=ReservationStatus.PENDING
    )

    # Pricing
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    traveler_fee_pct: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_commission_pct: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_commission_min_usd: Mapped[int] = mapped_column(Integer, nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    __table_args__ = (
        Index("ix_reservations_traveler_id", "traveler_id"),
        Index("ix_reservations_guide_id", "guide_id"),
        Index("ix_reservations_status", "status"),
    )


class Booking(TimestampMixin, Base):
    """The concrete sessions of a reservation."""
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reservation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("reservations.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    traveler_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    guide_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("guide_profiles.uid"), nullable=False
    )
    sessions: Mapped[list] = mapped_column(JSONType, nullable=False)
    # e.g. [{"date": "2026-11-02", "start_time": "09:00", "duration_hours": 6}]
    meeting: Mapped[dict] = mapped_column(JSONType, nullable=False)
    itinerary_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    travelers: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=1)
    status: Mapped[BookingStatus] = mapped_column(
        _enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )


class Conversation(TimestampMixin, Base):
    """Opened once a reservation is accepted."""
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reservation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("reservations.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    participant_ids: Mapped[List[str]] = mapped_column(JSONType, nullable=False)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class Message(TimestampMixin, Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)


class Review(TimestampMixin, Base):
    """Post-tour review. One per reservation (enforced by unique constraint)."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    author_user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    reservation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("reservations.id"), unique=True, nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    response_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    response_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    original_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[ReviewStatus] = mapped_column(
        _enum(ReviewStatus), nullable=False, default=ReviewStatus.PUBLISHED
    )

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_subject_user_id", "subject_user_id"),
        Index("ix_reviews_author_user_id", "author_user_id"),
    )


class Report(TimestampMixin, Base):
    """User-submitted moderation report against a profile, review or message."""
    __tablename__ = "reports"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[ReportType] = mapped_column(_enum(ReportType), nullable=False)
    target_id: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    reporter_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    status: Mapped[ReportStatus] = mapped_column(
        _enum(ReportStatus), nullable=False, default=ReportStatus.OPEN
    )
    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    resolution_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class BlogCategory(TimestampMixin, Base):
    __tablename__ = "blog_categories"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class BlogPost(TimestampMixin, Base):
    __tablename__ = "blog_posts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    category_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("blog_categories.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    excerpt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    cover_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    author_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_published: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (Index("ix_blog_posts_published_at", "published_at"),)


class AnnouncementBanner(TimestampMixin, Base):
    __tablename__ = "announcement_banners"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    link_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    link_text: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    variant: Mapped[str] = mapped_column(String(20), default="info", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
