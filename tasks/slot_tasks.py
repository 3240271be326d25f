"""
tasks/slot_tasks.py
Celery tasks for availability slot housekeeping.

A reservation against a slot holds it in `pending`. If the guide has not
answered within SLOT_HOLD_MINUTES the reservation is cancelled and the
slot goes back to `open`. Running twice has no side effect.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from redis.exceptions import RedisError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from shared.models.models import (
    AvailabilitySlot,
    Booking,
    BookingStatus,
    Reservation,
    ReservationStatus,
    SlotStatus,
)
from shared.utils.dates import utcnow
from shared.utils.slots import SlotTransitionError, transition
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────

def _sync_database_url(url: str) -> str:
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


def _get_sync_session() -> Session:
    """Create a synchronous SQLAlchemy session (Celery runs sync by default)."""
    sync_url = _sync_database_url(settings.DATABASE_URL)
    options = {"pool_pre_ping": True}
    if not settings.is_sqlite:
        options["pool_size"] = 5
    engine = create_engine(sync_url, **options)
    SessionLocal = sessionmaker(bind=engine)
    return SessionLocal()


def release_expired_holds(db: Session, now: Optional[datetime] = None) -> List[Reservation]:
    """
    Cancel pending reservations older than the hold window.
    Returns the reservations that were cancelled. Caller commits, then
    clears their Redis state with clear_released_holds.
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=settings.SLOT_HOLD_MINUTES)

    expired = db.execute(
        select(Reservation).where(
            Reservation.status == ReservationStatus.PENDING,
            Reservation.created_at < cutoff,
        )
    ).scalars().all()

    released = []
    for reservation in expired:
        reservation.status = ReservationStatus.CANCELLED

        booking = db.execute(
            select(Booking).where(Booking.reservation_id == reservation.id)
        ).scalar_one_or_none()
        if booking:
            booking.status = BookingStatus.CANCELLED

        if reservation.slot_id:
            slot = db.execute(
                select(AvailabilitySlot).where(AvailabilitySlot.id == reservation.slot_id)
            ).scalar_one_or_none()
            if slot and slot.status == SlotStatus.PENDING:
                try:
                    transition(slot, SlotStatus.OPEN)
                except SlotTransitionError as e:
                    logger.warning(f"Slot {slot.id} not reopened: {e}")

        released.append(reservation)
        logger.info(f"Auto-cancelled unanswered reservation {reservation.id}")

    return released


def clear_released_holds(redis, released: List[Reservation]) -> None:
    """Drop hold keys and cached availability once the cancellations are committed."""
    try:
        for reservation in released:
            if not reservation.slot_id:
                continue
            redis.delete(f"slot_hold:{reservation.slot_id}")
            for key in redis.scan_iter(f"availability:{reservation.guide_id}:*"):
                redis.delete(key)
    except RedisError as e:
        # Both expire on their own TTL
        logger.warning(f"Slot hold cleanup failed: {e}")


# ── Beat Tasks ─────────────────────────────────────────────────────────────────

@celery_app.task
def release_expired_slot_holds():
    """Beat task: runs every 5 minutes."""
    import redis as redis_lib

    db = _get_sync_session()
    r = redis_lib.from_url(settings.REDIS_URL, decode_responses=True)

    try:
        released = release_expired_holds(db)
        db.commit()
        clear_released_holds(r, released)
        logger.info(f"release_expired_slot_holds: released {len(released)} reservations")
        return len(released)
    except Exception as e:
        db.rollback()
        logger.exception(f"release_expired_slot_holds failed: {e}")
        raise
    finally:
        db.close()
        r.close()
