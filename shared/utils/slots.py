"""
shared/utils/slots.py
Availability slot rules: status transitions, overlap detection and
calendar grouping by the guide's local date.

    open    → pending   traveler starts a reservation
    pending → booked    guide accepts
    pending → open      reservation cancelled / hold expired
    open    → closed    guide closes the slot
    booked  → closed    guide closes the slot
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.models.models import AvailabilitySlot, SlotStatus
from shared.utils.dates import as_utc

logger = logging.getLogger(__name__)

ALLOWED_DURATIONS = (4, 6, 8)
MAX_DURATION_HOURS = max(ALLOWED_DURATIONS)

SLOT_TRANSITIONS: Dict[SlotStatus, frozenset] = {
    SlotStatus.OPEN: frozenset({SlotStatus.PENDING, SlotStatus.CLOSED}),
    SlotStatus.PENDING: frozenset({SlotStatus.BOOKED, SlotStatus.OPEN}),
    SlotStatus.BOOKED: frozenset({SlotStatus.CLOSED}),
    SlotStatus.CLOSED: frozenset(),
}

# Rendered as final in the calendar
TERMINAL_STATUSES = frozenset({SlotStatus.BOOKED, SlotStatus.CLOSED})


class SlotTransitionError(Exception):
    """Raised when a slot status change is not allowed by the state machine."""

    def __init__(self, current: SlotStatus, target: SlotStatus):
        self.current = SlotStatus(current)
        self.target = SlotStatus(target)
        super().__init__(
            f"Cannot move slot from '{self.current.value}' to '{self.target.value}'"
        )


# ── State Machine ─────────────────────────────────────────────

def can_transition(current: SlotStatus, target: SlotStatus) -> bool:
    return SlotStatus(target) in SLOT_TRANSITIONS[SlotStatus(current)]


def transition(slot: AvailabilitySlot, target: SlotStatus) -> AvailabilitySlot:
    """Move the slot to target in place; raises SlotTransitionError otherwise."""
    if not can_transition(slot.status, target):
        raise SlotTransitionError(slot.status, target)
    slot.status = SlotStatus(target)
    return slot


def can_delete(slot: AvailabilitySlot) -> bool:
    return SlotStatus(slot.status) == SlotStatus.OPEN


# ── Time Windows ──────────────────────────────────────────────

def slot_window(start_time: datetime, duration_hours: int) -> Tuple[datetime, datetime]:
    start = as_utc(start_time)
    return start, start + timedelta(hours=duration_hours)


def windows_overlap(
    a_start: datetime, a_hours: int, b_start: datetime, b_hours: int
) -> bool:
    """Half-open interval test: back-to-back slots do not overlap."""
    a0, a1 = slot_window(a_start, a_hours)
    b0, b1 = slot_window(b_start, b_hours)
    return a0 < b1 and b0 < a1


def find_overlap(
    slots: Iterable[AvailabilitySlot],
    start_time: datetime,
    duration_hours: int,
) -> Optional[AvailabilitySlot]:
    """First non-closed slot whose window intersects the candidate window."""
    for slot in slots:
        if SlotStatus(slot.status) == SlotStatus.CLOSED:
            continue
        if windows_overlap(slot.start_time, slot.duration_hours, start_time, duration_hours):
            return slot
    return None


# ── Calendar Grouping ─────────────────────────────────────────

def guide_zone(tz_name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}, falling back to UTC")
        return ZoneInfo("UTC")


def local_date(start_time: datetime, tz_name: Optional[str]) -> date:
    return as_utc(start_time).astimezone(guide_zone(tz_name)).date()


def group_by_local_date(
    slots: Sequence[AvailabilitySlot], tz_name: Optional[str]
) -> "OrderedDict[date, List[AvailabilitySlot]]":
    """
    Bucket slots by the calendar date of start_time in the guide's timezone.
    The viewer's timezone plays no part. Buckets come out in date order,
    each bucket sorted by start_time ascending.
    """
    zone = guide_zone(tz_name)
    buckets: Dict[date, List[AvailabilitySlot]] = {}
    for slot in slots:
        day = as_utc(slot.start_time).astimezone(zone).date()
        buckets.setdefault(day, []).append(slot)

    grouped: "OrderedDict[date, List[AvailabilitySlot]]" = OrderedDict()
    for day in sorted(buckets):
        grouped[day] = sorted(buckets[day], key=lambda s: as_utc(s.start_time))
    return grouped


def month_bounds(year: int, month: int, tz_name: Optional[str]) -> Tuple[datetime, datetime]:
    """UTC instants covering one calendar month in the guide's timezone, [start, end)."""
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12")
    zone = guide_zone(tz_name)
    start = datetime(year, month, 1, tzinfo=zone)
    end = datetime(year + (month == 12), month % 12 + 1, 1, tzinfo=zone)
    return as_utc(start), as_utc(end)
