"""
Slot availability.

A slot is a half-open interval ``[start, start + duration)`` on one sport's
court for one day. It is free when it overlaps neither a reservation that has
not failed nor an admin time block. ``pending`` reservations occupy their
interval so a slot is never offered while someone is mid-checkout.

Everything here is a pure function of its inputs plus an injected clock.
"""
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, Iterable
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import BUSINESS_TIMEZONE
from app.errors import InvalidRequest
from app.models import PaymentStatus, Reservation, Sport, TimeBlock, format_minute

BUSINESS_TZ = ZoneInfo(BUSINESS_TIMEZONE)

# Bookable start times, 08:00 through 22:00 on the hour
SLOT_GRID = tuple(hour * 60 for hour in range(8, 23))
MINUTES_PER_DAY = 24 * 60

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(BUSINESS_TZ)


def parse_time(value: str) -> int:
    """``"14:30"`` -> 870."""
    try:
        hours, minutes = value.split(":")
        parsed = time(int(hours), int(minutes))
    except (AttributeError, ValueError):
        raise InvalidRequest(f"Invalid time {value!r}, expected HH:MM.") from None
    return parsed.hour * 60 + parsed.minute


def parse_sport(value) -> Sport:
    try:
        return Sport(value)
    except ValueError:
        raise InvalidRequest(f"Unknown sport {value!r}.") from None


def overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and b_start < a_end


@dataclass(frozen=True)
class Slot:
    sport: Sport
    day: date
    start_minute: int
    duration_minutes: int

    @classmethod
    def build(cls, sport, day: date, start_time: str, duration_minutes: int) -> "Slot":
        return cls(parse_sport(sport), day, parse_time(start_time), duration_minutes)

    @property
    def end_minute(self) -> int:
        return self.start_minute + self.duration_minutes

    @property
    def start_time(self) -> str:
        return format_minute(self.start_minute)

    def starts_at(self, tz) -> datetime:
        return datetime.combine(self.day, time(self.start_minute // 60, self.start_minute % 60), tzinfo=tz)


def validate_slot(slot: Slot, now: datetime) -> None:
    if slot.start_minute not in SLOT_GRID:
        raise InvalidRequest(f"{slot.start_time} is not a bookable start time.")
    if not isinstance(slot.duration_minutes, int) or slot.duration_minutes <= 0:
        raise InvalidRequest("Duration must be a positive number of minutes.")
    if slot.end_minute > MINUTES_PER_DAY:
        raise InvalidRequest("A booking cannot run past midnight.")
    if slot.starts_at(BUSINESS_TZ) <= now:
        raise InvalidRequest(f"{slot.day} {slot.start_time} is in the past.")


def _conflicts(slot: Slot, reservations: Iterable, blocks: Iterable) -> str | None:
    for r in reservations:
        if r.sport != slot.sport.value or r.booking_date != slot.day:
            continue
        if r.payment_status == PaymentStatus.FAILED.value:
            continue
        if overlaps(slot.start_minute, slot.end_minute, r.start_minute, r.end_minute):
            return "RESERVED"
    for b in blocks:
        if b.sport != slot.sport.value or b.block_date != slot.day:
            continue
        if overlaps(slot.start_minute, slot.end_minute, b.start_minute, b.end_minute):
            return "BLOCKED"
    return None


def is_available(slot: Slot, reservations: Iterable, blocks: Iterable, now: datetime) -> bool:
    """
    Is ``slot`` free given the existing ``reservations`` and ``blocks``?

    Raises InvalidRequest for off-grid starts, non-positive durations and
    slots that are not in the future relative to ``now``.
    """
    validate_slot(slot, now)
    return _conflicts(slot, reservations, blocks) is None


def _load_day(db: Session, sport: Sport, day: date):
    reservations = db.scalars(
        select(Reservation).where(Reservation.sport == sport.value, Reservation.booking_date == day)
    ).all()
    blocks = db.scalars(
        select(TimeBlock).where(TimeBlock.sport == sport.value, TimeBlock.block_date == day)
    ).all()
    return reservations, blocks


def check_availability(db: Session, slot: Slot, now: datetime) -> bool:
    reservations, blocks = _load_day(db, slot.sport, slot.day)
    return is_available(slot, reservations, blocks, now)


def list_day(db: Session, sport: Sport, day: date, duration_minutes: int, now: datetime) -> list[dict]:
    """Status of every grid start time for ``sport`` on ``day``."""
    if duration_minutes <= 0:
        raise InvalidRequest("Duration must be a positive number of minutes.")
    reservations, blocks = _load_day(db, sport, day)

    results = []
    for start in SLOT_GRID:
        slot = Slot(sport, day, start, duration_minutes)
        if slot.starts_at(BUSINESS_TZ) <= now:
            status = "PAST"
        elif slot.end_minute > MINUTES_PER_DAY:
            status = "UNAVAILABLE"
        else:
            status = _conflicts(slot, reservations, blocks) or "AVAILABLE"
        results.append({
            "time": slot.start_time,
            "end_time": format_minute(slot.end_minute % MINUTES_PER_DAY),
            "status": status,
        })
    return results
