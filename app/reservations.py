"""
Reservation lifecycle.

``pending`` -> ``completed`` | ``failed``. Terminal states never reopen; a
failed booking is retried with a brand-new reservation. Every status write
goes through a compare-and-set on the current status so that concurrent
callers agree on exactly one winner.
"""
import logging
import uuid
import zlib
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy import Date, DateTime, Numeric, bindparam, func, select, text
from sqlalchemy.orm import Session

from app.errors import AlreadyFinalized, InvalidRequest, ReservationNotFound, SlotConflict
from app.models import PaymentStatus, Reservation, Sport
from app.schedule import Slot, check_availability, system_clock, validate_slot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Customer:
    name: str
    phone: str
    email: str | None = None


# Single-statement insert guarded by the overlap rule, so the row only lands
# if the interval is still free when the write happens.
_INSERT_IF_FREE = text("""
    INSERT INTO reservations (
        id, sport, booking_date, start_minute, duration_minutes, end_minute,
        customer_name, customer_phone, customer_email, amount,
        payment_status, created_at, updated_at
    )
    SELECT :id, :sport, :booking_date, :start_minute, :duration_minutes, :end_minute,
           :customer_name, :customer_phone, :customer_email, :amount,
           :payment_status, :now, :now
    WHERE NOT EXISTS (
        SELECT 1 FROM reservations r
        WHERE r.sport = :sport
          AND r.booking_date = :booking_date
          AND r.payment_status <> 'failed'
          AND r.start_minute < :end_minute
          AND :start_minute < r.end_minute
    )
    AND NOT EXISTS (
        SELECT 1 FROM time_blocks b
        WHERE b.sport = :sport
          AND b.block_date = :booking_date
          AND b.start_minute < :end_minute
          AND :start_minute < b.end_minute
    )
""").bindparams(
    bindparam("booking_date", type_=Date),
    bindparam("amount", type_=Numeric(10, 2)),
    bindparam("now", type_=DateTime(timezone=True)),
)

_TRANSITION = text("""
    UPDATE reservations
    SET payment_status = :new_status, updated_at = :now
    WHERE id = :id AND payment_status = 'pending'
""").bindparams(bindparam("now", type_=DateTime(timezone=True)))

_ATTACH_REFUND = text("""
    UPDATE reservations
    SET refund_amount = :refund_amount,
        refund_status = 'processed',
        refund_reason = :reason,
        refunded_at = :now,
        internal_notes = :notes,
        updated_at = :now
    WHERE id = :id AND payment_status = 'completed' AND refund_status IS NULL
""").bindparams(
    bindparam("refund_amount", type_=Numeric(10, 2)),
    bindparam("now", type_=DateTime(timezone=True)),
)


def _as_amount(value, field="amount") -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        raise InvalidRequest(f"Invalid {field} {value!r}.") from None
    if amount < 0:
        raise InvalidRequest(f"{field.capitalize()} cannot be negative.")
    return amount


def _lock_day(db: Session, sport: Sport, day: date) -> None:
    """Serialize bookings for one sport/day inside the current transaction.

    SQLite connections already begin with ``BEGIN IMMEDIATE`` (see app.db);
    PostgreSQL takes a transaction-scoped advisory lock instead.
    """
    if db.get_bind().dialect.name == "postgresql":
        key = zlib.crc32(f"{sport.value}:{day.isoformat()}".encode())
        db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})


def create_reservation(
    db: Session,
    slot: Slot,
    customer: Customer,
    amount,
    now: datetime,
    status=PaymentStatus.PENDING,
) -> Reservation:
    """
    Book ``slot`` if it is free.

    Online bookings start ``pending`` and wait for the gateway. Bookings
    taken at the desk (cash, walk-ins) may start ``completed``.
    """
    if not customer.name or not customer.name.strip():
        raise InvalidRequest("Customer name is required.")
    if not customer.phone or not customer.phone.strip():
        raise InvalidRequest("Customer phone is required.")
    amount = _as_amount(amount)
    try:
        status = PaymentStatus(status)
    except ValueError:
        raise InvalidRequest(f"Unknown payment status {status!r}.") from None
    if status is PaymentStatus.FAILED:
        raise InvalidRequest("A reservation cannot be created as failed.")
    validate_slot(slot, now)

    _lock_day(db, slot.sport, slot.day)
    if not check_availability(db, slot, now):
        db.rollback()
        raise SlotConflict(f"{slot.sport.value} {slot.day} {slot.start_time} is not available.")

    reservation_id = str(uuid.uuid4())
    res = db.execute(_INSERT_IF_FREE, {
        "id": reservation_id,
        "sport": slot.sport.value,
        "booking_date": slot.day,
        "start_minute": slot.start_minute,
        "duration_minutes": slot.duration_minutes,
        "end_minute": slot.end_minute,
        "customer_name": customer.name.strip(),
        "customer_phone": customer.phone.strip(),
        "customer_email": customer.email or None,
        "amount": amount,
        "payment_status": status.value,
        "now": now,
    })
    if res.rowcount != 1:
        db.rollback()
        raise SlotConflict(f"{slot.sport.value} {slot.day} {slot.start_time} is not available.")
    db.commit()

    logger.info(
        f"Reservation {reservation_id} created ({status.value}): {slot.sport.value} {slot.day} "
        f"{slot.start_time} +{slot.duration_minutes}min"
    )
    return db.get(Reservation, reservation_id)


def get_reservation(db: Session, reservation_id: str) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if reservation is None:
        raise ReservationNotFound(reservation_id)
    return reservation


def current_status(db: Session, reservation_id: str) -> str | None:
    return db.execute(
        select(Reservation.payment_status).where(Reservation.id == reservation_id)
    ).scalar_one_or_none()


def transition(db: Session, reservation_id: str, new_status, now: datetime | None = None) -> Reservation:
    """
    Move a pending reservation to ``completed`` or ``failed``.

    Exactly one concurrent caller sees the update apply. Everyone else gets
    AlreadyFinalized carrying the status that won.
    """
    try:
        target = PaymentStatus(new_status)
    except ValueError:
        raise InvalidRequest(f"Unknown payment status {new_status!r}.") from None
    if target is PaymentStatus.PENDING:
        raise InvalidRequest("A reservation cannot be moved back to pending.")

    res = db.execute(_TRANSITION, {
        "id": reservation_id,
        "new_status": target.value,
        "now": now or system_clock(),
    })
    if res.rowcount != 1:
        db.rollback()
        status = current_status(db, reservation_id)
        if status is None:
            raise ReservationNotFound(reservation_id)
        raise AlreadyFinalized(reservation_id, status)
    db.commit()

    logger.info(f"Reservation {reservation_id}: pending -> {target.value}")
    return db.get(Reservation, reservation_id)


def attach_refund(db: Session, reservation_id: str, amount, reason: str | None, now: datetime) -> Reservation:
    """Record a processed refund. ``payment_status`` stays ``completed``."""
    reservation = get_reservation(db, reservation_id)
    if reservation.payment_status != PaymentStatus.COMPLETED.value:
        raise InvalidRequest(
            f"Only completed reservations can be refunded (status is {reservation.payment_status})."
        )
    if reservation.refund_status is not None:
        raise AlreadyFinalized(reservation_id, "refunded")

    refund_amount = _as_amount(amount, "refund amount")
    if refund_amount <= 0:
        raise InvalidRequest("Refund amount must be positive.")
    if refund_amount > reservation.amount:
        raise InvalidRequest("Refund amount exceeds the reservation amount.")

    note = f"Refund processed: ${refund_amount}"
    if reason:
        note += f" - {reason}"
    notes = f"{reservation.internal_notes or ''}\n{note}".strip()

    res = db.execute(_ATTACH_REFUND, {
        "id": reservation_id,
        "refund_amount": refund_amount,
        "reason": reason,
        "notes": notes,
        "now": now,
    })
    if res.rowcount != 1:
        # lost a race with another refund
        db.rollback()
        raise AlreadyFinalized(reservation_id, "refunded")
    db.commit()

    logger.info(f"Refund of {refund_amount} attached to reservation {reservation_id}")
    return db.get(Reservation, reservation_id)


def update_notes(db: Session, reservation_id: str, notes: str | None, now: datetime) -> Reservation:
    reservation = get_reservation(db, reservation_id)
    reservation.internal_notes = notes or None
    reservation.updated_at = now
    db.commit()
    return reservation


def list_reservations(
    db: Session,
    status: PaymentStatus | None = None,
    sport: Sport | None = None,
    day: date | None = None,
) -> list[Reservation]:
    stmt = select(Reservation).order_by(Reservation.created_at.desc())
    if status is not None:
        stmt = stmt.where(Reservation.payment_status == status.value)
    if sport is not None:
        stmt = stmt.where(Reservation.sport == sport.value)
    if day is not None:
        stmt = stmt.where(Reservation.booking_date == day)
    return list(db.scalars(stmt).all())


def reservation_stats(db: Session) -> dict:
    """Counts per payment status and revenue from completed bookings."""
    rows = db.execute(
        select(Reservation.payment_status, func.count(Reservation.id), func.sum(Reservation.amount))
        .group_by(Reservation.payment_status)
    ).all()

    stats = {s.value: 0 for s in PaymentStatus}
    revenue = Decimal("0.00")
    for status, count, total in rows:
        stats[status] = count
        if status == PaymentStatus.COMPLETED.value and total is not None:
            revenue = _as_amount(total)
    return {"total": sum(stats.values()), **stats, "total_revenue": revenue}


def expire_stale_pending(db: Session, older_than: timedelta, now: datetime) -> list[str]:
    """
    Fail every reservation still ``pending`` after ``older_than``.

    Goes through ``transition`` so a webhook landing at the same moment still
    produces a single winner.
    """
    cutoff = now - older_than
    stale_ids = db.scalars(
        select(Reservation.id).where(
            Reservation.payment_status == PaymentStatus.PENDING.value,
            Reservation.created_at < cutoff,
        )
    ).all()
    db.rollback()

    expired = []
    for reservation_id in stale_ids:
        try:
            transition(db, reservation_id, PaymentStatus.FAILED, now)
        except AlreadyFinalized:
            continue
        expired.append(reservation_id)

    if expired:
        logger.info(f"Expired {len(expired)} stale pending reservation(s)")
    return expired
