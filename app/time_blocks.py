import logging
import uuid
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.errors import InvalidRequest, TimeBlockNotFound
from app.models import PaymentStatus, Reservation, Sport, TimeBlock
from app.schedule import overlaps, parse_time

logger = logging.getLogger(__name__)


def create_time_block(
    db: Session,
    sport: Sport,
    day: date,
    start_time: str,
    end_time: str,
    reason: str | None,
    now: datetime,
    created_by: str = "Admin",
) -> TimeBlock:
    start_minute = parse_time(start_time)
    end_minute = parse_time(end_time)
    if end_minute <= start_minute:
        raise InvalidRequest("Block end time must be after its start time.")

    block = TimeBlock(
        id=str(uuid.uuid4()),
        sport=sport.value,
        block_date=day,
        start_minute=start_minute,
        end_minute=end_minute,
        reason=reason,
        created_by=created_by,
        created_at=now,
    )
    db.add(block)

    # Existing bookings are left alone; the block only stops new ones.
    clashing = [
        r.id for r in db.scalars(
            select(Reservation).where(
                Reservation.sport == sport.value,
                Reservation.booking_date == day,
                Reservation.payment_status != PaymentStatus.FAILED.value,
            )
        )
        if overlaps(start_minute, end_minute, r.start_minute, r.end_minute)
    ]
    db.commit()

    if clashing:
        logger.warning(f"⚠️ Time block {block.id} overlaps active reservations: {', '.join(clashing)}")
    logger.info(f"Blocked {sport.value} {day} {start_time}-{end_time}")
    return block


def list_time_blocks(db: Session, sport: Sport | None = None, day: date | None = None) -> list[TimeBlock]:
    stmt = select(TimeBlock).order_by(TimeBlock.block_date, TimeBlock.start_minute)
    if sport is not None:
        stmt = stmt.where(TimeBlock.sport == sport.value)
    if day is not None:
        stmt = stmt.where(TimeBlock.block_date == day)
    return list(db.scalars(stmt).all())


def delete_time_block(db: Session, block_id: str) -> None:
    block = db.get(TimeBlock, block_id)
    if block is None:
        raise TimeBlockNotFound(block_id)
    db.delete(block)
    db.commit()
    logger.info(f"Time block {block_id} removed")
