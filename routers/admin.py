from datetime import date, timedelta
from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.config import PENDING_TTL_MINUTES
from app.db import get_db
from app.dependencies import get_clock, require_admin
from app.models import PaymentStatus, Sport, TimeBlock
from app.reservations import (
    Customer, attach_refund, create_reservation, expire_stale_pending, list_reservations,
    reservation_stats, update_notes,
)
from app.schedule import Slot
from app.time_blocks import create_time_block, delete_time_block, list_time_blocks
from routers.reservations import CreateReservationBody, serialize_reservation

router = APIRouter(dependencies=[Depends(require_admin)])

class NotesBody(BaseModel):
    internal_notes: str | None = None

class RefundBody(BaseModel):
    amount: Decimal
    reason: str | None = None

class TimeBlockBody(BaseModel):
    sport: Sport
    date: date
    start_time: str
    end_time: str
    reason: str | None = None

class ExpireBody(BaseModel):
    older_than_minutes: int = Field(default=PENDING_TTL_MINUTES, gt=0)

class AdminReservationBody(CreateReservationBody):
    payment_status: PaymentStatus = PaymentStatus.COMPLETED

def serialize_block(b: TimeBlock) -> dict:
    return {
        "id": b.id,
        "sport": b.sport,
        "date": b.block_date,
        "start_time": b.start_time,
        "end_time": b.end_time,
        "reason": b.reason,
        "created_by": b.created_by,
    }

@router.get("/reservations")
def admin_list_reservations(
    status: PaymentStatus | None = None,
    sport: Sport | None = None,
    day: date | None = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
):
    rows = [serialize_reservation(r, internal=True) for r in list_reservations(db, status, sport, day)]
    db.rollback()
    return rows

@router.post("/reservations", status_code=201)
def admin_create_reservation(
    body: AdminReservationBody,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    slot = Slot.build(body.sport, body.date, body.time, body.duration)
    customer = Customer(body.customer_name, body.customer_phone, body.customer_email)
    reservation = create_reservation(db, slot, customer, body.amount, clock(), status=body.payment_status)
    return serialize_reservation(reservation, internal=True)

@router.patch("/reservations/{reservation_id}/notes")
def admin_update_notes(
    reservation_id: str,
    body: NotesBody,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    reservation = update_notes(db, reservation_id, body.internal_notes, clock())
    return serialize_reservation(reservation, internal=True)

@router.post("/reservations/{reservation_id}/refund")
def admin_refund(
    reservation_id: str,
    body: RefundBody,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    reservation = attach_refund(db, reservation_id, body.amount, body.reason, clock())
    return serialize_reservation(reservation, internal=True)

@router.post("/reservations/expire-stale")
def admin_expire_stale(
    body: ExpireBody | None = None,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    minutes = body.older_than_minutes if body else PENDING_TTL_MINUTES
    expired = expire_stale_pending(db, timedelta(minutes=minutes), clock())
    return {"expired": expired, "count": len(expired)}

@router.get("/stats")
def admin_stats(db: Session = Depends(get_db)):
    stats = reservation_stats(db)
    db.rollback()
    return stats

@router.get("/time-blocks")
def admin_list_time_blocks(
    sport: Sport | None = None,
    day: date | None = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
):
    blocks = [serialize_block(b) for b in list_time_blocks(db, sport, day)]
    db.rollback()
    return blocks

@router.post("/time-blocks", status_code=201)
def admin_create_time_block(
    body: TimeBlockBody,
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    block = create_time_block(db, body.sport, body.date, body.start_time, body.end_time, body.reason, clock())
    return serialize_block(block)

@router.delete("/time-blocks/{block_id}", status_code=204)
def admin_delete_time_block(block_id: str, db: Session = Depends(get_db)):
    delete_time_block(db, block_id)
