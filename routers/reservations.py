from datetime import date
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.db import get_db
from app.dependencies import get_clock, get_gateway
from app.errors import GatewayUnavailable
from app.models import Reservation, Sport
from app.payments import issue_intent
from app.reservations import Customer, create_reservation, get_reservation
from app.schedule import Slot

router = APIRouter()

class CreateReservationBody(BaseModel):
    sport: Sport
    date: date
    time: str
    duration: int
    customer_name: str
    customer_phone: str
    customer_email: str | None = None
    amount: Decimal

def serialize_reservation(r: Reservation, internal: bool = False) -> dict:
    data = {
        "id": r.id,
        "sport": r.sport,
        "date": r.booking_date,
        "time": r.start_time,
        "end_time": r.end_time,
        "duration": r.duration_minutes,
        "customer_name": r.customer_name,
        "customer_phone": r.customer_phone,
        "customer_email": r.customer_email,
        "amount": r.amount,
        "payment_status": r.payment_status,
        "created_at": r.created_at,
    }
    if internal:
        data.update({
            "internal_notes": r.internal_notes,
            "refund_amount": r.refund_amount,
            "refund_status": r.refund_status,
            "refund_reason": r.refund_reason,
            "refunded_at": r.refunded_at,
            "updated_at": r.updated_at,
        })
    return data

def _issue(db: Session, gateway, reservation: Reservation, now):
    reservation_id = reservation.id
    try:
        issued = issue_intent(db, gateway, reservation, now)
    except GatewayUnavailable as e:
        # reservation stays pending; the client retries via /reservations/{id}/payment
        raise HTTPException(
            status_code=502,
            detail={"message": e.detail, "reservation_id": reservation_id, "payment_status": "pending"},
        ) from None
    return {
        "reservation_id": issued.reservation_id,
        "init_point": issued.redirect_url,
        "preference_id": issued.preference_id,
        "transaction_id": issued.transaction_id,
        "payment_status": "pending",
    }

@router.post("", status_code=201)
def create(
    body: CreateReservationBody,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    clock=Depends(get_clock),
):
    """
    Book a slot and open its checkout.

    The reservation is created ``pending`` (which already occupies the slot)
    and a gateway preference is issued for it. Returns the ``init_point`` the
    customer is redirected to.
    """
    now = clock()
    slot = Slot.build(body.sport, body.date, body.time, body.duration)
    customer = Customer(body.customer_name, body.customer_phone, body.customer_email)
    reservation = create_reservation(db, slot, customer, body.amount, now)
    return _issue(db, gateway, reservation, now)

@router.post("/{reservation_id}/payment")
def retry_payment(
    reservation_id: str,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    clock=Depends(get_clock),
):
    reservation = get_reservation(db, reservation_id)
    return _issue(db, gateway, reservation, clock())

@router.get("/{reservation_id}")
def read(reservation_id: str, db: Session = Depends(get_db)):
    reservation = get_reservation(db, reservation_id)
    data = serialize_reservation(reservation)
    db.rollback()
    return data
