import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import FRONTEND_URL, PAYMENT_CURRENCY
from app.errors import AlreadyFinalized, GatewayUnavailable
from app.gateway import ReturnUrls
from app.models import PaymentStatus, PaymentTransaction, Reservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedIntent:
    reservation_id: str
    redirect_url: str
    transaction_id: str
    preference_id: str


def default_return_urls(base_url: Optional[str] = None) -> ReturnUrls:
    base = (base_url or FRONTEND_URL).rstrip("/")
    return ReturnUrls(
        success=f"{base}/payment/success",
        failure=f"{base}/payment/failure",
        pending=f"{base}/payment/pending",
    )


def get_transaction(db: Session, reservation_id: str) -> Optional[PaymentTransaction]:
    return db.scalars(
        select(PaymentTransaction).where(PaymentTransaction.reservation_id == reservation_id)
    ).first()


def upsert_transaction(
    db: Session,
    reservation_id: str,
    values: dict,
    now: datetime,
    on_insert: Optional[dict] = None,
) -> PaymentTransaction:
    """
    Write ``values`` onto the reservation's single transaction row, creating it
    if needed. ``on_insert`` fields only apply to a new row.
    """
    for attempt in range(2):
        tx = get_transaction(db, reservation_id)
        if tx is None:
            tx = PaymentTransaction(
                id=str(uuid.uuid4()),
                reservation_id=reservation_id,
                created_at=now,
                **(on_insert or {}),
            )
            db.add(tx)
        for key, value in values.items():
            setattr(tx, key, value)
        tx.updated_at = now
        try:
            db.commit()
            return tx
        except IntegrityError:
            # another request inserted the row first; update it instead
            db.rollback()
            if attempt:
                raise
    raise AssertionError("unreachable")


def issue_intent(
    db: Session,
    gateway,
    reservation: Reservation,
    now: datetime,
    return_urls: Optional[ReturnUrls] = None,
    currency: str = PAYMENT_CURRENCY,
) -> IssuedIntent:
    """
    Open a gateway checkout for a pending reservation.

    The reservation id is the correlation key the gateway echoes back on the
    payment record. On GatewayUnavailable nothing is written and the
    reservation stays pending, so the call can simply be repeated.
    """
    if reservation.payment_status != PaymentStatus.PENDING.value:
        raise AlreadyFinalized(reservation.id, reservation.payment_status)

    reservation_id = reservation.id
    amount = reservation.amount
    payer = {"name": reservation.customer_name, "phone": {"number": reservation.customer_phone}}
    if reservation.customer_email:
        payer["email"] = reservation.customer_email
    title = f"Reserva de {reservation.sport}"
    description = (
        f"{reservation.booking_date.isoformat()} a las {reservation.start_time}"
        f" - {reservation.duration_minutes} minutos"
    )
    # don't hold a database transaction open across the network call
    db.rollback()

    try:
        intent = gateway.create_intent(
            title=title,
            description=description,
            amount=amount,
            currency=currency,
            correlation_key=reservation_id,
            return_urls=return_urls or default_return_urls(),
            payer=payer,
        )
    except GatewayUnavailable as e:
        logger.error(f"❌ Payment intent for reservation {reservation_id} failed: {e.detail}")
        raise

    tx = upsert_transaction(
        db,
        reservation_id,
        {"preference_id": intent.intent_id},
        now,
        on_insert={"amount": amount, "currency": currency, "status": "pending"},
    )
    logger.info(f"✅ Preference {intent.intent_id} issued for reservation {reservation_id}")
    return IssuedIntent(
        reservation_id=reservation_id,
        redirect_url=intent.redirect_url,
        transaction_id=tx.id,
        preference_id=intent.intent_id,
    )
