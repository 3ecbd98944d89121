"""
Payment notification reconciliation.

A gateway notification is only a hint that *something* changed for a payment
id. The body is never trusted for status: the payment is always re-read from
the gateway, and the reservation id comes back as the payment's
``external_reference``. The transition itself is a compare-and-set in
app.reservations, so duplicates and concurrent deliveries collapse into a
single applied change and every later one is a replay.

Outcomes are acknowledged with 200 except when the gateway lookup fails
transiently, which raises ReconciliationLookupFailed so the gateway
redelivers.
"""
import enum
import json
import logging
from datetime import datetime
from typing import Mapping, Optional

from sqlalchemy.orm import Session

from app.config import PAYMENT_CURRENCY
from app.errors import (
    AlreadyFinalized, GatewayRejected, GatewayUnavailable, MalformedNotification,
    ReconciliationLookupFailed, ReservationNotFound,
)
from app.gateway import PAYMENT_ID_RE
from app.models import PaymentStatus, Reservation
from app.payments import get_transaction, upsert_transaction
from app.reservations import transition
from app.schedule import system_clock

logger = logging.getLogger(__name__)

PAYMENT_ACTIONS = {"payment.created", "payment.updated"}

# Gateway statuses that precede settlement. A late fetch returning one of
# these must not overwrite a settled status already stored.
UNSETTLED_STATUSES = {"pending", "in_process", "authorized"}


class Outcome(str, enum.Enum):
    IGNORED = "ignored"
    MALFORMED = "malformed"
    PENDING = "pending"
    APPLIED = "applied"
    REPLAYED = "replayed"


def map_gateway_status(status: Optional[str]) -> Optional[PaymentStatus]:
    if status == "approved":
        return PaymentStatus.COMPLETED
    if status in ("rejected", "cancelled"):
        return PaymentStatus.FAILED
    return None


def parse_notification(raw_body, query_params: Optional[Mapping] = None) -> Optional[str]:
    """
    Pull the payment id out of a notification.

    Accepts the JSON form ``{"type": "payment", "data": {"id": ...}}``, the
    ``action: payment.updated`` form and the query-string form
    (``?type=payment&data.id=...`` or ``?topic=payment&id=...``). Returns None
    for pings, unparseable bodies and non-payment topics.
    """
    query = query_params or {}
    if isinstance(raw_body, bytes):
        raw_body = raw_body.decode("utf-8", errors="replace")

    body = {}
    if raw_body and raw_body.strip():
        try:
            body = json.loads(raw_body)
        except ValueError:
            logger.warning("Notification body is not JSON, ignoring")
            return None
        if not isinstance(body, dict):
            logger.warning("Notification body is not a JSON object, ignoring")
            return None

    kind = body.get("type") or body.get("topic") or query.get("type") or query.get("topic")
    action = body.get("action")
    if not body and not kind:
        logger.info("Empty notification received (connectivity check)")
        return None
    if kind != "payment" and action not in PAYMENT_ACTIONS:
        logger.info(f"Notification type not handled: {kind or action}")
        return None

    data = body.get("data")
    payment_id = (
        (data.get("id") if isinstance(data, dict) else None)
        or body.get("id")
        or query.get("data.id")
        or query.get("id")
    )
    if payment_id is None or str(payment_id).strip() == "":
        logger.warning("Payment notification without a payment id, ignoring")
        return None
    payment_id = str(payment_id).strip()
    if not PAYMENT_ID_RE.fullmatch(payment_id):
        logger.warning(f"Payment notification with a non-numeric payment id {payment_id!r}, ignoring")
        return None
    return payment_id


def _notify(notifier, reservation_id: str) -> None:
    try:
        notifier.on_reservation_confirmed(reservation_id)
    except Exception:
        logger.exception(f"Confirmation notification for reservation {reservation_id} failed")


def reconcile_payment(
    db: Session, gateway, notifier, payment_id: str, now: Optional[datetime] = None
) -> Outcome:
    now = now or system_clock()

    try:
        payment = gateway.get_payment(payment_id)
    except GatewayRejected as e:
        # the gateway doesn't know this payment; redelivery won't change that
        logger.warning(f"Payment {payment_id} lookup rejected ({e.status}), acknowledging")
        return Outcome.MALFORMED
    except GatewayUnavailable as e:
        raise ReconciliationLookupFailed(f"Could not fetch payment {payment_id}: {e.detail}") from e

    try:
        if not payment.external_reference:
            raise MalformedNotification(f"Payment {payment_id} has no external_reference")
        reservation = db.get(Reservation, payment.external_reference)
        if reservation is None:
            raise MalformedNotification(
                f"Payment {payment_id} references unknown reservation {payment.external_reference}"
            )
    except MalformedNotification as e:
        db.rollback()
        logger.warning(f"Cannot reconcile: {e.detail}")
        return Outcome.MALFORMED

    reservation_id = reservation.id
    target = map_gateway_status(payment.status)
    logger.info(f"Payment {payment_id} for reservation {reservation_id}: gateway status {payment.status}")

    values = {"gateway_payment_id": payment.payment_id, "payment_method": payment.payment_method}
    existing = get_transaction(db, reservation_id)
    stale = (
        existing is not None
        and payment.status in UNSETTLED_STATUSES
        and map_gateway_status(existing.status) is not None
    )
    if not stale:
        values["status"] = payment.status
    upsert_transaction(
        db,
        reservation_id,
        values,
        now,
        on_insert={"amount": reservation.amount, "currency": PAYMENT_CURRENCY, "status": payment.status},
    )

    if target is None:
        return Outcome.PENDING

    try:
        transition(db, reservation_id, target, now)
    except AlreadyFinalized as e:
        if e.current_status != target.value:
            logger.error(
                f"Reservation {reservation_id} is {e.current_status} but payment {payment_id} "
                f"is {payment.status}; needs manual review"
            )
        else:
            logger.info(f"Replayed notification for reservation {reservation_id}, already {e.current_status}")
        return Outcome.REPLAYED
    except ReservationNotFound:
        logger.warning(f"Reservation {reservation_id} disappeared during reconciliation")
        return Outcome.MALFORMED

    if target is PaymentStatus.COMPLETED:
        _notify(notifier, reservation_id)
    return Outcome.APPLIED


def handle_notification(
    db: Session,
    gateway,
    notifier,
    raw_body,
    query_params: Optional[Mapping] = None,
    now: Optional[datetime] = None,
) -> Outcome:
    payment_id = parse_notification(raw_body, query_params)
    if payment_id is None:
        return Outcome.IGNORED
    return reconcile_payment(db, gateway, notifier, payment_id, now)
