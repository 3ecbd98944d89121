import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.db import get_db
from app.dependencies import get_clock, get_gateway, get_notifier
from app.reconciler import handle_notification

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("/payment")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway=Depends(get_gateway),
    notifier=Depends(get_notifier),
    clock=Depends(get_clock),
):
    """
    MercadoPago payment notifications.

    Answers 200 for everything it can acknowledge, including pings, unknown
    topics and replays. Only a failed payment lookup returns 503 so the
    gateway delivers the notification again.
    """
    raw_body = await request.body()
    logger.info(f"📥 Payment webhook received ({len(raw_body)} bytes)")
    outcome = await run_in_threadpool(
        handle_notification, db, gateway, notifier, raw_body, dict(request.query_params), clock()
    )
    return {"success": True, "outcome": outcome.value}
