import hmac

from fastapi import Header, HTTPException

from app.config import ADMIN_API_TOKEN
from app.gateway import MercadoPagoGateway
from app.notifications import default_notifier
from app.schedule import Clock, system_clock


def get_gateway():
    gateway = MercadoPagoGateway()
    try:
        yield gateway
    finally:
        gateway.close()


def get_notifier():
    return default_notifier()


def get_clock() -> Clock:
    return system_clock


def require_admin(x_admin_token: str | None = Header(default=None)):
    if not ADMIN_API_TOKEN:
        raise HTTPException(status_code=503, detail="Admin access is not configured.")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, ADMIN_API_TOKEN):
        raise HTTPException(status_code=401, detail="Invalid admin token.")
