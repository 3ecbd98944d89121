import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import LOG_LEVEL
from app.db import init_db
from app.errors import BookingError
from routers import admin, reservations, slots, webhooks

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

app = FastAPI(title="Court Booking API", version="0.1.0")

app.include_router(slots.router, prefix="/slots", tags=["slots"])
app.include_router(reservations.router, prefix="/reservations", tags=["reservations"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])

@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

@app.on_event("startup")
def on_startup():
    if os.getenv("SKIP_DB_INIT") == "1":
        return
    init_db()

@app.get("/")
def root():
    return {"ok": True, "service": "court-booking-api"}
