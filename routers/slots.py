from datetime import date

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.db import get_db
from app.dependencies import get_clock
from app.models import Sport
from app.schedule import Slot, check_availability, list_day

router = APIRouter()

@router.get("")
def list_slots(
    sport: Sport,
    day: date = Query(alias="date"),
    duration: int = Query(default=60, gt=0),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    """
    Status of every bookable start time for one sport and day:
      - AVAILABLE: no overlapping reservation or block
      - RESERVED: overlaps a pending or completed reservation
      - BLOCKED: overlaps an admin time block
      - PAST: start time already gone
      - UNAVAILABLE: the duration would run past midnight
    """
    slots = list_day(db, sport, day, duration, clock())
    db.rollback()
    return {"sport": sport.value, "date": day, "duration": duration, "slots": slots}

@router.get("/check")
def check_slot(
    sport: Sport,
    day: date = Query(alias="date"),
    time: str = Query(),
    duration: int = Query(default=60),
    db: Session = Depends(get_db),
    clock=Depends(get_clock),
):
    slot = Slot.build(sport, day, time, duration)
    available = check_availability(db, slot, clock())
    db.rollback()
    return {
        "sport": sport.value,
        "date": day,
        "time": slot.start_time,
        "duration": duration,
        "available": available,
    }
