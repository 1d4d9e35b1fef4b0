"""Slot router - FastAPI endpoints for time slots"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_merchant, get_current_user
from ...database import get_db
from ...models import Merchant, User
from .schemas import AvailableDatesResponse, SlotWindow, TimeSlotResponse
from .service import SlotService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customer", tags=["Customer - Time Slots"])
merchant_router = APIRouter(prefix="/api/merchant", tags=["Merchant - Time Slots"])


def get_slot_service(db: Session = Depends(get_db)) -> SlotService:
    """Dependency injection for SlotService"""
    return SlotService(db)


# ============================================================================
# CUSTOMER
# ============================================================================


@router.get("/timeslots", response_model=list[TimeSlotResponse])
def get_available_slots(
    merchant_id: int = Query(...),
    staff_id: int = Query(...),
    slot_date: date = Query(..., alias="date"),
    current_user: User = Depends(get_current_user),
    service: SlotService = Depends(get_slot_service),
):
    """Open slots for one staff member on one day"""
    return service.list_slots(merchant_id, staff_id, slot_date, only_available=True)


@router.get("/timeslots/dates", response_model=AvailableDatesResponse)
def get_available_dates(
    merchant_id: int = Query(...),
    staff_id: Optional[int] = Query(None),
    days: int = Query(7),
    current_user: User = Depends(get_current_user),
    service: SlotService = Depends(get_slot_service),
):
    """Upcoming dates that still have open slots"""
    dates = service.list_available_dates(merchant_id, days, staff_id)
    return AvailableDatesResponse(merchant_id=merchant_id, dates=dates)


# ============================================================================
# MERCHANT
# ============================================================================


@merchant_router.get("/timeslots", response_model=list[TimeSlotResponse])
def get_merchant_slots(
    staff_id: int = Query(...),
    slot_date: date = Query(..., alias="date"),
    current_merchant: Merchant = Depends(get_current_merchant),
    service: SlotService = Depends(get_slot_service),
):
    """All slots, booked or not, for one staff member on one day"""
    return service.list_slots(current_merchant.id, staff_id, slot_date)


@merchant_router.post("/staff/{staff_id}/timeslots", response_model=list[TimeSlotResponse])
def replace_day_schedule(
    staff_id: int,
    windows: list[SlotWindow],
    slot_date: date = Query(..., alias="date"),
    current_merchant: Merchant = Depends(get_current_merchant),
    service: SlotService = Depends(get_slot_service),
):
    """Replace a staff member's slots for the given day"""
    return service.bulk_replace(current_merchant.id, staff_id, slot_date, windows)


@merchant_router.delete("/timeslots/{slot_id}")
def delete_slot(
    slot_id: int,
    current_merchant: Merchant = Depends(get_current_merchant),
    service: SlotService = Depends(get_slot_service),
):
    """Delete a single open slot"""
    service.delete_slot(current_merchant.id, slot_id)
    return {"message": "Time slot deleted"}
