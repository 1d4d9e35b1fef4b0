"""Appointment router - FastAPI endpoints for bookings"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_merchant, get_current_user
from ...database import get_db
from ...models import Appointment, Merchant, User
from .schemas import (
    AppointmentCreate,
    AppointmentDetailResponse,
    AppointmentResponse,
    AppointmentStatusUpdate,
    CouponUsed,
    MerchantAppointmentResponse,
)
from .service import AppointmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customer", tags=["Customer - Appointments"])
merchant_router = APIRouter(prefix="/api/merchant", tags=["Merchant - Appointments"])


def get_appointment_service(db: Session = Depends(get_db)) -> AppointmentService:
    """Dependency injection for AppointmentService"""
    return AppointmentService(db)


def _detail_response(
    appointment: Appointment, service: AppointmentService
) -> AppointmentDetailResponse:
    response = AppointmentDetailResponse.model_validate(appointment)
    response.merchant_name = appointment.merchant.name if appointment.merchant else None
    response.merchant_address = appointment.merchant.address if appointment.merchant else None
    response.merchant_phone = appointment.merchant.phone if appointment.merchant else None
    response.service_name = appointment.service.name if appointment.service else None
    response.staff_name = appointment.staff.name if appointment.staff else None

    coupon = service.get_coupon_used(appointment)
    if coupon is not None and appointment.service is not None:
        response.coupon_used = CouponUsed(
            code=coupon.coupon_code,
            name=coupon.template.name,
            discount=max(appointment.service.price - appointment.amount, 0),
        )
    return response


# ============================================================================
# CUSTOMER
# ============================================================================


@router.post("/appointments", response_model=AppointmentResponse)
def create_appointment(
    data: AppointmentCreate,
    current_user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Book a time slot, optionally redeeming a coupon"""
    return service.create_appointment(current_user, data)


@router.get("/appointments", response_model=list[AppointmentDetailResponse])
def get_my_appointments(
    status: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointments = service.list_user_appointments(current_user, status)
    return [_detail_response(a, service) for a in appointments]


@router.get("/appointments/{appointment_id}", response_model=AppointmentDetailResponse)
def get_appointment_detail(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = service.get_user_appointment(current_user, appointment_id)
    return _detail_response(appointment, service)


@router.put("/appointments/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Cancel a booking the merchant has not acted on yet"""
    return service.cancel_appointment(current_user, appointment_id)


# ============================================================================
# MERCHANT
# ============================================================================


@merchant_router.get("/appointments", response_model=list[MerchantAppointmentResponse])
def get_merchant_appointments(
    status: Optional[str] = Query(None),
    appointment_date: Optional[date] = Query(None, alias="date"),
    current_merchant: Merchant = Depends(get_current_merchant),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointments = service.list_merchant_appointments(current_merchant, status, appointment_date)
    responses = []
    for a in appointments:
        response = MerchantAppointmentResponse.model_validate(a)
        response.user_name = a.user.nickname if a.user else None
        response.user_phone = a.user.phone if a.user else None
        response.service_name = a.service.name if a.service else None
        response.staff_name = a.staff.name if a.staff else None
        responses.append(response)
    return responses


@merchant_router.put("/appointments/{appointment_id}/status", response_model=AppointmentResponse)
def update_appointment_status(
    appointment_id: int,
    data: AppointmentStatusUpdate,
    current_merchant: Merchant = Depends(get_current_merchant),
    service: AppointmentService = Depends(get_appointment_service),
):
    """Confirm, reject, complete or cancel an appointment"""
    return service.update_status(current_merchant, appointment_id, data.status, data.reason)
