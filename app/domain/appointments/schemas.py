"""Appointment domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, field_validator

REMARK_MAX_LENGTH = 255


class AppointmentCreate(BaseModel):
    """Schema for a customer booking a slot"""

    merchant_id: int
    service_id: int
    staff_id: int
    time_slot_id: int
    appointment_date: date
    coupon_id: Optional[int] = None
    remark: Optional[str] = None

    @field_validator("coupon_id")
    @classmethod
    def validate_coupon_id(cls, v):
        # Clients send 0 for "no coupon"
        if v is not None and v <= 0:
            return None
        return v

    @field_validator("remark")
    @classmethod
    def validate_remark(cls, v):
        if v is None:
            return v
        v = v.strip()
        if len(v) > REMARK_MAX_LENGTH:
            raise ValueError(f"Remark cannot exceed {REMARK_MAX_LENGTH} characters")
        return v


class AppointmentStatusUpdate(BaseModel):
    """Schema for a merchant acting on an appointment"""

    status: Literal["confirmed", "completed", "canceled", "rejected"]
    reason: Optional[str] = None


class CouponUsed(BaseModel):
    code: str
    name: str
    discount: int


class AppointmentResponse(BaseModel):
    id: int
    order_no: str
    merchant_id: int
    service_id: int
    staff_id: int
    time_slot_id: int
    appointment_date: date
    start_time: str
    end_time: str
    status: str
    amount: int
    payment_id: Optional[int] = None
    remark: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AppointmentDetailResponse(AppointmentResponse):
    merchant_name: Optional[str] = None
    merchant_address: Optional[str] = None
    merchant_phone: Optional[str] = None
    service_name: Optional[str] = None
    staff_name: Optional[str] = None
    coupon_used: Optional[CouponUsed] = None


class MerchantAppointmentResponse(AppointmentResponse):
    user_name: Optional[str] = None
    user_phone: Optional[str] = None
    service_name: Optional[str] = None
    staff_name: Optional[str] = None
