"""Coupon domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from ...models import UserCoupon
from ...state_machine import CouponStatus, DiscountType


class CouponTemplateCreate(BaseModel):
    """Schema for a merchant issuing a run of coupons"""

    name: str
    description: Optional[str] = None
    discount_type: DiscountType = DiscountType.FIXED
    discount_value: int
    min_amount: int = 0
    validity_days: int = 7
    total_count: int

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Coupon name is required")
        return v

    @field_validator("discount_value")
    @classmethod
    def validate_discount_value(cls, v):
        if v <= 0:
            raise ValueError("Discount value must be positive")
        return v

    @field_validator("min_amount", "total_count")
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @field_validator("validity_days")
    @classmethod
    def validate_validity_days(cls, v):
        if v < 1:
            raise ValueError("Validity must be at least one day")
        return v

    @model_validator(mode="after")
    def validate_percent(self):
        if self.discount_type == DiscountType.PERCENT and self.discount_value > 100:
            raise ValueError("Percent discount cannot exceed 100")
        return self


class CouponTemplateResponse(BaseModel):
    id: int
    merchant_id: int
    name: str
    description: Optional[str] = None
    discount_type: str
    discount_value: int
    min_amount: int
    validity_days: int
    total_count: int
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserCouponResponse(BaseModel):
    id: int
    template_id: int
    coupon_code: str
    status: CouponStatus
    valid_from: datetime
    valid_to: datetime
    used_at: Optional[datetime] = None
    appointment_id: Optional[int] = None
    template: Optional[CouponTemplateResponse] = None

    class Config:
        from_attributes = True


class CouponApplication(BaseModel):
    """Outcome of applying a coupon to a booking price"""

    original_amount: int
    discount: int
    final_amount: int
    coupon: UserCoupon

    class Config:
        arbitrary_types_allowed = True
