"""Payment domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class PaymentCreate(BaseModel):
    """Schema for a direct payment intent"""

    amount: int = Field(..., ge=1)
    description: str
    appointment_id: Optional[int] = None

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Description is required")
        return v[:127]


class PrepayPayload(BaseModel):
    """Signed parameters the mini-program passes to the payment sheet"""

    appId: str
    timeStamp: str
    nonceStr: str
    package: str
    signType: str
    paySign: str


class PaymentIntentResponse(BaseModel):
    payment_id: int
    out_trade_no: str
    simulate: bool = False
    prepay: Optional[PrepayPayload] = None


class PaymentResponse(BaseModel):
    id: int
    customer_id: int
    merchant_id: Optional[int] = None
    appointment_id: Optional[int] = None
    out_trade_no: str
    transaction_id: Optional[str] = None
    amount: int
    description: Optional[str] = None
    status: str
    paid_at: Optional[datetime] = None
    fail_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RefundCreate(BaseModel):
    amount: int = Field(..., ge=1)
    reason: Optional[str] = Field(None, max_length=255)


class RefundResponse(BaseModel):
    id: int
    payment_id: int
    appointment_id: Optional[int] = None
    out_refund_no: str
    refund_id: Optional[str] = None
    amount: int
    reason: Optional[str] = None
    status: str
    refunded_at: Optional[datetime] = None
    fail_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SimulateNotifyRequest(BaseModel):
    payment_id: int
    out_trade_no: str
    status: Literal["success", "failed"]
