from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .state_machine import (
    AppointmentStatus,
    CouponStatus,
    DiscountType,
    PaymentStatus,
    RefundStatus,
)


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    address = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    staff = relationship("Staff", back_populates="merchant")
    services = relationship("Service", back_populates="merchant")
    coupon_templates = relationship("CouponTemplate", back_populates="merchant")


class User(Base):
    """A customer account"""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    openid = Column(String(64), unique=True, index=True, nullable=True)  # JSAPI payer identity
    nickname = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="user")
    coupons = relationship("UserCoupon", back_populates="user")


class Staff(Base):
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), index=True, nullable=False)
    name = Column(String(100), nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    merchant = relationship("Merchant", back_populates="staff")


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (CheckConstraint("price >= 0", name="check_service_price_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), index=True, nullable=False)
    name = Column(String(100), nullable=False)
    price = Column(Integer, nullable=False, default=0)  # minor currency units
    duration = Column(Integer, nullable=False, default=30)  # minutes
    created_at = Column(DateTime, server_default=func.now())

    merchant = relationship("Merchant", back_populates="services")


class TimeSlot(Base):
    __tablename__ = "time_slots"

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), index=True, nullable=False)
    staff_id = Column(Integer, ForeignKey("staff.id"), index=True, nullable=False)
    date = Column(Date, index=True, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM
    end_time = Column(String(5), nullable=False)  # HH:MM
    is_available = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (CheckConstraint("amount >= 0", name="check_appointment_amount_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    order_no = Column(String(32), unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), index=True, nullable=False)
    service_id = Column(Integer, ForeignKey("services.id"), index=True, nullable=False)
    staff_id = Column(Integer, ForeignKey("staff.id"), index=True, nullable=False)
    time_slot_id = Column(Integer, ForeignKey("time_slots.id"), index=True, nullable=False)
    appointment_date = Column(Date, nullable=False)
    # Copied from the slot so the booking still reads correctly after a schedule change
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    status = Column(String(20), default=AppointmentStatus.PENDING.value, index=True, nullable=False)
    amount = Column(Integer, default=0, nullable=False)  # minor currency units
    payment_id = Column(Integer, index=True, nullable=True)
    remark = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="appointments")
    merchant = relationship("Merchant")
    service = relationship("Service")
    staff = relationship("Staff")
    time_slot = relationship("TimeSlot")
    coupon = relationship("UserCoupon", back_populates="appointment", uselist=False)


class CouponTemplate(Base):
    __tablename__ = "coupon_templates"
    __table_args__ = (
        CheckConstraint("total_count >= 0", name="check_coupon_template_count_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    merchant_id = Column(Integer, ForeignKey("merchants.id"), index=True, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    discount_type = Column(String(10), default=DiscountType.FIXED.value, nullable=False)
    discount_value = Column(Integer, nullable=False)
    min_amount = Column(Integer, default=0, nullable=False)
    validity_days = Column(Integer, default=7, nullable=False)
    total_count = Column(Integer, default=0, nullable=False)  # remaining issuable coupons
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    merchant = relationship("Merchant", back_populates="coupon_templates")


class UserCoupon(Base):
    __tablename__ = "user_coupons"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    template_id = Column(Integer, ForeignKey("coupon_templates.id"), index=True, nullable=False)
    coupon_code = Column(String(20), unique=True, index=True, nullable=False)
    status = Column(String(10), default=CouponStatus.UNUSED.value, index=True, nullable=False)
    valid_from = Column(DateTime, nullable=False)
    valid_to = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), index=True, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="coupons")
    template = relationship("CouponTemplate")
    appointment = relationship("Appointment", back_populates="coupon")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (CheckConstraint("amount >= 0", name="check_payment_amount_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    merchant_id = Column(Integer, index=True, nullable=True)
    # Plain column: payment rows outlive appointments removed by a schedule rebuild
    appointment_id = Column(Integer, index=True, nullable=True)
    out_trade_no = Column(String(64), unique=True, index=True, nullable=False)
    transaction_id = Column(String(64), nullable=True)  # gateway transaction id
    amount = Column(Integer, nullable=False)  # fixed at creation
    description = Column(String(255), nullable=True)
    status = Column(String(20), default=PaymentStatus.PENDING.value, index=True, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    fail_reason = Column(String(255), nullable=True)
    raw_notify = Column(Text, nullable=True)  # audit copy of the last gateway notification
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    refunds = relationship("Refund", back_populates="payment")


class Refund(Base):
    __tablename__ = "refunds"
    __table_args__ = (CheckConstraint("amount > 0", name="check_refund_amount_positive"),)

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(Integer, ForeignKey("payments.id"), index=True, nullable=False)
    appointment_id = Column(Integer, index=True, nullable=True)
    out_refund_no = Column(String(64), unique=True, index=True, nullable=False)
    refund_id = Column(String(64), nullable=True)  # gateway refund id
    amount = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=True)
    # Appointment status (paid or completed) to restore if the gateway refund fails
    appointment_status = Column(String(20), nullable=True)
    status = Column(String(20), default=RefundStatus.PROCESSING.value, index=True, nullable=False)
    refunded_at = Column(DateTime, nullable=True)
    fail_reason = Column(String(255), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    payment = relationship("Payment", back_populates="refunds")
