"""Appointment service - Booking orchestration and merchant status actions"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...errors import (
    AppointmentNotFound,
    NotAppointmentOwner,
    NotCancellable,
    PersistFailure,
    ServiceNotFound,
    ValidationFailed,
)
from ...models import Appointment, Merchant, User, UserCoupon
from ...shared.identifiers import generate_order_no
from ...state_machine import (
    CUSTOMER_TRANSITIONS,
    MERCHANT_TRANSITIONS,
    PRE_PAYMENT_STATES,
    SLOT_RELEASING_STATES,
    AppointmentStatus,
    can_transition,
    ensure_transition,
)
from ..coupons.service import CouponService
from ..slots.service import SlotService
from .repository import AppointmentRepository
from .schemas import REMARK_MAX_LENGTH, AppointmentCreate

logger = logging.getLogger(__name__)


def append_remark(remark: Optional[str], reason: Optional[str]) -> Optional[str]:
    """Append a merchant note to the customer's remark, clipped to the column size"""
    if not reason or not reason.strip():
        return remark
    note = f"Merchant note: {reason.strip()}"
    combined = f"{remark} | {note}" if remark else note
    return combined[:REMARK_MAX_LENGTH]


class AppointmentService:
    """Service layer for the booking orchestrator"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = AppointmentRepository()
        self.slots = SlotService(db)
        self.coupons = CouponService(db)

    # ========================================================================
    # CUSTOMER ACTIONS
    # ========================================================================

    def create_appointment(self, user: User, data: AppointmentCreate) -> Appointment:
        """
        Book a slot in one transaction.

        Order matters: the slot row lock is taken before pricing and the coupon check,
        the appointment is inserted before the slot is flipped, and nothing is
        committed until every step has succeeded.
        """
        logger.info(
            f"📥 Booking request: user={user.id} merchant={data.merchant_id} slot={data.time_slot_id} "
            f"coupon={data.coupon_id}"
        )
        try:
            # 1. Lock the slot
            slot = self.slots.lock_for_booking(
                data.time_slot_id,
                merchant_id=data.merchant_id,
                staff_id=data.staff_id,
                slot_date=data.appointment_date,
            )

            # 2. Price from the service
            service = self.repo.get_service(self.db, data.service_id)
            if not service or service.merchant_id != data.merchant_id:
                raise ServiceNotFound(f"Service {data.service_id} not found")

            # 3. Coupon
            final_amount = service.price
            coupon: Optional[UserCoupon] = None
            if data.coupon_id:
                application = self.coupons.apply(
                    user.id, data.coupon_id, service.price, merchant_id=data.merchant_id
                )
                final_amount = application.final_amount
                coupon = application.coupon

            # 4. Insert
            try:
                appointment = self.repo.create_appointment(
                    self.db,
                    order_no=generate_order_no(),
                    user_id=user.id,
                    merchant_id=data.merchant_id,
                    service_id=service.id,
                    staff_id=data.staff_id,
                    time_slot_id=slot.id,
                    appointment_date=slot.date,
                    start_time=slot.start_time,
                    end_time=slot.end_time,
                    status=AppointmentStatus.PENDING.value,
                    amount=final_amount,
                    remark=data.remark,
                )
            except SQLAlchemyError as e:
                raise PersistFailure(f"Appointment insert failed: {e}") from e

            # 5. Flip the slot
            self.slots.mark_booked(slot)

            # 6. Finalize the coupon
            if coupon is not None:
                self.coupons.finalize(coupon, appointment.id)

            # 7. Commit
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(appointment)
        logger.info(
            f"✅ Appointment {appointment.order_no} created for user {user.id}: amount={appointment.amount}"
        )
        return appointment

    def cancel_appointment(self, user: User, appointment_id: int) -> Appointment:
        """Customer withdraws a booking nobody has acted on yet"""
        try:
            appointment = self.repo.get_for_update(self.db, appointment_id)
            if not appointment:
                raise AppointmentNotFound(f"Appointment {appointment_id} not found")
            if appointment.user_id != user.id:
                raise NotAppointmentOwner(
                    f"Appointment {appointment_id} does not belong to user {user.id}"
                )
            if not can_transition(
                appointment.status, AppointmentStatus.CANCELED, CUSTOMER_TRANSITIONS
            ):
                raise NotCancellable(
                    f"Appointment {appointment_id} is {appointment.status} and can no longer be cancelled"
                )

            previous_status = appointment.status
            appointment.status = AppointmentStatus.CANCELED.value
            self.slots.release(appointment.time_slot_id)
            self.coupons.revert_for_appointment(appointment.id, previous_status)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(appointment)
        logger.info(f"✅ Appointment {appointment.order_no} cancelled by user {user.id}")
        return appointment

    def get_user_appointment(self, user: User, appointment_id: int) -> Appointment:
        appointment = self.repo.get_user_appointment(self.db, appointment_id, user.id)
        if not appointment:
            raise AppointmentNotFound(f"Appointment {appointment_id} not found")
        return appointment

    def list_user_appointments(self, user: User, status: Optional[str] = None) -> list[Appointment]:
        return self.repo.list_user_appointments(self.db, user.id, self._status_filter(status))

    def get_coupon_used(self, appointment: Appointment) -> Optional[UserCoupon]:
        return self.coupons.get_coupon_for_appointment(appointment.id)

    # ========================================================================
    # MERCHANT ACTIONS
    # ========================================================================

    def update_status(
        self,
        merchant: Merchant,
        appointment_id: int,
        status: str,
        reason: Optional[str] = None,
    ) -> Appointment:
        """
        Apply a merchant action (confirm, reject, complete, cancel).

        The transition is validated before anything is written; cancel and reject give
        the slot back, and a coupon on an unpaid booking is restored.
        """
        try:
            appointment = self.repo.get_for_update(self.db, appointment_id)
            if not appointment or appointment.merchant_id != merchant.id:
                raise AppointmentNotFound(f"Appointment {appointment_id} not found")

            ensure_transition(appointment.status, status, MERCHANT_TRANSITIONS)

            previous_status = appointment.status
            target = AppointmentStatus(status)
            appointment.status = target.value
            appointment.remark = append_remark(appointment.remark, reason)

            if target in SLOT_RELEASING_STATES:
                self.slots.release(appointment.time_slot_id)
                if AppointmentStatus(previous_status) in PRE_PAYMENT_STATES:
                    self.coupons.revert_for_appointment(appointment.id, previous_status)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(appointment)
        logger.info(
            f"✅ Appointment {appointment.order_no} moved {previous_status} → {appointment.status} "
            f"by merchant {merchant.id}"
        )
        return appointment

    def list_merchant_appointments(
        self,
        merchant: Merchant,
        status: Optional[str] = None,
        appointment_date: Optional[date] = None,
    ) -> list[Appointment]:
        return self.repo.list_merchant_appointments(
            self.db, merchant.id, self._status_filter(status), appointment_date
        )

    @staticmethod
    def _status_filter(status: Optional[str]) -> Optional[str]:
        if not status:
            return None
        try:
            return AppointmentStatus(status).value
        except ValueError as e:
            raise ValidationFailed(f"Unknown appointment status: {status}") from e
