"""Slot service - Locking reservation and schedule authoring for time slots"""

import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import SlotNotFound, SlotUnavailable, StaffNotFound, ValidationFailed
from ...models import TimeSlot
from ...shared.validators import validate_non_overlapping
from ...state_machine import PRE_PAYMENT_STATES, TERMINAL_APPOINTMENT_STATES, AppointmentStatus
from ..coupons.repository import CouponRepository
from .repository import SlotRepository
from .schemas import SlotWindow

logger = logging.getLogger(__name__)

MAX_AVAILABLE_DATE_DAYS = 60


class SlotService:
    """
    Service layer for the slot ledger.

    lock_for_booking, reserve and release run inside the caller's transaction and never
    commit; bulk_replace owns its transaction.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repo = SlotRepository()
        self.coupon_repo = CouponRepository()

    # ========================================================================
    # RESERVATION (caller's transaction)
    # ========================================================================

    def lock_for_booking(
        self,
        slot_id: int,
        merchant_id: Optional[int] = None,
        staff_id: Optional[int] = None,
        slot_date: Optional[date] = None,
    ) -> TimeSlot:
        """Lock the slot row and check it can be booked; no side effects on failure"""
        slot = self.repo.get_slot_for_update(self.db, slot_id)
        if not slot:
            raise SlotNotFound(f"Time slot {slot_id} not found")

        # A slot id from another merchant, staff member or day is treated as unknown
        if (
            (merchant_id is not None and slot.merchant_id != merchant_id)
            or (staff_id is not None and slot.staff_id != staff_id)
            or (slot_date is not None and slot.date != slot_date)
        ):
            logger.warning(
                f"⚠️ Slot {slot_id} does not match merchant={merchant_id} staff={staff_id} date={slot_date}"
            )
            raise SlotNotFound(f"Time slot {slot_id} not found")

        if not slot.is_available:
            raise SlotUnavailable(f"Time slot {slot_id} is already booked")

        return slot

    def reserve(self, slot_id: int) -> TimeSlot:
        slot = self.lock_for_booking(slot_id)
        self.mark_booked(slot)
        return slot

    def mark_booked(self, slot: TimeSlot) -> None:
        """
        Flip a slot checked by lock_for_booking.

        The update only matches a still-open row, so the flip holds even where the
        database ignores FOR UPDATE (SQLite).
        """
        if self.repo.mark_slot_booked(self.db, slot.id) != 1:
            logger.warning(f"⚠️ Slot {slot.id} was taken by a concurrent booking")
            raise SlotUnavailable(f"Time slot {slot.id} is already booked")
        logger.info(f"🔒 Slot {slot.id} reserved")

    def release(self, slot_id: int) -> TimeSlot:
        slot = self.repo.get_slot_for_update(self.db, slot_id)
        if not slot:
            raise SlotNotFound(f"Time slot {slot_id} not found")
        slot.is_available = True
        self.db.flush()
        logger.info(f"🔓 Slot {slot_id} released")
        return slot

    # ========================================================================
    # READ PATHS
    # ========================================================================

    def list_slots(
        self,
        merchant_id: int,
        staff_id: int,
        slot_date: date,
        only_available: bool = False,
    ) -> list[TimeSlot]:
        return self.repo.list_slots(self.db, merchant_id, staff_id, slot_date, only_available)

    def list_available_dates(
        self, merchant_id: int, days: int = 7, staff_id: Optional[int] = None
    ) -> list[date]:
        """Dates with open slots, starting tomorrow"""
        if days < 1 or days > MAX_AVAILABLE_DATE_DAYS:
            raise ValidationFailed(f"days must be between 1 and {MAX_AVAILABLE_DATE_DAYS}")
        start = date.today() + timedelta(days=1)
        end = start + timedelta(days=days - 1)
        return self.repo.list_available_dates(self.db, merchant_id, start, end, staff_id)

    # ========================================================================
    # SCHEDULE AUTHORING (own transaction)
    # ========================================================================

    def bulk_replace(
        self,
        merchant_id: int,
        staff_id: int,
        slot_date: date,
        windows: list[SlotWindow],
    ) -> list[TimeSlot]:
        """
        Replace a staff member's schedule for one day.

        Appointments bound to the old slots are deleted. Coupons of unpaid bookings go
        back to unused; the whole rebuild is one transaction.
        """
        pairs = [(w.start_time, w.end_time) for w in windows]
        try:
            validate_non_overlapping(pairs)
        except ValueError as e:
            raise ValidationFailed(str(e)) from e

        logger.info(
            f"📥 Rebuilding schedule: merchant={merchant_id} staff={staff_id} date={slot_date} slots={len(pairs)}"
        )

        try:
            if not self.repo.get_staff(self.db, staff_id, merchant_id):
                raise StaffNotFound(f"Staff {staff_id} not found for merchant {merchant_id}")

            old_slot_ids = self.repo.get_day_slot_ids(self.db, merchant_id, staff_id, slot_date)
            appointments = self.repo.get_appointments_for_slots(self.db, old_slot_ids)
            appointment_ids = [a.id for a in appointments]
            unpaid_ids = [
                a.id for a in appointments if AppointmentStatus(a.status) in PRE_PAYMENT_STATES
            ]
            paid_ids = [i for i in appointment_ids if i not in unpaid_ids]

            live = [
                a for a in appointments
                if AppointmentStatus(a.status) not in TERMINAL_APPOINTMENT_STATES
            ]
            if live:
                logger.warning(
                    f"⚠️ Schedule rebuild drops {len(live)} live appointment(s): {[a.order_no for a in live]}"
                )

            # Coupons come back only while nothing was paid; spent ones just lose the link
            restored = self.coupon_repo.restore_for_appointments(self.db, unpaid_ids)
            self.coupon_repo.detach_from_appointments(self.db, paid_ids)
            deleted_appointments = self.repo.delete_appointments(self.db, appointment_ids)
            deleted_slots = self.repo.delete_slots(self.db, old_slot_ids)
            new_slots = self.repo.add_slots(self.db, merchant_id, staff_id, slot_date, pairs)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        for slot in new_slots:
            self.db.refresh(slot)

        logger.info(
            f"✅ Schedule rebuilt: {deleted_slots} slot(s) and {deleted_appointments} appointment(s) removed, "
            f"{restored} coupon(s) restored, {len(new_slots)} slot(s) created"
        )
        return new_slots

    def delete_slot(self, merchant_id: int, slot_id: int) -> None:
        """Remove a single open slot; booked slots must be released first"""
        try:
            slot = self.repo.get_slot_for_update(self.db, slot_id)
            if not slot or slot.merchant_id != merchant_id:
                raise SlotNotFound(f"Time slot {slot_id} not found")
            if not slot.is_available:
                raise SlotUnavailable(f"Time slot {slot_id} is booked and cannot be deleted")
            if self.repo.get_appointments_for_slots(self.db, [slot_id]):
                # Cancelled bookings still reference the slot; a day rebuild clears them
                raise SlotUnavailable(f"Time slot {slot_id} has booking history")
            self.db.delete(slot)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"🗑️ Slot {slot_id} deleted by merchant {merchant_id}")
