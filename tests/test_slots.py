from datetime import timedelta

import pytest
from pydantic import ValidationError

from app.domain.appointments.service import AppointmentService
from app.domain.slots.schemas import SlotWindow
from app.domain.slots.service import SlotService
from app.errors import SlotNotFound, SlotUnavailable, StaffNotFound, ValidationFailed
from app.models import Appointment, TimeSlot
from app.shared.validators import validate_non_overlapping


@pytest.mark.slots
class TestSlotWindows:
    """Validation of schedule windows."""

    def test_valid_window(self):
        window = SlotWindow(start_time="09:00", end_time="09:30")

        assert window.start_time == "09:00"

    def test_start_must_precede_end(self):
        with pytest.raises(ValidationError):
            SlotWindow(start_time="10:00", end_time="09:00")

    def test_rejects_unpadded_time(self):
        with pytest.raises(ValidationError):
            SlotWindow(start_time="9:00", end_time="10:00")

    def test_rejects_out_of_range_hour(self):
        with pytest.raises(ValidationError):
            SlotWindow(start_time="23:00", end_time="24:00")

    def test_overlap_detected(self):
        with pytest.raises(ValueError):
            validate_non_overlapping([("09:00", "10:00"), ("09:30", "10:30")])

    def test_touching_windows_allowed(self):
        validate_non_overlapping([("10:00", "11:00"), ("09:00", "10:00")])


@pytest.mark.slots
class TestSlotLocking:
    """Reservation primitives used by the booking flow."""

    def test_lock_open_slot(self, db, slots, merchant, staff, slot_date):
        slot = SlotService(db).lock_for_booking(slots[0].id, merchant.id, staff.id, slot_date)

        assert slot.id == slots[0].id

    def test_missing_slot(self, db):
        with pytest.raises(SlotNotFound):
            SlotService(db).lock_for_booking(999)

    def test_slot_from_other_merchant_is_not_found(self, db, slots, other_merchant):
        with pytest.raises(SlotNotFound):
            SlotService(db).lock_for_booking(slots[0].id, merchant_id=other_merchant.id)

    def test_slot_on_other_date_is_not_found(self, db, slots, slot_date):
        with pytest.raises(SlotNotFound):
            SlotService(db).lock_for_booking(slots[0].id, slot_date=slot_date + timedelta(days=1))

    def test_booked_slot_unavailable(self, db, slots):
        service = SlotService(db)
        service.reserve(slots[0].id)

        with pytest.raises(SlotUnavailable):
            service.lock_for_booking(slots[0].id)

    def test_flip_refused_when_slot_taken_after_check(self, db, slots):
        service = SlotService(db)
        slot = service.lock_for_booking(slots[0].id)
        db.query(TimeSlot).filter(TimeSlot.id == slot.id).update(
            {TimeSlot.is_available: False}, synchronize_session=False
        )

        with pytest.raises(SlotUnavailable):
            service.mark_booked(slot)

    def test_release_reopens_slot(self, db, slots):
        service = SlotService(db)
        service.reserve(slots[1].id)

        slot = service.release(slots[1].id)

        assert slot.is_available is True

    def test_release_missing_slot(self, db):
        with pytest.raises(SlotNotFound):
            SlotService(db).release(12345)


@pytest.mark.slots
class TestScheduleRebuild:
    """Replacing a staff member's day schedule."""

    def test_replaces_all_slots_for_the_day(self, db, slots, merchant, staff, slot_date):
        windows = [SlotWindow(start_time="14:00", end_time="15:00")]

        new_slots = SlotService(db).bulk_replace(merchant.id, staff.id, slot_date, windows)

        remaining = db.query(TimeSlot).filter(TimeSlot.staff_id == staff.id).all()
        assert [s.id for s in remaining] == [s.id for s in new_slots]
        assert remaining[0].start_time == "14:00"
        assert remaining[0].is_available is True

    def test_overlapping_windows_rejected(self, db, slots, merchant, staff, slot_date):
        windows = [
            SlotWindow(start_time="09:00", end_time="10:00"),
            SlotWindow(start_time="09:30", end_time="10:30"),
        ]

        with pytest.raises(ValidationFailed):
            SlotService(db).bulk_replace(merchant.id, staff.id, slot_date, windows)

        assert db.query(TimeSlot).count() == 3

    def test_unknown_staff_rejected(self, db, other_merchant, staff, slot_date):
        with pytest.raises(StaffNotFound):
            SlotService(db).bulk_replace(other_merchant.id, staff.id, slot_date, [])

    def test_rebuild_drops_bookings_and_restores_coupons(
        self, db, user, slots, merchant, staff, slot_date, fixed_template, make_coupon, book
    ):
        coupon = make_coupon(user, fixed_template)
        appointment_id = book(user, slots[0], coupon_id=coupon.id).id

        SlotService(db).bulk_replace(
            merchant.id, staff.id, slot_date, [SlotWindow(start_time="09:00", end_time="10:00")]
        )

        db.refresh(coupon)
        assert db.query(Appointment).filter(Appointment.id == appointment_id).first() is None
        assert coupon.status == "unused"
        assert coupon.appointment_id is None
        assert coupon.used_at is None

    def test_rebuild_keeps_paid_coupon_spent(
        self, db, user, slots, merchant, staff, slot_date, fixed_template, make_coupon, book
    ):
        coupon = make_coupon(user, fixed_template)
        appointment = book(user, slots[0], coupon_id=coupon.id)
        appointment.status = "paid"
        db.commit()

        SlotService(db).bulk_replace(merchant.id, staff.id, slot_date, [])

        db.refresh(coupon)
        assert coupon.status == "used"
        assert coupon.appointment_id is None
        assert coupon.used_at is not None

    def test_other_days_untouched(self, db, slots, merchant, staff, slot_date):
        SlotService(db).bulk_replace(merchant.id, staff.id, slot_date + timedelta(days=1), [])

        assert db.query(TimeSlot).count() == 3


@pytest.mark.slots
class TestSlotQueries:
    """Listing slots and dates."""

    def test_only_available_filter(self, db, slots, merchant, staff, slot_date):
        service = SlotService(db)
        service.reserve(slots[0].id)
        db.commit()

        open_slots = service.list_slots(merchant.id, staff.id, slot_date, only_available=True)

        assert [s.id for s in open_slots] == [slots[1].id, slots[2].id]
        assert len(service.list_slots(merchant.id, staff.id, slot_date)) == 3

    def test_available_dates_start_tomorrow(self, db, slots, merchant, slot_date):
        assert SlotService(db).list_available_dates(merchant.id, days=7) == [slot_date]

    def test_available_dates_range_checked(self, db, merchant):
        with pytest.raises(ValidationFailed):
            SlotService(db).list_available_dates(merchant.id, days=61)

    def test_delete_open_slot(self, db, slots, merchant):
        SlotService(db).delete_slot(merchant.id, slots[2].id)

        assert db.query(TimeSlot).count() == 2

    def test_delete_slot_with_history_refused(self, db, user, slots, merchant, book):
        appointment = book(user, slots[0])
        AppointmentService(db).cancel_appointment(user, appointment.id)

        with pytest.raises(SlotUnavailable):
            SlotService(db).delete_slot(merchant.id, slots[0].id)

    def test_delete_booked_slot_refused(self, db, user, slots, merchant, book):
        book(user, slots[0])

        with pytest.raises(SlotUnavailable):
            SlotService(db).delete_slot(merchant.id, slots[0].id)
