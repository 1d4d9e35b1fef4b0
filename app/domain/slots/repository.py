"""Slot repository - Database operations for staff time slots"""

from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Appointment, Staff, TimeSlot


class SlotRepository:
    """Repository for time slot database operations"""

    @staticmethod
    def get_slot(db: Session, slot_id: int) -> Optional[TimeSlot]:
        return db.query(TimeSlot).filter(TimeSlot.id == slot_id).first()

    @staticmethod
    def get_slot_for_update(db: Session, slot_id: int) -> Optional[TimeSlot]:
        """Row-locking read; the lock lives until the caller's transaction ends"""
        return db.query(TimeSlot).filter(TimeSlot.id == slot_id).with_for_update().first()

    @staticmethod
    def mark_slot_booked(db: Session, slot_id: int) -> int:
        """Flip an open slot to booked; returns 0 when it was no longer open"""
        return (
            db.query(TimeSlot)
            .filter(TimeSlot.id == slot_id, TimeSlot.is_available.is_(True))
            .update({TimeSlot.is_available: False})
        )

    @staticmethod
    def list_slots(
        db: Session,
        merchant_id: int,
        staff_id: int,
        slot_date: date,
        only_available: bool = False,
    ) -> list[TimeSlot]:
        query = db.query(TimeSlot).filter(
            TimeSlot.merchant_id == merchant_id,
            TimeSlot.staff_id == staff_id,
            TimeSlot.date == slot_date,
        )
        if only_available:
            query = query.filter(TimeSlot.is_available.is_(True))
        return query.order_by(TimeSlot.start_time.asc()).all()

    @staticmethod
    def list_available_dates(
        db: Session,
        merchant_id: int,
        start: date,
        end: date,
        staff_id: Optional[int] = None,
    ) -> list[date]:
        """Distinct dates in [start, end] with at least one open slot"""
        query = db.query(TimeSlot.date).filter(
            TimeSlot.merchant_id == merchant_id,
            TimeSlot.date >= start,
            TimeSlot.date <= end,
            TimeSlot.is_available.is_(True),
        )
        if staff_id:
            query = query.filter(TimeSlot.staff_id == staff_id)
        return [row[0] for row in query.distinct().order_by(TimeSlot.date.asc()).all()]

    @staticmethod
    def get_staff(db: Session, staff_id: int, merchant_id: int) -> Optional[Staff]:
        return (
            db.query(Staff)
            .filter(Staff.id == staff_id, Staff.merchant_id == merchant_id)
            .first()
        )

    @staticmethod
    def get_day_slot_ids(
        db: Session, merchant_id: int, staff_id: int, slot_date: date
    ) -> list[int]:
        rows = (
            db.query(TimeSlot.id)
            .filter(
                TimeSlot.merchant_id == merchant_id,
                TimeSlot.staff_id == staff_id,
                TimeSlot.date == slot_date,
            )
            .with_for_update()
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def get_appointments_for_slots(db: Session, slot_ids: list[int]) -> list[Appointment]:
        if not slot_ids:
            return []
        return db.query(Appointment).filter(Appointment.time_slot_id.in_(slot_ids)).all()

    @staticmethod
    def delete_appointments(db: Session, appointment_ids: list[int]) -> int:
        if not appointment_ids:
            return 0
        return (
            db.query(Appointment)
            .filter(Appointment.id.in_(appointment_ids))
            .delete(synchronize_session=False)
        )

    @staticmethod
    def delete_slots(db: Session, slot_ids: list[int]) -> int:
        if not slot_ids:
            return 0
        return (
            db.query(TimeSlot)
            .filter(TimeSlot.id.in_(slot_ids))
            .delete(synchronize_session=False)
        )

    @staticmethod
    def add_slots(
        db: Session,
        merchant_id: int,
        staff_id: int,
        slot_date: date,
        windows: list[tuple[str, str]],
    ) -> list[TimeSlot]:
        slots = [
            TimeSlot(
                merchant_id=merchant_id,
                staff_id=staff_id,
                date=slot_date,
                start_time=start_time,
                end_time=end_time,
                is_available=True,
            )
            for start_time, end_time in windows
        ]
        db.add_all(slots)
        db.flush()
        return slots
