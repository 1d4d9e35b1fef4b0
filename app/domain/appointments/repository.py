"""Appointment repository - Database operations for appointments"""

from datetime import date
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from ...models import Appointment, Service


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def get_for_update(db: Session, appointment_id: int) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_user_appointment(
        db: Session, appointment_id: int, user_id: int
    ) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .options(
                joinedload(Appointment.merchant),
                joinedload(Appointment.service),
                joinedload(Appointment.staff),
            )
            .filter(Appointment.id == appointment_id, Appointment.user_id == user_id)
            .first()
        )

    @staticmethod
    def list_user_appointments(
        db: Session, user_id: int, status: Optional[str] = None
    ) -> list[Appointment]:
        query = (
            db.query(Appointment)
            .options(
                joinedload(Appointment.merchant),
                joinedload(Appointment.service),
                joinedload(Appointment.staff),
            )
            .filter(Appointment.user_id == user_id)
        )
        if status:
            query = query.filter(Appointment.status == status)
        return query.order_by(
            Appointment.appointment_date.desc(), Appointment.start_time.desc()
        ).all()

    @staticmethod
    def list_merchant_appointments(
        db: Session,
        merchant_id: int,
        status: Optional[str] = None,
        appointment_date: Optional[date] = None,
    ) -> list[Appointment]:
        query = (
            db.query(Appointment)
            .options(
                joinedload(Appointment.user),
                joinedload(Appointment.service),
                joinedload(Appointment.staff),
            )
            .filter(Appointment.merchant_id == merchant_id)
        )
        if status:
            query = query.filter(Appointment.status == status)
        if appointment_date:
            query = query.filter(Appointment.appointment_date == appointment_date)
        return query.order_by(
            Appointment.appointment_date.desc(), Appointment.start_time.asc()
        ).all()

    @staticmethod
    def get_service(db: Session, service_id: int) -> Optional[Service]:
        return db.query(Service).filter(Service.id == service_id).first()

    @staticmethod
    def create_appointment(db: Session, **appointment_data) -> Appointment:
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.flush()
        return appointment
