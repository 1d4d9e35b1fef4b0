"""Payment repository - Database operations for payments and refunds"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Payment, Refund
from ...state_machine import PaymentStatus


class PaymentRepository:
    """Repository for payment and refund database operations"""

    # ========================================================================
    # PAYMENTS
    # ========================================================================

    @staticmethod
    def get_payment(db: Session, payment_id: int) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.id == payment_id).first()

    @staticmethod
    def get_payment_for_update(db: Session, payment_id: int) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.id == payment_id).with_for_update().first()

    @staticmethod
    def get_by_trade_no_for_update(db: Session, out_trade_no: str) -> Optional[Payment]:
        return (
            db.query(Payment)
            .filter(Payment.out_trade_no == out_trade_no)
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_succeeded_for_appointment(db: Session, appointment_id: int) -> Optional[Payment]:
        """Latest successful payment recorded against an appointment"""
        return (
            db.query(Payment)
            .filter(
                Payment.appointment_id == appointment_id,
                Payment.status == PaymentStatus.SUCCESS.value,
            )
            .order_by(Payment.id.desc())
            .first()
        )

    @staticmethod
    def list_stale_pending(db: Session, created_before: datetime, limit: int = 100) -> list[Payment]:
        return (
            db.query(Payment)
            .filter(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.created_at < created_before,
            )
            .order_by(Payment.id.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def create_payment(db: Session, **payment_data) -> Payment:
        payment = Payment(**payment_data)
        db.add(payment)
        db.flush()
        return payment

    # ========================================================================
    # REFUNDS
    # ========================================================================

    @staticmethod
    def get_refund_for_update(db: Session, refund_id: int) -> Optional[Refund]:
        return db.query(Refund).filter(Refund.id == refund_id).with_for_update().first()

    @staticmethod
    def get_refund_by_no_for_update(db: Session, out_refund_no: str) -> Optional[Refund]:
        return (
            db.query(Refund)
            .filter(Refund.out_refund_no == out_refund_no)
            .with_for_update()
            .first()
        )

    @staticmethod
    def create_refund(db: Session, **refund_data) -> Refund:
        refund = Refund(**refund_data)
        db.add(refund)
        db.flush()
        return refund
