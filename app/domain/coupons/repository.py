"""Coupon repository - Database operations for coupon templates and user coupons"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from ...models import CouponTemplate, UserCoupon
from ...state_machine import CouponStatus


class CouponRepository:
    """Repository for coupon database operations"""

    # ========================================================================
    # TEMPLATES
    # ========================================================================

    @staticmethod
    def get_template(db: Session, template_id: int) -> Optional[CouponTemplate]:
        return db.query(CouponTemplate).filter(CouponTemplate.id == template_id).first()

    @staticmethod
    def get_template_for_update(db: Session, template_id: int) -> Optional[CouponTemplate]:
        return (
            db.query(CouponTemplate)
            .filter(CouponTemplate.id == template_id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def list_templates(
        db: Session, merchant_id: int, only_claimable: bool = False
    ) -> list[CouponTemplate]:
        query = db.query(CouponTemplate).filter(CouponTemplate.merchant_id == merchant_id)
        if only_claimable:
            query = query.filter(CouponTemplate.total_count > 0)
        return query.order_by(CouponTemplate.created_at.desc(), CouponTemplate.id.desc()).all()

    @staticmethod
    def create_template(db: Session, merchant_id: int, **template_data) -> CouponTemplate:
        template = CouponTemplate(merchant_id=merchant_id, **template_data)
        db.add(template)
        db.flush()
        return template

    # ========================================================================
    # USER COUPONS
    # ========================================================================

    @staticmethod
    def get_coupon_for_update(db: Session, coupon_id: int) -> Optional[UserCoupon]:
        return db.query(UserCoupon).filter(UserCoupon.id == coupon_id).with_for_update().first()

    @staticmethod
    def mark_coupon_using(db: Session, coupon_id: int) -> int:
        """unused -> using; returns 0 when another booking took the coupon first"""
        return (
            db.query(UserCoupon)
            .filter(
                UserCoupon.id == coupon_id,
                UserCoupon.status == CouponStatus.UNUSED.value,
            )
            .update({UserCoupon.status: CouponStatus.USING.value})
        )

    @staticmethod
    def get_coupon_for_appointment(db: Session, appointment_id: int) -> Optional[UserCoupon]:
        return (
            db.query(UserCoupon)
            .filter(UserCoupon.appointment_id == appointment_id)
            .with_for_update()
            .first()
        )

    @staticmethod
    def code_exists(db: Session, coupon_code: str) -> bool:
        return (
            db.query(UserCoupon.id).filter(UserCoupon.coupon_code == coupon_code).first()
            is not None
        )

    @staticmethod
    def create_coupon(db: Session, **coupon_data) -> UserCoupon:
        coupon = UserCoupon(**coupon_data)
        db.add(coupon)
        db.flush()
        return coupon

    @staticmethod
    def list_user_coupons(
        db: Session, user_id: int, status: Optional[str] = None
    ) -> list[UserCoupon]:
        query = (
            db.query(UserCoupon)
            .options(joinedload(UserCoupon.template))
            .filter(UserCoupon.user_id == user_id)
        )
        if status:
            query = query.filter(UserCoupon.status == status)
        return query.order_by(UserCoupon.valid_to.asc()).all()

    @staticmethod
    def restore_for_appointments(db: Session, appointment_ids: list[int]) -> int:
        """Give coupons held by the given (unpaid) appointments back to their owners"""
        if not appointment_ids:
            return 0
        return (
            db.query(UserCoupon)
            .filter(UserCoupon.appointment_id.in_(appointment_ids))
            .update(
                {
                    UserCoupon.status: CouponStatus.UNUSED.value,
                    UserCoupon.appointment_id: None,
                    UserCoupon.used_at: None,
                },
                synchronize_session=False,
            )
        )

    @staticmethod
    def detach_from_appointments(db: Session, appointment_ids: list[int]) -> int:
        """Drop the appointment link but keep the coupon spent"""
        if not appointment_ids:
            return 0
        return (
            db.query(UserCoupon)
            .filter(UserCoupon.appointment_id.in_(appointment_ids))
            .update({UserCoupon.appointment_id: None}, synchronize_session=False)
        )

    @staticmethod
    def get_overdue_unused(db: Session, now: datetime) -> list[UserCoupon]:
        return (
            db.query(UserCoupon)
            .filter(
                UserCoupon.status == CouponStatus.UNUSED.value,
                UserCoupon.valid_to < now,
            )
            .with_for_update()
            .all()
        )
