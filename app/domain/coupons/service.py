"""Coupon service - Business logic for the coupon ledger"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import (
    CouponBelowMinimum,
    CouponExhausted,
    CouponExpired,
    CouponNotFound,
    CouponNotUnused,
    CouponNotYetValid,
    CouponWrongMerchant,
    CouponWrongOwner,
    InvalidStatusTransition,
    TemplateNotFound,
    UnknownDiscountType,
    ValidationFailed,
)
from ...models import CouponTemplate, Merchant, User, UserCoupon
from ...shared.identifiers import generate_coupon_code
from ...state_machine import (
    COUPON_TRANSITIONS,
    PRE_PAYMENT_STATES,
    AppointmentStatus,
    CouponStatus,
    DiscountType,
    ensure_transition,
)
from .repository import CouponRepository
from .schemas import CouponApplication, CouponTemplateCreate

logger = logging.getLogger(__name__)

MAX_CODE_ATTEMPTS = 5


def compute_discount(discount_type: str, discount_value: int, original_amount: int) -> int:
    """Discount in minor units; percent discounts round down"""
    if discount_type == DiscountType.FIXED.value:
        return discount_value
    if discount_type == DiscountType.PERCENT.value:
        return original_amount * discount_value // 100
    raise UnknownDiscountType(f"Unknown discount type: {discount_type}")


class CouponService:
    """Service layer for coupon business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = CouponRepository()

    # ========================================================================
    # CLAIM (own transaction)
    # ========================================================================

    def claim(self, user: User, template_id: int) -> UserCoupon:
        """Take one coupon from a template's remaining stock"""
        logger.info(f"📥 User {user.id} claiming coupon template {template_id}")
        try:
            template = self.repo.get_template_for_update(self.db, template_id)
            if not template:
                raise TemplateNotFound(f"Coupon template {template_id} not found")
            if template.total_count <= 0:
                raise CouponExhausted(f"Coupon template {template_id} has no coupons left")

            now = datetime.utcnow()
            coupon = self.repo.create_coupon(
                self.db,
                user_id=user.id,
                template_id=template.id,
                coupon_code=self._unique_code(),
                status=CouponStatus.UNUSED.value,
                valid_from=now,
                valid_to=now + timedelta(days=template.validity_days),
            )
            template.total_count -= 1

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(coupon)
        logger.info(
            f"✅ Coupon {coupon.coupon_code} issued to user {user.id} ({template.total_count} left)"
        )
        return coupon

    def _unique_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_coupon_code()
            if not self.repo.code_exists(self.db, code):
                return code
        raise RuntimeError("Could not generate a unique coupon code")

    # ========================================================================
    # REDEMPTION (caller's transaction)
    # ========================================================================

    def apply(
        self,
        user_id: int,
        coupon_id: int,
        original_amount: int,
        merchant_id: Optional[int] = None,
    ) -> CouponApplication:
        """
        Validate a coupon against a booking price and soft-lock it as ``using``.

        Runs inside the booking transaction: a rollback returns the coupon to
        ``unused``.
        """
        coupon = self.repo.get_coupon_for_update(self.db, coupon_id)
        if not coupon:
            raise CouponNotFound(f"Coupon {coupon_id} not found")
        if coupon.user_id != user_id:
            raise CouponWrongOwner(f"Coupon {coupon_id} does not belong to user {user_id}")
        if coupon.status != CouponStatus.UNUSED.value:
            raise CouponNotUnused(f"Coupon {coupon_id} is {coupon.status}")

        now = datetime.utcnow()
        if now < coupon.valid_from:
            raise CouponNotYetValid(
                f"Coupon {coupon_id} is valid from {coupon.valid_from:%Y-%m-%d}"
            )
        if now > coupon.valid_to:
            raise CouponExpired(f"Coupon {coupon_id} expired on {coupon.valid_to:%Y-%m-%d}")

        template = coupon.template
        if merchant_id is not None and template.merchant_id != merchant_id:
            raise CouponWrongMerchant(
                f"Coupon {coupon_id} was issued by merchant {template.merchant_id}, not {merchant_id}"
            )
        if original_amount < template.min_amount:
            raise CouponBelowMinimum(
                f"Order amount {original_amount} is below the coupon minimum {template.min_amount}"
            )

        discount = compute_discount(template.discount_type, template.discount_value, original_amount)
        final_amount = max(original_amount - discount, 0)

        ensure_transition(coupon.status, CouponStatus.USING, COUPON_TRANSITIONS, "coupon")
        if self.repo.mark_coupon_using(self.db, coupon.id) != 1:
            raise CouponNotUnused(f"Coupon {coupon_id} was taken by a concurrent booking")

        logger.info(
            f"🎟️ Coupon {coupon.coupon_code} applied: {original_amount} - {discount} = {final_amount}"
        )
        return CouponApplication(
            original_amount=original_amount,
            discount=discount,
            final_amount=final_amount,
            coupon=coupon,
        )

    def finalize(self, coupon: UserCoupon, appointment_id: int) -> UserCoupon:
        ensure_transition(coupon.status, CouponStatus.USED, COUPON_TRANSITIONS, "coupon")
        coupon.status = CouponStatus.USED.value
        coupon.appointment_id = appointment_id
        coupon.used_at = datetime.utcnow()
        self.db.flush()
        return coupon

    def revert(self, coupon: UserCoupon, appointment_status) -> UserCoupon:
        """Give a coupon back while its appointment has not been paid"""
        if AppointmentStatus(appointment_status) not in PRE_PAYMENT_STATES:
            raise InvalidStatusTransition(
                f"Coupon {coupon.id} cannot be restored once the appointment is {appointment_status}"
            )
        ensure_transition(coupon.status, CouponStatus.UNUSED, COUPON_TRANSITIONS, "coupon")
        coupon.status = CouponStatus.UNUSED.value
        coupon.appointment_id = None
        coupon.used_at = None
        self.db.flush()
        logger.info(f"↩️ Coupon {coupon.coupon_code} restored to unused")
        return coupon

    def revert_for_appointment(self, appointment_id: int, appointment_status) -> Optional[UserCoupon]:
        coupon = self.repo.get_coupon_for_appointment(self.db, appointment_id)
        if not coupon:
            return None
        return self.revert(coupon, appointment_status)

    def get_coupon_for_appointment(self, appointment_id: int) -> Optional[UserCoupon]:
        return self.repo.get_coupon_for_appointment(self.db, appointment_id)

    # ========================================================================
    # READ PATHS
    # ========================================================================

    def list_user_coupons(self, user: User, status: Optional[str] = None) -> list[UserCoupon]:
        if status:
            try:
                status = CouponStatus(status).value
            except ValueError as e:
                raise ValidationFailed(f"Unknown coupon status: {status}") from e
        return self.repo.list_user_coupons(self.db, user.id, status)

    def list_templates(self, merchant_id: int, only_claimable: bool = False) -> list[CouponTemplate]:
        return self.repo.list_templates(self.db, merchant_id, only_claimable)

    # ========================================================================
    # TEMPLATE AUTHORING
    # ========================================================================

    def create_template(self, merchant: Merchant, data: CouponTemplateCreate) -> CouponTemplate:
        logger.info(f"📥 Merchant {merchant.id} creating coupon template '{data.name}'")
        try:
            template = self.repo.create_template(
                self.db,
                merchant.id,
                name=data.name,
                description=data.description,
                discount_type=data.discount_type.value,
                discount_value=data.discount_value,
                min_amount=data.min_amount,
                validity_days=data.validity_days,
                total_count=data.total_count,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(template)
        logger.info(f"✅ Coupon template {template.id} created with {template.total_count} coupons")
        return template
