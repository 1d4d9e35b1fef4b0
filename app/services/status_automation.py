"""
Automated status housekeeping for coupons and payments
Handles unused → expired for coupons past their validity window
Handles reconciliation of pending payments whose callback never arrived
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from ..domain.coupons.repository import CouponRepository
from ..domain.payments.gateway import WechatPayClient
from ..domain.payments.repository import PaymentRepository
from ..domain.payments.service import PaymentService
from ..errors import DomainError
from ..shared.identifiers import SIMULATED_PAYMENT_PREFIX
from ..state_machine import COUPON_TRANSITIONS, CouponStatus, PaymentStatus, can_transition

logger = logging.getLogger(__name__)

STALE_PAYMENT_MINUTES = 10


def expire_overdue_coupons(db: Session) -> dict:
    """
    Move unused coupons whose valid_to has passed to expired
    Should be run as a scheduled job (e.g., hourly cron)

    Coupons held by a booking (using/used) are left alone; cancelling the
    booking returns them to unused and the next sweep picks them up.

    Returns:
        dict: Summary of status changes made
    """
    summary = {"unused_to_expired": 0}

    try:
        now = datetime.utcnow()
        for coupon in CouponRepository.get_overdue_unused(db, now):
            if not can_transition(coupon.status, CouponStatus.EXPIRED, COUPON_TRANSITIONS):
                continue
            coupon.status = CouponStatus.EXPIRED.value
            summary["unused_to_expired"] += 1
            logger.info(f"✅ Coupon {coupon.coupon_code} transitioned: unused → expired")

        if summary["unused_to_expired"]:
            db.commit()
            logger.info(f"📊 Coupon expiry summary: {summary}")
        else:
            db.rollback()
            logger.debug("ℹ️ No coupons to expire")

        return summary

    except Exception as e:
        logger.error(f"❌ Error expiring coupons: {str(e)}")
        db.rollback()
        raise


def reconcile_stale_payments(
    db: Session, gateway: WechatPayClient, older_than_minutes: int = STALE_PAYMENT_MINUTES
) -> dict:
    """
    Query the gateway for payments left pending longer than older_than_minutes

    Each payment is reconciled in its own transaction; one gateway failure does
    not stop the sweep.

    Returns:
        dict: Summary of outcomes
    """
    summary = {"checked": 0, "settled": 0, "closed": 0, "failed": 0, "errors": 0}

    if not gateway.is_configured():
        logger.warning("⚠️ WeChat Pay not configured; skipping payment reconciliation")
        return summary

    cutoff = datetime.utcnow() - timedelta(minutes=older_than_minutes)
    stale = PaymentRepository.list_stale_pending(db, cutoff)
    service = PaymentService(db, gateway)

    for payment_id, out_trade_no in [(p.id, p.out_trade_no) for p in stale]:
        if out_trade_no.startswith(SIMULATED_PAYMENT_PREFIX):
            continue
        summary["checked"] += 1
        try:
            payment = service.reconcile_payment(payment_id)
        except DomainError as e:
            summary["errors"] += 1
            logger.error(f"❌ Reconciliation failed for {out_trade_no} ({e.code}): {e.reason}")
            continue

        if payment.status == PaymentStatus.SUCCESS.value:
            summary["settled"] += 1
        elif payment.status == PaymentStatus.CLOSED.value:
            summary["closed"] += 1
        elif payment.status == PaymentStatus.FAILED.value:
            summary["failed"] += 1

    logger.info(f"📊 Payment reconciliation summary: {summary}")
    return summary
