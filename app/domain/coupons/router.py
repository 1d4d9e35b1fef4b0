"""Coupon router - FastAPI endpoints for coupons"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import get_current_merchant, get_current_user
from ...database import get_db
from ...models import Merchant, User
from .schemas import CouponTemplateCreate, CouponTemplateResponse, UserCouponResponse
from .service import CouponService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customer", tags=["Customer - Coupons"])
merchant_router = APIRouter(prefix="/api/merchant", tags=["Merchant - Coupons"])


def get_coupon_service(db: Session = Depends(get_db)) -> CouponService:
    """Dependency injection for CouponService"""
    return CouponService(db)


# ============================================================================
# CUSTOMER
# ============================================================================


@router.get("/coupons", response_model=list[UserCouponResponse])
def get_my_coupons(
    status: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    service: CouponService = Depends(get_coupon_service),
):
    """Coupons owned by the current user, soonest expiry first"""
    return service.list_user_coupons(current_user, status)


@router.get("/coupons/available", response_model=list[CouponTemplateResponse])
def get_claimable_templates(
    merchant_id: int = Query(...),
    current_user: User = Depends(get_current_user),
    service: CouponService = Depends(get_coupon_service),
):
    """Coupon templates of a merchant that still have stock"""
    return service.list_templates(merchant_id, only_claimable=True)


@router.post("/coupons/{template_id}/claim", response_model=UserCouponResponse)
def claim_coupon(
    template_id: int,
    current_user: User = Depends(get_current_user),
    service: CouponService = Depends(get_coupon_service),
):
    return service.claim(current_user, template_id)


# ============================================================================
# MERCHANT
# ============================================================================


@merchant_router.get("/coupons", response_model=list[CouponTemplateResponse])
def get_merchant_templates(
    current_merchant: Merchant = Depends(get_current_merchant),
    service: CouponService = Depends(get_coupon_service),
):
    return service.list_templates(current_merchant.id)


@merchant_router.post("/coupons", response_model=CouponTemplateResponse)
def create_template(
    data: CouponTemplateCreate,
    current_merchant: Merchant = Depends(get_current_merchant),
    service: CouponService = Depends(get_coupon_service),
):
    """Issue a new coupon template"""
    return service.create_template(current_merchant, data)
