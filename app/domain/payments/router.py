"""Payment router - FastAPI endpoints for payments, refunds and gateway callbacks"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ... import config
from ...auth import get_current_merchant, get_current_user
from ...database import get_db
from ...errors import DomainError
from ...models import Merchant, User
from ...webhook_security import WebhookSignatureError, parse_xml, to_xml
from .gateway import SUCCESS, WechatPayClient, get_wechat_pay_client
from .schemas import (
    PaymentCreate,
    PaymentIntentResponse,
    PaymentResponse,
    RefundCreate,
    RefundResponse,
    SimulateNotifyRequest,
)
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customer", tags=["Customer - Payments"])
merchant_router = APIRouter(prefix="/api/merchant", tags=["Merchant - Payments"])
gateway_router = APIRouter(prefix="/api/payments", tags=["Payment Gateway"])


def get_simulate_mode() -> bool:
    """Whether simulated (SIM) payments are honoured"""
    return config.PAYMENT_SIMULATE


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: WechatPayClient = Depends(get_wechat_pay_client),
    simulate: bool = Depends(get_simulate_mode),
) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db, gateway, simulate)


def gateway_ack(ok: bool, message: str = "OK") -> Response:
    """XML acknowledgement the gateway expects; FAIL makes it retry"""
    body = to_xml({"return_code": SUCCESS if ok else "FAIL", "return_msg": message})
    return Response(content=body, media_type="application/xml")


# ============================================================================
# CUSTOMER
# ============================================================================


@router.post("/appointments/{appointment_id}/pay", response_model=PaymentIntentResponse)
def pay_appointment(
    appointment_id: int,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Start payment for a confirmed appointment"""
    return service.pay_for_appointment(current_user, appointment_id)


@router.post("/payments", response_model=PaymentIntentResponse)
def create_payment(
    data: PaymentCreate,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """Create a payment intent and return the prepay payload"""
    return service.create_payment_intent(
        current_user, data.amount, data.description, data.appointment_id
    )


@router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_payment(
    payment_id: int,
    current_user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_customer_payment(current_user, payment_id)


# ============================================================================
# GATEWAY CALLBACKS
# ============================================================================


@gateway_router.post("/notify")
async def payment_notify(request: Request, service: PaymentService = Depends(get_payment_service)):
    """
    Asynchronous payment result from the gateway.

    Answers SUCCESS once the result is applied (or was already applied) and FAIL
    otherwise, so the gateway retries.
    """
    body = await request.body()
    try:
        fields = parse_xml(body)
    except WebhookSignatureError as e:
        logger.warning(f"⚠️ Unreadable payment notification: {e}")
        raise HTTPException(status_code=400, detail="Malformed notification body")

    try:
        await run_in_threadpool(service.handle_notification, fields)
    except DomainError as e:
        logger.error(f"❌ Payment notification rejected ({e.code}): {e.reason}")
        return gateway_ack(False, e.code)

    return gateway_ack(True)


@gateway_router.post("/refund-notify")
async def refund_notify(request: Request, service: PaymentService = Depends(get_payment_service)):
    """Asynchronous refund result; the payload is encrypted in req_info"""
    body = await request.body()
    try:
        fields = parse_xml(body)
    except WebhookSignatureError as e:
        logger.warning(f"⚠️ Unreadable refund notification: {e}")
        raise HTTPException(status_code=400, detail="Malformed notification body")

    try:
        await run_in_threadpool(service.handle_refund_notification, fields)
    except DomainError as e:
        logger.error(f"❌ Refund notification rejected ({e.code}): {e.reason}")
        return gateway_ack(False, e.code)

    return gateway_ack(True)


@gateway_router.post("/simulate-notify", response_model=PaymentResponse)
def simulate_notify(
    data: SimulateNotifyRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Settle a simulated payment; disabled unless PAYMENT_SIMULATE is on"""
    return service.simulate_notification(data.payment_id, data.out_trade_no, data.status)


# ============================================================================
# MERCHANT
# ============================================================================


@merchant_router.post("/appointments/{appointment_id}/refund", response_model=RefundResponse)
def refund_appointment(
    appointment_id: int,
    data: RefundCreate,
    current_merchant: Merchant = Depends(get_current_merchant),
    service: PaymentService = Depends(get_payment_service),
):
    """Refund a paid or completed appointment"""
    return service.initiate_refund(current_merchant, appointment_id, data.amount, data.reason)


@merchant_router.get("/payments/{payment_id}", response_model=PaymentResponse)
def get_merchant_payment(
    payment_id: int,
    current_merchant: Merchant = Depends(get_current_merchant),
    service: PaymentService = Depends(get_payment_service),
):
    return service.get_merchant_payment(current_merchant, payment_id)


@merchant_router.post("/payments/{payment_id}/reconcile", response_model=PaymentResponse)
def reconcile_payment(
    payment_id: int,
    current_merchant: Merchant = Depends(get_current_merchant),
    service: PaymentService = Depends(get_payment_service),
):
    """Query the gateway for a pending payment whose callback never arrived"""
    return service.reconcile_payment(payment_id, current_merchant)
