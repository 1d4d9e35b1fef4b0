"""Payment service - Payment intents, gateway callbacks, refunds and reconciliation"""

import json
import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from ...errors import (
    AmountMismatch,
    AppointmentNotFound,
    ForbiddenError,
    GatewayError,
    GatewayReportedFailure,
    NotAppointmentOwner,
    NotCompleted,
    NotPayable,
    PaymentNotFound,
    PaymentNotSucceeded,
    PaymentStateConflict,
    RefundExceedsPayment,
    RefundNotFound,
    SignatureInvalid,
    SimulationDisabled,
    UnknownOrder,
    ValidationFailed,
)
from ...models import Appointment, Merchant, Payment, Refund, User
from ...shared.identifiers import (
    PAYMENT_PREFIX,
    REFUND_PREFIX,
    SIMULATED_PAYMENT_PREFIX,
    SIMULATED_REFUND_PREFIX,
    format_amount,
    generate_trade_no,
)
from ...state_machine import (
    PAYMENT_FLOW_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    REFUND_TRANSITIONS,
    AppointmentStatus,
    PaymentStatus,
    RefundStatus,
    can_transition,
    ensure_transition,
)
from ...webhook_security import WebhookSignatureError
from ..appointments.repository import AppointmentRepository
from ..slots.service import SlotService
from .gateway import SUCCESS, WechatPayClient
from .repository import PaymentRepository
from .schemas import PaymentIntentResponse, PrepayPayload

logger = logging.getLogger(__name__)

REFUNDABLE_APPOINTMENT_STATES = frozenset({AppointmentStatus.PAID, AppointmentStatus.COMPLETED})

# Payment states in which a repeated success notification is already accounted for
SETTLED_PAYMENT_STATES = frozenset(
    {PaymentStatus.SUCCESS, PaymentStatus.REFUNDING, PaymentStatus.REFUNDED}
)

CLOSED_TRADE_STATES = {"CLOSED": PaymentStatus.CLOSED, "REVOKED": PaymentStatus.CLOSED}
FAILED_TRADE_STATES = {"PAYERROR"}


def raw_payload(fields: Mapping[str, Any]) -> str:
    """Audit copy of a gateway payload"""
    return json.dumps(dict(fields), ensure_ascii=False, sort_keys=True)


def parse_fee(value: Optional[str]) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PaymentService:
    """Service layer for the payment reconciler"""

    def __init__(self, db: Session, gateway: WechatPayClient, simulate: bool = False):
        self.db = db
        self.gateway = gateway
        self.simulate = simulate
        self.repo = PaymentRepository()
        self.appointments = AppointmentRepository()
        self.slots = SlotService(db)

    # ========================================================================
    # PAYMENT INTENTS
    # ========================================================================

    def create_payment_intent(
        self,
        customer: User,
        amount: int,
        description: str,
        appointment_id: Optional[int] = None,
        merchant_id: Optional[int] = None,
    ) -> PaymentIntentResponse:
        """
        Commit a pending payment, then ask the gateway for a prepay payload.

        The gateway call happens after the commit; a failed call marks the payment
        failed and keeps the row.
        """
        if amount < 1:
            raise ValidationFailed("Payment amount must be at least 1")
        if not customer.openid:
            raise ValidationFailed("Customer has no WeChat openid; cannot place a JSAPI order")

        if appointment_id is not None:
            appointment = self._get_payable_appointment(customer, appointment_id)
            if appointment.amount != amount:
                raise ValidationFailed(
                    f"Amount {amount} does not match appointment amount {appointment.amount}"
                )
            merchant_id = appointment.merchant_id

        try:
            payment = self.repo.create_payment(
                self.db,
                customer_id=customer.id,
                merchant_id=merchant_id,
                appointment_id=appointment_id,
                out_trade_no=generate_trade_no(PAYMENT_PREFIX),
                amount=amount,
                description=description,
                status=PaymentStatus.PENDING.value,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"📥 Payment {payment.out_trade_no} created: customer={customer.id} amount={format_amount(amount)}"
        )

        try:
            prepay = self.gateway.create_jsapi_order(
                payment.out_trade_no, amount, description, customer.openid
            )
        except GatewayError as e:
            logger.error(f"❌ Gateway order failed for {payment.out_trade_no}: {e.reason}")
            self._mark_intent_failed(payment.id, e.reason)
            raise

        return PaymentIntentResponse(
            payment_id=payment.id,
            out_trade_no=payment.out_trade_no,
            simulate=False,
            prepay=PrepayPayload(**prepay),
        )

    def _mark_intent_failed(self, payment_id: int, reason: str) -> None:
        try:
            payment = self.repo.get_payment_for_update(self.db, payment_id)
            if payment and can_transition(payment.status, PaymentStatus.FAILED, PAYMENT_TRANSITIONS):
                payment.status = PaymentStatus.FAILED.value
                payment.fail_reason = reason[:255]
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def pay_for_appointment(self, customer: User, appointment_id: int) -> PaymentIntentResponse:
        """Start payment for a confirmed appointment at its booked amount"""
        appointment = self._get_payable_appointment(customer, appointment_id)
        if appointment.amount < 1:
            raise ValidationFailed(
                f"Appointment {appointment.order_no} has nothing to pay; the merchant can complete it directly"
            )

        description = f"Appointment {appointment.order_no}"
        if not self.simulate:
            return self.create_payment_intent(
                customer, appointment.amount, description, appointment.id, appointment.merchant_id
            )

        try:
            payment = self.repo.create_payment(
                self.db,
                customer_id=customer.id,
                merchant_id=appointment.merchant_id,
                appointment_id=appointment.id,
                out_trade_no=generate_trade_no(SIMULATED_PAYMENT_PREFIX),
                amount=appointment.amount,
                description=f"Simulated payment {appointment.order_no}",
                status=PaymentStatus.PENDING.value,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"🧪 Simulated payment {payment.out_trade_no} created for {appointment.order_no}")
        return PaymentIntentResponse(
            payment_id=payment.id, out_trade_no=payment.out_trade_no, simulate=True
        )

    def _get_payable_appointment(self, customer: User, appointment_id: int) -> Appointment:
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise AppointmentNotFound(f"Appointment {appointment_id} not found")
        if appointment.user_id != customer.id:
            raise NotAppointmentOwner(
                f"Appointment {appointment_id} does not belong to user {customer.id}"
            )
        if not can_transition(appointment.status, AppointmentStatus.PAID, PAYMENT_FLOW_TRANSITIONS):
            raise NotPayable(
                f"Appointment {appointment.order_no} is {appointment.status}; only confirmed bookings can be paid"
            )
        return appointment

    # ========================================================================
    # PAYMENT NOTIFICATIONS
    # ========================================================================

    def handle_notification(self, fields: Mapping[str, str]) -> Payment:
        """
        Apply the gateway's asynchronous payment result.

        Checks run in a fixed order: signature, return_code, locked lookup,
        result_code, amount. A repeated success for a settled payment is a no-op.
        """
        out_trade_no = fields.get("out_trade_no", "")
        logger.info(f"📥 Payment notification for {out_trade_no}")

        if not self.gateway.verify_notification(fields):
            raise SignatureInvalid(f"Signature verification failed for {out_trade_no}")

        if fields.get("return_code") != SUCCESS:
            raise GatewayReportedFailure(
                f"Notification for {out_trade_no} carried return_code={fields.get('return_code')}: "
                f"{fields.get('return_msg', '')}"
            )

        error = None
        try:
            payment = self.repo.get_by_trade_no_for_update(self.db, out_trade_no)
            if not payment:
                raise UnknownOrder(f"No payment with trade number {out_trade_no}")

            result_ok = fields.get("result_code") == SUCCESS
            status = PaymentStatus(payment.status)

            if status in SETTLED_PAYMENT_STATES:
                if result_ok:
                    self._log_duplicate(payment, fields.get("transaction_id"))
                    self.db.commit()
                    return payment
                raise PaymentStateConflict(
                    f"Failure notification for settled payment {out_trade_no} ({payment.status})"
                )

            if status in (PaymentStatus.FAILED, PaymentStatus.CLOSED):
                if not result_ok:
                    logger.info(f"ℹ️ Repeated failure notification for {out_trade_no}; ignoring")
                    self.db.commit()
                    return payment
                raise PaymentStateConflict(
                    f"Success notification for {payment.status} payment {out_trade_no}; needs manual review"
                )

            raw = raw_payload(fields)
            if not result_ok:
                reason = fields.get("err_code_des") or fields.get("err_code") or "result_code FAIL"
                payment.status = PaymentStatus.FAILED.value
                payment.fail_reason = reason[:255]
                payment.raw_notify = raw
                error = GatewayReportedFailure(f"Payment {out_trade_no} failed: {reason}")
            else:
                notified = parse_fee(fields.get("total_fee"))
                if notified != payment.amount:
                    payment.fail_reason = (
                        f"Amount mismatch: expected {payment.amount}, notified {fields.get('total_fee')}"
                    )
                    payment.raw_notify = raw
                    error = AmountMismatch(f"Payment {out_trade_no}: {payment.fail_reason}")
                else:
                    self._apply_success(payment, fields.get("transaction_id"), raw)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if error is not None:
            logger.error(f"❌ {error.reason}")
            raise error

        logger.info(f"✅ Payment {out_trade_no} settled: {format_amount(payment.amount)}")
        return payment

    def _log_duplicate(self, payment: Payment, transaction_id: Optional[str]) -> None:
        if transaction_id and payment.transaction_id and transaction_id != payment.transaction_id:
            logger.warning(
                f"⚠️ Duplicate notification for {payment.out_trade_no} with a different transaction id: "
                f"{payment.transaction_id} vs {transaction_id}"
            )
        else:
            logger.info(f"ℹ️ Duplicate notification for {payment.out_trade_no}; already {payment.status}")

    def _apply_success(self, payment: Payment, transaction_id: Optional[str], raw: str) -> None:
        """Payment pending -> success and its appointment confirmed -> paid"""
        ensure_transition(payment.status, PaymentStatus.SUCCESS, PAYMENT_TRANSITIONS, "payment")
        payment.status = PaymentStatus.SUCCESS.value
        payment.paid_at = datetime.utcnow()
        payment.transaction_id = transaction_id or payment.transaction_id
        payment.raw_notify = raw
        payment.fail_reason = None

        if not payment.appointment_id:
            return

        appointment = self.appointments.get_for_update(self.db, payment.appointment_id)
        if appointment is None:
            logger.error(
                f"❌ Payment {payment.out_trade_no} settled but appointment {payment.appointment_id} is gone"
            )
            return
        if not can_transition(appointment.status, AppointmentStatus.PAID, PAYMENT_FLOW_TRANSITIONS):
            # Money arrived for a booking that moved on; keep the payment, flag for refund
            logger.error(
                f"❌ Payment {payment.out_trade_no} settled for appointment {appointment.order_no} "
                f"in status {appointment.status}; manual refund required"
            )
            return

        appointment.status = AppointmentStatus.PAID.value
        appointment.payment_id = payment.id

    def simulate_notification(self, payment_id: int, out_trade_no: str, status: str) -> Payment:
        """Operator-driven settlement of a simulated (SIM) payment"""
        if not self.simulate:
            raise SimulationDisabled("Simulated payments are disabled in this environment")

        try:
            payment = self.repo.get_payment_for_update(self.db, payment_id)
            if not payment:
                raise PaymentNotFound(f"Payment {payment_id} not found")
            if payment.out_trade_no != out_trade_no:
                raise ValidationFailed(f"Trade number does not match payment {payment_id}")
            if not payment.out_trade_no.startswith(SIMULATED_PAYMENT_PREFIX):
                raise ForbiddenError(f"Payment {payment_id} is not a simulated payment")

            target = PaymentStatus(status)
            if payment.status == target.value:
                self.db.commit()
                return payment
            if payment.status != PaymentStatus.PENDING.value:
                raise PaymentStateConflict(
                    f"Simulated payment {out_trade_no} is already {payment.status}"
                )

            raw = raw_payload({"out_trade_no": out_trade_no, "status": status, "simulate": "true"})
            if target == PaymentStatus.SUCCESS:
                self._apply_success(payment, None, raw)
            else:
                payment.status = PaymentStatus.FAILED.value
                payment.fail_reason = "Simulated failure"
                payment.raw_notify = raw

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"🧪 Simulated payment {out_trade_no} marked {payment.status}")
        return payment

    # ========================================================================
    # REFUNDS
    # ========================================================================

    def initiate_refund(
        self, merchant: Merchant, appointment_id: int, amount: int, reason: Optional[str] = None
    ) -> Refund:
        """
        Refund a paid or completed appointment.

        The payment row is moved to refunding in the same transaction that records the
        refund, so a second refund cannot start while the gateway call is in flight.
        """
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment or appointment.merchant_id != merchant.id:
            raise AppointmentNotFound(f"Appointment {appointment_id} not found")
        payment_ref = appointment.payment_id or getattr(
            self.repo.get_succeeded_for_appointment(self.db, appointment.id), "id", None
        )

        try:
            # Lock order: payment, then appointment
            payment = (
                self.repo.get_payment_for_update(self.db, payment_ref) if payment_ref else None
            )
            appointment = self.appointments.get_for_update(self.db, appointment_id)

            if AppointmentStatus(appointment.status) not in REFUNDABLE_APPOINTMENT_STATES:
                raise NotCompleted(
                    f"Appointment {appointment.order_no} is {appointment.status}; only paid or completed bookings can be refunded"
                )
            if not payment or payment.status != PaymentStatus.SUCCESS.value:
                raise PaymentNotSucceeded(
                    f"Appointment {appointment.order_no} has no successful payment to refund"
                )
            if amount < 1:
                raise ValidationFailed("Refund amount must be at least 1")
            if amount > payment.amount:
                raise RefundExceedsPayment(
                    f"Refund {amount} exceeds paid amount {payment.amount}"
                )

            if self.simulate:
                refund = self._simulated_refund(payment, appointment, amount, reason)
                self.db.commit()
                self.db.refresh(refund)
                logger.info(f"🧪 Simulated refund {refund.out_refund_no} completed")
                return refund

            refund = self.repo.create_refund(
                self.db,
                payment_id=payment.id,
                appointment_id=appointment.id,
                out_refund_no=generate_trade_no(REFUND_PREFIX),
                amount=amount,
                reason=reason,
                appointment_status=appointment.status,
                status=RefundStatus.PROCESSING.value,
            )
            ensure_transition(payment.status, PaymentStatus.REFUNDING, PAYMENT_TRANSITIONS, "payment")
            payment.status = PaymentStatus.REFUNDING.value
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        refund_id, out_refund_no = refund.id, refund.out_refund_no
        logger.info(f"📤 Refund {out_refund_no} recorded; calling gateway")

        try:
            result = self.gateway.create_refund(
                payment.out_trade_no, out_refund_no, payment.amount, amount, reason
            )
        except GatewayError as e:
            logger.error(f"❌ Gateway refund failed for {out_refund_no}: {e.reason}")
            self._mark_refund_rejected(refund_id, e.reason)
            raise

        try:
            refund = self.repo.get_refund_for_update(self.db, refund_id)
            refund.refund_id = result.get("refund_id")
            appointment = self.appointments.get_for_update(self.db, appointment_id)
            if can_transition(appointment.status, AppointmentStatus.REFUNDING, PAYMENT_FLOW_TRANSITIONS):
                appointment.status = AppointmentStatus.REFUNDING.value
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(refund)
        logger.info(f"✅ Refund {out_refund_no} accepted by gateway; awaiting result notification")
        return refund

    def _simulated_refund(
        self, payment: Payment, appointment: Appointment, amount: int, reason: Optional[str]
    ) -> Refund:
        refund = self.repo.create_refund(
            self.db,
            payment_id=payment.id,
            appointment_id=appointment.id,
            out_refund_no=generate_trade_no(SIMULATED_REFUND_PREFIX),
            amount=amount,
            reason=reason,
            appointment_status=appointment.status,
            status=RefundStatus.SUCCESS.value,
            refunded_at=datetime.utcnow(),
        )
        ensure_transition(payment.status, PaymentStatus.REFUNDED, PAYMENT_TRANSITIONS, "payment")
        payment.status = PaymentStatus.REFUNDED.value
        self._cancel_refunded_appointment(appointment)
        return refund

    def _cancel_refunded_appointment(self, appointment: Appointment) -> None:
        ensure_transition(appointment.status, AppointmentStatus.CANCELED, PAYMENT_FLOW_TRANSITIONS)
        appointment.status = AppointmentStatus.CANCELED.value
        self.slots.release(appointment.time_slot_id)

    def _mark_refund_rejected(self, refund_id: int, reason: str) -> None:
        """Gateway refused the refund: refund failed, payment back to success"""
        try:
            refund = self.repo.get_refund_for_update(self.db, refund_id)
            payment = self.repo.get_payment_for_update(self.db, refund.payment_id)
            refund.status = RefundStatus.FAILED.value
            refund.fail_reason = reason[:255]
            if payment.status == PaymentStatus.REFUNDING.value:
                payment.status = PaymentStatus.SUCCESS.value
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def handle_refund_notification(self, fields: Mapping[str, str]) -> Refund:
        """
        Apply the gateway's asynchronous refund result.

        The payload is authenticated by decrypting ``req_info`` with the merchant key.
        """
        if fields.get("return_code") != SUCCESS:
            raise GatewayReportedFailure(
                f"Refund notification carried return_code={fields.get('return_code')}: "
                f"{fields.get('return_msg', '')}"
            )
        if fields.get("mch_id") and fields.get("mch_id") != self.gateway.mch_id:
            raise SignatureInvalid(f"Refund notification for foreign merchant {fields.get('mch_id')}")

        try:
            info = self.gateway.decrypt_refund_info(fields.get("req_info", ""))
        except WebhookSignatureError as e:
            raise SignatureInvalid("Refund notification could not be decrypted") from e

        out_refund_no = info.get("out_refund_no", "")
        refund_status = info.get("refund_status", "")
        logger.info(f"📥 Refund notification for {out_refund_no}: {refund_status}")

        error = None
        try:
            refund = self.repo.get_refund_by_no_for_update(self.db, out_refund_no)
            if not refund:
                raise RefundNotFound(f"No refund with number {out_refund_no}")

            if refund.status != RefundStatus.PROCESSING.value:
                logger.info(f"ℹ️ Duplicate refund notification for {out_refund_no}; already {refund.status}")
                self.db.commit()
                return refund

            payment = self.repo.get_payment_for_update(self.db, refund.payment_id)
            appointment = (
                self.appointments.get_for_update(self.db, refund.appointment_id)
                if refund.appointment_id
                else None
            )

            notified = parse_fee(info.get("refund_fee"))
            if refund_status == SUCCESS and notified is not None and notified != refund.amount:
                refund.fail_reason = f"Amount mismatch: expected {refund.amount}, notified {notified}"
                error = AmountMismatch(f"Refund {out_refund_no}: {refund.fail_reason}")
            elif refund_status == SUCCESS:
                ensure_transition(refund.status, RefundStatus.SUCCESS, REFUND_TRANSITIONS, "refund")
                refund.status = RefundStatus.SUCCESS.value
                refund.refund_id = info.get("refund_id") or refund.refund_id
                refund.refunded_at = datetime.utcnow()
                if can_transition(payment.status, PaymentStatus.REFUNDED, PAYMENT_TRANSITIONS):
                    payment.status = PaymentStatus.REFUNDED.value
                if appointment is not None and can_transition(
                    appointment.status, AppointmentStatus.CANCELED, PAYMENT_FLOW_TRANSITIONS
                ):
                    self._cancel_refunded_appointment(appointment)
            else:
                ensure_transition(refund.status, RefundStatus.FAILED, REFUND_TRANSITIONS, "refund")
                refund.status = RefundStatus.FAILED.value
                refund.fail_reason = f"Gateway refund status {refund_status or 'unknown'}"
                if payment.status == PaymentStatus.REFUNDING.value:
                    payment.status = PaymentStatus.SUCCESS.value
                if appointment is not None and appointment.status == AppointmentStatus.REFUNDING.value:
                    restored = refund.appointment_status or AppointmentStatus.PAID.value
                    ensure_transition(appointment.status, restored, PAYMENT_FLOW_TRANSITIONS)
                    appointment.status = restored

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if error is not None:
            logger.error(f"❌ {error.reason}")
            raise error

        logger.info(f"✅ Refund {out_refund_no} resolved as {refund.status}")
        return refund

    # ========================================================================
    # RECONCILIATION
    # ========================================================================

    def reconcile_payment(self, payment_id: int, merchant: Optional[Merchant] = None) -> Payment:
        """
        Ask the gateway for the state of a pending payment and apply it.

        Recovers payments whose callback was lost; non-pending payments are returned
        unchanged.
        """
        payment = (
            self.get_merchant_payment(merchant, payment_id)
            if merchant is not None
            else self.repo.get_payment(self.db, payment_id)
        )
        if not payment:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        if payment.status != PaymentStatus.PENDING.value:
            return payment
        if payment.out_trade_no.startswith(SIMULATED_PAYMENT_PREFIX):
            raise ValidationFailed("Simulated payments are settled through simulate-notify")

        result = self.gateway.query_order(payment.out_trade_no)
        trade_state = result.get("trade_state", "")

        error = None
        try:
            payment = self.repo.get_payment_for_update(self.db, payment_id)
            if payment.status != PaymentStatus.PENDING.value:
                self.db.commit()
                return payment

            if trade_state == SUCCESS:
                notified = parse_fee(result.get("total_fee"))
                if notified != payment.amount:
                    payment.fail_reason = (
                        f"Amount mismatch: expected {payment.amount}, gateway {result.get('total_fee')}"
                    )
                    payment.raw_notify = raw_payload(result)
                    error = AmountMismatch(f"Payment {payment.out_trade_no}: {payment.fail_reason}")
                else:
                    self._apply_success(payment, result.get("transaction_id"), raw_payload(result))
            elif trade_state in CLOSED_TRADE_STATES:
                payment.status = CLOSED_TRADE_STATES[trade_state].value
                payment.fail_reason = f"Gateway trade state {trade_state}"
            elif trade_state in FAILED_TRADE_STATES:
                payment.status = PaymentStatus.FAILED.value
                payment.fail_reason = (result.get("trade_state_desc") or trade_state)[:255]
            else:
                logger.info(f"ℹ️ Payment {payment.out_trade_no} still {trade_state or 'unknown'}")

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if error is not None:
            logger.error(f"❌ {error.reason}")
            raise error

        self.db.refresh(payment)
        logger.info(f"✅ Payment {payment.out_trade_no} reconciled: {payment.status}")
        return payment

    # ========================================================================
    # READ PATHS
    # ========================================================================

    def get_customer_payment(self, customer: User, payment_id: int) -> Payment:
        payment = self.repo.get_payment(self.db, payment_id)
        if not payment:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        if payment.customer_id != customer.id:
            raise ForbiddenError(f"Payment {payment_id} does not belong to user {customer.id}")
        return payment

    def get_merchant_payment(self, merchant: Merchant, payment_id: int) -> Payment:
        payment = self.repo.get_payment(self.db, payment_id)
        if not payment:
            raise PaymentNotFound(f"Payment {payment_id} not found")

        owner_id = payment.merchant_id
        if owner_id is None and payment.appointment_id:
            appointment = (
                self.db.query(Appointment).filter(Appointment.id == payment.appointment_id).first()
            )
            owner_id = appointment.merchant_id if appointment else None
        if owner_id != merchant.id:
            raise ForbiddenError(f"Payment {payment_id} does not belong to merchant {merchant.id}")
        return payment
