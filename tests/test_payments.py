from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from app.domain.appointments.service import AppointmentService
from app.domain.payments.schemas import RefundCreate
from app.domain.payments.service import PaymentService
from app.errors import (
    AmountMismatch,
    AppointmentNotFound,
    ForbiddenError,
    GatewayError,
    GatewayReportedFailure,
    NotCompleted,
    NotPayable,
    PaymentStateConflict,
    RefundExceedsPayment,
    RefundNotFound,
    SignatureInvalid,
    SimulationDisabled,
    UnknownOrder,
    ValidationFailed,
)
from app.models import Payment, Refund, User
from app.services.status_automation import reconcile_stale_payments

UNIFIED_ORDER = "/pay/unifiedorder"
ORDER_QUERY = "/pay/orderquery"
REFUND = "/secapi/pay/refund"


@pytest.fixture
def payments(db, gateway):
    return PaymentService(db, gateway)


@pytest.fixture
def simulated_payments(db, gateway):
    return PaymentService(db, gateway, simulate=True)


@pytest.fixture
def pending_payment(db, user, merchant, confirmed_appointment):
    """Pending gateway payment P123 for the confirmed 4500 booking"""
    payment = Payment(
        customer_id=user.id,
        merchant_id=merchant.id,
        appointment_id=confirmed_appointment.id,
        out_trade_no="P123",
        amount=4500,
        description="Massage",
        status="pending",
        created_at=datetime.utcnow() - timedelta(hours=1),
    )
    db.add(payment)
    db.commit()
    return payment


@pytest.fixture
def paid_payment(payments, pending_payment, signed_notification):
    return payments.handle_notification(signed_notification(out_trade_no="P123", total_fee="4500"))


@pytest.mark.payments
class TestPaymentIntent:
    """Creating payment intents against the gateway."""

    def test_pay_for_confirmed_appointment(self, db, payments, gateway_stub, user, confirmed_appointment):
        intent = payments.pay_for_appointment(user, confirmed_appointment.id)

        payment = db.query(Payment).filter(Payment.id == intent.payment_id).one()
        order = gateway_stub.calls(UNIFIED_ORDER)[0]
        assert intent.simulate is False
        assert intent.out_trade_no.startswith("P")
        assert intent.prepay.package == "prepay_id=wx201410272009395522657a690389285100"
        assert intent.prepay.signType == "MD5"
        assert payment.status == "pending"
        assert payment.amount == 4500
        assert payment.merchant_id == confirmed_appointment.merchant_id
        assert order["total_fee"] == "4500"
        assert order["trade_type"] == "JSAPI"
        assert order["openid"] == user.openid
        assert order["out_trade_no"] == intent.out_trade_no

    def test_pending_appointment_not_payable(self, payments, user, slots, book):
        appointment = book(user, slots[1])

        with pytest.raises(NotPayable):
            payments.pay_for_appointment(user, appointment.id)

    def test_zero_amount_not_payable(self, db, payments, user, confirmed_appointment):
        confirmed_appointment.amount = 0
        db.commit()

        with pytest.raises(ValidationFailed):
            payments.pay_for_appointment(user, confirmed_appointment.id)

    def test_intent_amount_must_match_appointment(self, payments, user, confirmed_appointment):
        with pytest.raises(ValidationFailed):
            payments.create_payment_intent(user, 100, "Massage", confirmed_appointment.id)

    def test_customer_without_openid(self, db, payments):
        guest = User(nickname="Guest")
        db.add(guest)
        db.commit()

        with pytest.raises(ValidationFailed):
            payments.create_payment_intent(guest, 100, "Gift card")

    def test_gateway_outage_marks_payment_failed(self, db, payments, gateway_stub, user):
        gateway_stub.unreachable.add(UNIFIED_ORDER)

        with pytest.raises(GatewayError):
            payments.create_payment_intent(user, 100, "Gift card")

        payment = db.query(Payment).one()
        assert payment.status == "failed"
        assert payment.fail_reason

    def test_gateway_rejection_marks_payment_failed(self, db, payments, gateway_stub, user):
        gateway_stub.responses[UNIFIED_ORDER] = {"result_code": "FAIL", "err_code_des": "ORDERPAID"}

        with pytest.raises(GatewayError):
            payments.create_payment_intent(user, 100, "Gift card")

        assert db.query(Payment).one().status == "failed"


@pytest.mark.payments
class TestPaymentNotification:
    """Applying asynchronous payment results."""

    def test_success_settles_payment_and_appointment(
        self, db, payments, pending_payment, confirmed_appointment, signed_notification
    ):
        payments.handle_notification(signed_notification(out_trade_no="P123", total_fee="4500"))

        db.refresh(pending_payment)
        db.refresh(confirmed_appointment)
        assert pending_payment.status == "success"
        assert pending_payment.transaction_id == "1004400740201409030005092168"
        assert pending_payment.paid_at is not None
        assert '"out_trade_no": "P123"' in pending_payment.raw_notify
        assert confirmed_appointment.status == "paid"
        assert confirmed_appointment.payment_id == pending_payment.id

    def test_duplicate_notification_is_noop(self, db, payments, paid_payment, signed_notification):
        paid_at = paid_payment.paid_at

        payment = payments.handle_notification(
            signed_notification(out_trade_no="P123", total_fee="4500")
        )

        assert payment.status == "success"
        assert payment.paid_at == paid_at

    def test_amount_mismatch_keeps_payment_pending(
        self, db, payments, pending_payment, confirmed_appointment, signed_notification
    ):
        with pytest.raises(AmountMismatch):
            payments.handle_notification(signed_notification(out_trade_no="P123", total_fee="1"))

        db.refresh(pending_payment)
        db.refresh(confirmed_appointment)
        assert pending_payment.status == "pending"
        assert "mismatch" in pending_payment.fail_reason
        assert pending_payment.raw_notify is not None
        assert confirmed_appointment.status == "confirmed"

    def test_bad_signature(self, db, payments, pending_payment, signed_notification):
        with pytest.raises(SignatureInvalid):
            payments.handle_notification(
                signed_notification(key="not-the-merchant-key", out_trade_no="P123", total_fee="4500")
            )

        db.refresh(pending_payment)
        assert pending_payment.status == "pending"

    def test_unknown_order(self, payments, signed_notification):
        with pytest.raises(UnknownOrder):
            payments.handle_notification(signed_notification(out_trade_no="P999", total_fee="4500"))

    def test_return_code_failure(self, db, payments, pending_payment, signed_notification):
        with pytest.raises(GatewayReportedFailure):
            payments.handle_notification(
                signed_notification(return_code="FAIL", return_msg="SYSTEMERROR", out_trade_no="P123")
            )

        db.refresh(pending_payment)
        assert pending_payment.status == "pending"

    def test_result_failure_then_late_success_conflicts(
        self, db, payments, pending_payment, signed_notification
    ):
        with pytest.raises(GatewayReportedFailure):
            payments.handle_notification(
                signed_notification(result_code="FAIL", err_code_des="NOTENOUGH", out_trade_no="P123")
            )
        db.refresh(pending_payment)
        assert pending_payment.status == "failed"
        assert pending_payment.fail_reason == "NOTENOUGH"

        with pytest.raises(PaymentStateConflict):
            payments.handle_notification(signed_notification(out_trade_no="P123", total_fee="4500"))

    def test_money_for_cancelled_booking_is_kept(
        self, db, payments, merchant, pending_payment, confirmed_appointment, signed_notification
    ):
        AppointmentService(db).update_status(merchant, confirmed_appointment.id, "canceled")

        payments.handle_notification(signed_notification(out_trade_no="P123", total_fee="4500"))

        db.refresh(pending_payment)
        db.refresh(confirmed_appointment)
        assert pending_payment.status == "success"
        assert confirmed_appointment.status == "canceled"


@pytest.mark.payments
class TestRefunds:
    """Merchant-initiated refunds and their notifications."""

    def test_refund_reason_fits_column(self):
        with pytest.raises(ValidationError):
            RefundCreate(amount=100, reason="x" * 256)

        assert RefundCreate(amount=100, reason="x" * 255).reason == "x" * 255

    def test_refund_cannot_exceed_payment(self, db, payments, merchant, paid_payment, confirmed_appointment):
        with pytest.raises(RefundExceedsPayment):
            payments.initiate_refund(merchant, confirmed_appointment.id, 4501)

        db.refresh(paid_payment)
        assert db.query(Refund).count() == 0
        assert paid_payment.status == "success"

    def test_unpaid_appointment_not_refundable(self, payments, merchant, confirmed_appointment):
        with pytest.raises(NotCompleted):
            payments.initiate_refund(merchant, confirmed_appointment.id, 100)

    def test_other_merchant_cannot_refund(self, payments, other_merchant, paid_payment, confirmed_appointment):
        with pytest.raises(AppointmentNotFound):
            payments.initiate_refund(other_merchant, confirmed_appointment.id, 100)

    def test_refund_accepted_by_gateway(
        self, db, payments, gateway_stub, merchant, paid_payment, confirmed_appointment
    ):
        refund = payments.initiate_refund(merchant, confirmed_appointment.id, 4500, "Customer request")

        db.refresh(paid_payment)
        db.refresh(confirmed_appointment)
        call = gateway_stub.calls(REFUND)[0]
        assert refund.status == "processing"
        assert refund.out_refund_no.startswith("R")
        assert refund.refund_id == "50000000382019052709732678859"
        assert paid_payment.status == "refunding"
        assert confirmed_appointment.status == "refunding"
        assert call["out_trade_no"] == "P123"
        assert call["total_fee"] == "4500"
        assert call["refund_fee"] == "4500"
        assert call["refund_desc"] == "Customer request"

    def test_second_refund_blocked_while_refunding(
        self, payments, merchant, paid_payment, confirmed_appointment
    ):
        payments.initiate_refund(merchant, confirmed_appointment.id, 1000)

        with pytest.raises(NotCompleted):
            payments.initiate_refund(merchant, confirmed_appointment.id, 1000)

    def test_partial_refund_of_completed_appointment(
        self, db, payments, merchant, paid_payment, confirmed_appointment
    ):
        AppointmentService(db).update_status(merchant, confirmed_appointment.id, "completed")

        refund = payments.initiate_refund(merchant, confirmed_appointment.id, 1000)

        db.refresh(confirmed_appointment)
        assert refund.amount == 1000
        assert confirmed_appointment.status == "refunding"

    def test_gateway_rejection_restores_payment(
        self, db, payments, gateway_stub, merchant, paid_payment, confirmed_appointment
    ):
        gateway_stub.responses[REFUND] = {"result_code": "FAIL", "err_code_des": "NOTENOUGH"}

        with pytest.raises(GatewayError):
            payments.initiate_refund(merchant, confirmed_appointment.id, 4500)

        refund = db.query(Refund).one()
        db.refresh(paid_payment)
        db.refresh(confirmed_appointment)
        assert refund.status == "failed"
        assert "NOTENOUGH" in refund.fail_reason
        assert paid_payment.status == "success"
        assert confirmed_appointment.status == "paid"

    def test_refund_success_notification(
        self, db, payments, merchant, slots, paid_payment, confirmed_appointment, refund_notification
    ):
        refund = payments.initiate_refund(merchant, confirmed_appointment.id, 4500)

        payments.handle_refund_notification(
            refund_notification(
                {
                    "out_refund_no": refund.out_refund_no,
                    "refund_id": refund.refund_id,
                    "refund_status": "SUCCESS",
                    "refund_fee": "4500",
                }
            )
        )

        for row in (refund, paid_payment, confirmed_appointment, slots[0]):
            db.refresh(row)
        assert refund.status == "success"
        assert refund.refunded_at is not None
        assert paid_payment.status == "refunded"
        assert confirmed_appointment.status == "canceled"
        assert slots[0].is_available is True

    def test_refund_failure_notification(
        self, db, payments, merchant, paid_payment, confirmed_appointment, refund_notification
    ):
        refund = payments.initiate_refund(merchant, confirmed_appointment.id, 4500)

        payments.handle_refund_notification(
            refund_notification({"out_refund_no": refund.out_refund_no, "refund_status": "CHANGE"})
        )

        for row in (refund, paid_payment, confirmed_appointment):
            db.refresh(row)
        assert refund.status == "failed"
        assert paid_payment.status == "success"
        assert confirmed_appointment.status == "paid"

    def test_failed_refund_keeps_completed_appointment_completed(
        self, db, payments, merchant, paid_payment, confirmed_appointment, refund_notification
    ):
        AppointmentService(db).update_status(merchant, confirmed_appointment.id, "completed")
        refund = payments.initiate_refund(merchant, confirmed_appointment.id, 1000)

        payments.handle_refund_notification(
            refund_notification({"out_refund_no": refund.out_refund_no, "refund_status": "CHANGE"})
        )

        for row in (refund, paid_payment, confirmed_appointment):
            db.refresh(row)
        assert refund.appointment_status == "completed"
        assert refund.status == "failed"
        assert paid_payment.status == "success"
        assert confirmed_appointment.status == "completed"

    def test_duplicate_refund_notification_is_noop(
        self, db, payments, merchant, paid_payment, confirmed_appointment, refund_notification
    ):
        refund = payments.initiate_refund(merchant, confirmed_appointment.id, 4500)
        fields = refund_notification(
            {"out_refund_no": refund.out_refund_no, "refund_status": "SUCCESS", "refund_fee": "4500"}
        )
        payments.handle_refund_notification(fields)

        again = payments.handle_refund_notification(fields)

        assert again.status == "success"

    def test_refund_amount_mismatch(
        self, db, payments, merchant, paid_payment, confirmed_appointment, refund_notification
    ):
        refund = payments.initiate_refund(merchant, confirmed_appointment.id, 4500)

        with pytest.raises(AmountMismatch):
            payments.handle_refund_notification(
                refund_notification(
                    {"out_refund_no": refund.out_refund_no, "refund_status": "SUCCESS", "refund_fee": "1"}
                )
            )

        db.refresh(refund)
        assert refund.status == "processing"

    def test_refund_notification_for_other_merchant(self, payments, refund_notification):
        with pytest.raises(SignatureInvalid):
            payments.handle_refund_notification(
                refund_notification({"out_refund_no": "R1"}, mch_id="99999999")
            )

    def test_refund_notification_with_wrong_key(self, payments, refund_notification):
        with pytest.raises(SignatureInvalid):
            payments.handle_refund_notification(
                refund_notification({"out_refund_no": "R1"}, key="0" * 32)
            )

    def test_unknown_refund(self, payments, refund_notification):
        with pytest.raises(RefundNotFound):
            payments.handle_refund_notification(
                refund_notification({"out_refund_no": "R404", "refund_status": "SUCCESS"})
            )


@pytest.mark.payments
class TestSimulatedPayments:
    """Gateway-free payments for development environments."""

    def test_simulated_pay_and_settle(
        self, db, simulated_payments, gateway_stub, user, confirmed_appointment
    ):
        intent = simulated_payments.pay_for_appointment(user, confirmed_appointment.id)

        payment = simulated_payments.simulate_notification(
            intent.payment_id, intent.out_trade_no, "success"
        )

        db.refresh(confirmed_appointment)
        assert intent.simulate is True
        assert intent.prepay is None
        assert intent.out_trade_no.startswith("SIM")
        assert payment.status == "success"
        assert confirmed_appointment.status == "paid"
        assert gateway_stub.requests == []

    def test_simulated_failure(self, db, simulated_payments, user, confirmed_appointment):
        intent = simulated_payments.pay_for_appointment(user, confirmed_appointment.id)

        payment = simulated_payments.simulate_notification(
            intent.payment_id, intent.out_trade_no, "failed"
        )

        db.refresh(confirmed_appointment)
        assert payment.status == "failed"
        assert confirmed_appointment.status == "confirmed"

    def test_repeat_settlement_is_noop_and_flip_conflicts(
        self, simulated_payments, user, confirmed_appointment
    ):
        intent = simulated_payments.pay_for_appointment(user, confirmed_appointment.id)
        simulated_payments.simulate_notification(intent.payment_id, intent.out_trade_no, "success")

        again = simulated_payments.simulate_notification(intent.payment_id, intent.out_trade_no, "success")
        assert again.status == "success"

        with pytest.raises(PaymentStateConflict):
            simulated_payments.simulate_notification(intent.payment_id, intent.out_trade_no, "failed")

    def test_disabled_outside_simulation(self, payments, pending_payment):
        with pytest.raises(SimulationDisabled):
            payments.simulate_notification(pending_payment.id, "P123", "success")

    def test_real_payment_cannot_be_simulated(self, simulated_payments, pending_payment):
        with pytest.raises(ForbiddenError):
            simulated_payments.simulate_notification(pending_payment.id, "P123", "success")

    def test_trade_number_must_match(self, simulated_payments, user, confirmed_appointment):
        intent = simulated_payments.pay_for_appointment(user, confirmed_appointment.id)

        with pytest.raises(ValidationFailed):
            simulated_payments.simulate_notification(intent.payment_id, "SIM0", "success")

    def test_simulated_refund_completes_immediately(
        self, db, simulated_payments, gateway_stub, merchant, user, slots, confirmed_appointment
    ):
        intent = simulated_payments.pay_for_appointment(user, confirmed_appointment.id)
        simulated_payments.simulate_notification(intent.payment_id, intent.out_trade_no, "success")

        refund = simulated_payments.initiate_refund(merchant, confirmed_appointment.id, 4500)

        payment = db.query(Payment).filter(Payment.id == intent.payment_id).one()
        db.refresh(confirmed_appointment)
        db.refresh(slots[0])
        assert refund.out_refund_no.startswith("SIMR")
        assert refund.status == "success"
        assert payment.status == "refunded"
        assert confirmed_appointment.status == "canceled"
        assert slots[0].is_available is True
        assert gateway_stub.requests == []


@pytest.mark.payments
class TestReconciliation:
    """Recovering payments whose callback never arrived."""

    def test_gateway_reports_success(
        self, db, payments, gateway_stub, merchant, pending_payment, confirmed_appointment
    ):
        gateway_stub.responses[ORDER_QUERY] = {
            "trade_state": "SUCCESS",
            "total_fee": "4500",
            "transaction_id": "4200000001",
        }

        payment = payments.reconcile_payment(pending_payment.id, merchant)

        db.refresh(confirmed_appointment)
        assert payment.status == "success"
        assert payment.transaction_id == "4200000001"
        assert confirmed_appointment.status == "paid"

    def test_gateway_reports_closed(self, payments, gateway_stub, merchant, pending_payment):
        gateway_stub.responses[ORDER_QUERY] = {"trade_state": "CLOSED"}

        assert payments.reconcile_payment(pending_payment.id, merchant).status == "closed"

    def test_still_unpaid_stays_pending(self, payments, merchant, pending_payment):
        assert payments.reconcile_payment(pending_payment.id, merchant).status == "pending"

    def test_gateway_amount_mismatch(self, db, payments, gateway_stub, merchant, pending_payment):
        gateway_stub.responses[ORDER_QUERY] = {"trade_state": "SUCCESS", "total_fee": "1"}

        with pytest.raises(AmountMismatch):
            payments.reconcile_payment(pending_payment.id, merchant)

        db.refresh(pending_payment)
        assert pending_payment.status == "pending"

    def test_settled_payment_not_queried(self, payments, gateway_stub, merchant, paid_payment):
        payment = payments.reconcile_payment(paid_payment.id, merchant)

        assert payment.status == "success"
        assert gateway_stub.calls(ORDER_QUERY) == []

    def test_other_merchant_forbidden(self, payments, other_merchant, pending_payment):
        with pytest.raises(ForbiddenError):
            payments.reconcile_payment(pending_payment.id, other_merchant)

    def test_stale_payment_sweep(self, db, gateway, gateway_stub, pending_payment):
        gateway_stub.responses[ORDER_QUERY] = {"trade_state": "SUCCESS", "total_fee": "4500"}

        summary = reconcile_stale_payments(db, gateway)

        db.refresh(pending_payment)
        assert summary["checked"] == 1
        assert summary["settled"] == 1
        assert pending_payment.status == "success"
