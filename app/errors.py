"""
Domain errors

Every error raised by the booking, coupon and payment services is an HTTPException
subclass with a stable ``code``. Four classes are client-correctable and expose their
message as-is; dependency and integrity failures expose a generic message while the
full reason stays on ``exc.reason`` for the server log.
"""

from typing import Optional

from fastapi import HTTPException


class DomainError(HTTPException):
    """Base class for all service-layer errors"""

    status_code = 400
    code = "domain_error"
    message = "Request could not be processed"

    def __init__(self, detail: Optional[str] = None):
        self.reason = detail or self.message
        super().__init__(status_code=self.status_code, detail=self.public_detail())

    def public_detail(self) -> str:
        return self.reason

    def __str__(self) -> str:
        return f"{self.code}: {self.reason}"


# ============================================================================
# CLIENT-CORRECTABLE
# ============================================================================


class ValidationFailed(DomainError):
    status_code = 400
    code = "validation_failed"
    message = "Invalid request"


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"
    message = "Resource not found"


class ForbiddenError(DomainError):
    status_code = 403
    code = "forbidden"
    message = "Not allowed"


class ConflictError(DomainError):
    status_code = 409
    code = "conflict"
    message = "Request conflicts with the current state"


# ============================================================================
# SERVER-SIDE (generic public message, full reason logged)
# ============================================================================


class ExternalDependencyError(DomainError):
    status_code = 502
    code = "dependency_error"
    message = "Upstream service failed"

    def public_detail(self) -> str:
        return self.message


class IntegrityFailure(DomainError):
    status_code = 500
    code = "integrity_error"
    message = "Request failed an integrity check"

    def public_detail(self) -> str:
        return self.message


# ============================================================================
# STATE MACHINE
# ============================================================================


class InvalidStatusTransition(ConflictError):
    code = "invalid_status_transition"
    message = "Invalid status transition"


# ============================================================================
# SLOT LEDGER
# ============================================================================


class SlotNotFound(NotFoundError):
    code = "slot_not_found"
    message = "Time slot not found"


class SlotUnavailable(ConflictError):
    code = "slot_unavailable"
    message = "Time slot is already booked"


class StaffNotFound(NotFoundError):
    code = "staff_not_found"
    message = "Staff not found"


# ============================================================================
# COUPON LEDGER
# ============================================================================


class TemplateNotFound(NotFoundError):
    code = "coupon_template_not_found"
    message = "Coupon template not found"


class CouponExhausted(ConflictError):
    code = "coupon_exhausted"
    message = "No coupons left to claim"


class CouponInvalid(ValidationFailed):
    """Any reason a coupon cannot be applied to a booking"""

    code = "coupon_invalid"
    message = "Coupon cannot be used"


class CouponNotFound(CouponInvalid):
    status_code = 404
    code = "coupon_not_found"
    message = "Coupon not found"


class CouponWrongOwner(CouponInvalid):
    status_code = 403
    code = "coupon_wrong_owner"
    message = "Coupon belongs to another user"


class CouponWrongMerchant(CouponInvalid):
    code = "coupon_wrong_merchant"
    message = "Coupon is not valid for this merchant"


class CouponNotUnused(CouponInvalid):
    status_code = 409
    code = "coupon_not_unused"
    message = "Coupon is not available for use"


class CouponNotYetValid(CouponInvalid):
    code = "coupon_not_yet_valid"
    message = "Coupon is not valid yet"


class CouponExpired(CouponInvalid):
    code = "coupon_expired"
    message = "Coupon has expired"


class CouponBelowMinimum(CouponInvalid):
    code = "coupon_below_minimum"
    message = "Order amount is below the coupon minimum"


class UnknownDiscountType(CouponInvalid):
    code = "unknown_discount_type"
    message = "Unknown discount type"


# ============================================================================
# BOOKING ORCHESTRATOR
# ============================================================================


class ServiceNotFound(NotFoundError):
    code = "service_not_found"
    message = "Service not found"


class AppointmentNotFound(NotFoundError):
    code = "appointment_not_found"
    message = "Appointment not found"


class NotAppointmentOwner(ForbiddenError):
    code = "not_appointment_owner"
    message = "Appointment belongs to another user"


class NotCancellable(ConflictError):
    code = "not_cancellable"
    message = "Appointment can no longer be cancelled"


class PersistFailure(IntegrityFailure):
    code = "persist_failure"
    message = "Could not save the appointment"


# ============================================================================
# PAYMENT RECONCILER
# ============================================================================


class PaymentNotFound(NotFoundError):
    code = "payment_not_found"
    message = "Payment not found"


class UnknownOrder(NotFoundError):
    code = "unknown_order"
    message = "No payment matches the notified trade number"


class RefundNotFound(NotFoundError):
    code = "refund_not_found"
    message = "No refund matches the notified refund number"


class NotPayable(ConflictError):
    code = "not_payable"
    message = "Appointment cannot be paid in its current status"


class NotCompleted(ConflictError):
    code = "not_refundable"
    message = "Appointment cannot be refunded in its current status"


class PaymentNotSucceeded(ConflictError):
    code = "payment_not_succeeded"
    message = "Payment has not succeeded"


class RefundExceedsPayment(ValidationFailed):
    code = "refund_exceeds_payment"
    message = "Refund amount exceeds the paid amount"


class SimulationDisabled(ForbiddenError):
    code = "simulation_disabled"
    message = "Simulated payments are disabled"


class GatewayError(ExternalDependencyError):
    code = "gateway_error"
    message = "Payment gateway request failed"


class GatewayReportedFailure(ExternalDependencyError):
    code = "gateway_reported_failure"
    message = "Payment gateway reported a failed payment"


class SignatureInvalid(IntegrityFailure):
    status_code = 400
    code = "signature_invalid"
    message = "Signature verification failed"


class AmountMismatch(IntegrityFailure):
    status_code = 400
    code = "amount_mismatch"
    message = "Notified amount does not match the order"


class PaymentStateConflict(IntegrityFailure):
    code = "payment_state_conflict"
    message = "Payment is in a state that cannot accept this notification"
