"""
Status vocabulary and legal transitions

Appointment, payment, refund and coupon states are closed enums. Each transition table
is keyed by every member of its enum so a state without outgoing transitions is an
explicit terminal, never an accident of omission.
"""

from enum import Enum
from typing import Mapping, Union

from .errors import InvalidStatusTransition


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    REFUNDING = "refunding"
    COMPLETED = "completed"
    CANCELED = "canceled"
    REJECTED = "rejected"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    FAILED = "failed"
    CLOSED = "closed"


class RefundStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class CouponStatus(str, Enum):
    UNUSED = "unused"
    USING = "using"
    USED = "used"
    EXPIRED = "expired"


class DiscountType(str, Enum):
    FIXED = "fixed"
    PERCENT = "percent"


A = AppointmentStatus

# Actions a merchant may take from the appointment management screen
MERCHANT_TRANSITIONS: Mapping[AppointmentStatus, frozenset] = {
    A.PENDING: frozenset({A.CONFIRMED, A.REJECTED}),
    A.CONFIRMED: frozenset({A.COMPLETED, A.CANCELED}),
    A.PAID: frozenset({A.COMPLETED, A.REFUNDING}),
    A.REFUNDING: frozenset(),
    A.COMPLETED: frozenset(),
    A.CANCELED: frozenset(),
    A.REJECTED: frozenset(),
}

# The customer may only withdraw a booking nobody has acted on yet
CUSTOMER_TRANSITIONS: Mapping[AppointmentStatus, frozenset] = {
    A.PENDING: frozenset({A.CANCELED}),
    A.CONFIRMED: frozenset(),
    A.PAID: frozenset(),
    A.REFUNDING: frozenset(),
    A.COMPLETED: frozenset(),
    A.CANCELED: frozenset(),
    A.REJECTED: frozenset(),
}

# Moves driven by payment gateway outcomes
PAYMENT_FLOW_TRANSITIONS: Mapping[AppointmentStatus, frozenset] = {
    A.PENDING: frozenset(),
    A.CONFIRMED: frozenset({A.PAID}),
    A.PAID: frozenset({A.REFUNDING, A.CANCELED}),
    A.REFUNDING: frozenset({A.CANCELED, A.PAID, A.COMPLETED}),
    A.COMPLETED: frozenset({A.REFUNDING, A.CANCELED}),
    A.CANCELED: frozenset(),
    A.REJECTED: frozenset(),
}

P = PaymentStatus

PAYMENT_TRANSITIONS: Mapping[PaymentStatus, frozenset] = {
    P.PENDING: frozenset({P.SUCCESS, P.FAILED, P.CLOSED}),
    P.SUCCESS: frozenset({P.REFUNDING, P.REFUNDED}),
    P.REFUNDING: frozenset({P.REFUNDED, P.SUCCESS}),
    P.REFUNDED: frozenset(),
    P.FAILED: frozenset(),
    P.CLOSED: frozenset(),
}

R = RefundStatus

REFUND_TRANSITIONS: Mapping[RefundStatus, frozenset] = {
    R.PROCESSING: frozenset({R.SUCCESS, R.FAILED}),
    R.SUCCESS: frozenset(),
    R.FAILED: frozenset(),
}

C = CouponStatus

COUPON_TRANSITIONS: Mapping[CouponStatus, frozenset] = {
    C.UNUSED: frozenset({C.USING, C.EXPIRED}),
    C.USING: frozenset({C.USED, C.UNUSED}),
    C.USED: frozenset({C.UNUSED}),
    C.EXPIRED: frozenset(),
}

# States an appointment can be cancelled from without any money having moved
PRE_PAYMENT_STATES = frozenset({A.PENDING, A.CONFIRMED})

# Entering one of these gives the time slot back to the schedule
SLOT_RELEASING_STATES = frozenset({A.CANCELED, A.REJECTED})

# No booking action (cancel, confirm, reject) applies past these
TERMINAL_APPOINTMENT_STATES = frozenset({A.COMPLETED, A.CANCELED, A.REJECTED})


def can_transition(
    current: Union[Enum, str], target: Union[Enum, str], table: Mapping
) -> bool:
    """Check a transition against a table; unknown states are never legal"""
    enum_type = type(next(iter(table)))
    try:
        current_state = enum_type(current)
        target_state = enum_type(target)
    except ValueError:
        return False
    return target_state in table[current_state]


def ensure_transition(
    current: Union[Enum, str], target: Union[Enum, str], table: Mapping, subject: str = "appointment"
) -> None:
    """Raise InvalidStatusTransition unless current -> target is in the table"""
    if not can_transition(current, target, table):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        raise InvalidStatusTransition(
            f"Cannot move {subject} from '{current_value}' to '{target_value}'"
        )
