"""Order, trade and coupon number generation"""

import secrets
import time

COUPON_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
COUPON_CODE_LENGTH = 8

# Trade number prefixes
PAYMENT_PREFIX = "P"
SIMULATED_PAYMENT_PREFIX = "SIM"
REFUND_PREFIX = "R"
SIMULATED_REFUND_PREFIX = "SIMR"


def generate_order_no() -> str:
    """``ORD<unix seconds><6 digits>``"""
    return f"ORD{int(time.time())}{secrets.randbelow(1_000_000):06d}"


def generate_trade_no(prefix: str) -> str:
    """Prefix + nanosecond timestamp + 6 random hex chars"""
    return f"{prefix}{time.time_ns()}{secrets.token_hex(3)}"


def generate_coupon_code() -> str:
    """8 characters without the look-alikes I, O, 0 and 1"""
    return "".join(secrets.choice(COUPON_CODE_ALPHABET) for _ in range(COUPON_CODE_LENGTH))


def format_amount(amount: int) -> str:
    """Minor units to a two-decimal display string"""
    return f"{amount // 100}.{amount % 100:02d}"
