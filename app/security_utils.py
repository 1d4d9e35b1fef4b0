"""
Security Utilities Module

Token signing, random identifiers and log masking shared by the auth seam and the
payment gateway.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Optional

from jose import JWTError
from jose import jwt as jose_jwt

from .config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

# Characters a gateway accepts in nonce_str (32 chars max)
NONCE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789"


# ============================================================================
# TOKEN GENERATION
# ============================================================================


def generate_nonce(length: int = 32) -> str:
    """Random nonce_str for gateway requests and client prepay payloads"""
    return "".join(secrets.choice(NONCE_ALPHABET) for _ in range(length))


def create_jwt_token(data: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT token

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time (default ACCESS_TOKEN_EXPIRE_MINUTES)
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    return jose_jwt.encode(to_encode, SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_jwt_token(token: str) -> Optional[dict[str, Any]]:
    """
    Verify and decode a JWT token

    Returns:
        Decoded payload if valid, None if invalid or expired
    """
    try:
        return jose_jwt.decode(token, SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        return None


# ============================================================================
# LOGGING HELPERS
# ============================================================================


def mask_sensitive_data(data: Optional[str], visible_chars: int = 4) -> str:
    """Mask an identifier for logs, keeping the last few characters"""
    if not data:
        return ""
    if len(data) <= visible_chars:
        return "*" * len(data)
    return "*" * (len(data) - visible_chars) + data[-visible_chars:]
