import logging
from datetime import timedelta
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .database import get_db
from .models import Merchant, User
from .security_utils import create_jwt_token, verify_jwt_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

ROLE_CUSTOMER = "customer"
ROLE_MERCHANT = "merchant"


def create_access_token(
    subject_id: int, role: str, expires_delta: Optional[timedelta] = None
) -> str:
    """Issue a bearer token for a customer or merchant account"""
    return create_jwt_token({"sub": str(subject_id), "role": role}, expires_delta)


def _decode_credentials(
    credentials: Optional[HTTPAuthorizationCredentials], expected_role: str
) -> int:
    if not credentials:
        logger.error("❌ No credentials provided")
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    token = credentials.credentials
    payload = verify_jwt_token(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    role = payload.get("role")
    if role != expected_role:
        logger.warning(f"⚠️ Token with role '{role}' used on a {expected_role} route")
        raise HTTPException(status_code=403, detail=f"{expected_role.capitalize()} access required")

    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError) as e:
        logger.error(f"❌ Token missing subject claim. Available claims: {list(payload.keys())}")
        raise HTTPException(status_code=401, detail="Invalid token claims") from e


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get the calling customer from the bearer token"""
    user_id = _decode_credentials(credentials, ROLE_CUSTOMER)

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning(f"⚠️ Token references unknown user {user_id}")
        raise HTTPException(status_code=401, detail="User not found")

    logger.debug(f"✅ User authenticated: {user.id}")
    return user


def get_current_merchant(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> Merchant:
    """Get the calling merchant from the bearer token"""
    merchant_id = _decode_credentials(credentials, ROLE_MERCHANT)

    merchant = db.query(Merchant).filter(Merchant.id == merchant_id).first()
    if not merchant:
        logger.warning(f"⚠️ Token references unknown merchant {merchant_id}")
        raise HTTPException(status_code=401, detail="Merchant not found")

    logger.debug(f"✅ Merchant authenticated: {merchant.id}")
    return merchant
