import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

# "development" | "staging" | "production"
APP_ENV = os.getenv("APP_ENV", "development").strip().lower()

DATABASE_URL = os.getenv("DATABASE_URL")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

# WeChat Pay (v2 XML API) Configuration
WECHAT_PAY_APP_ID = os.getenv("WECHAT_PAY_APP_ID", "")
WECHAT_PAY_MCH_ID = os.getenv("WECHAT_PAY_MCH_ID", "")
WECHAT_PAY_API_KEY = os.getenv("WECHAT_PAY_API_KEY", "")
WECHAT_PAY_NOTIFY_URL = os.getenv("WECHAT_PAY_NOTIFY_URL", "")
WECHAT_PAY_REFUND_NOTIFY_URL = os.getenv("WECHAT_PAY_REFUND_NOTIFY_URL", "")
# Merchant API certificate, required by the refund endpoint only
WECHAT_PAY_CERT_PATH = os.getenv("WECHAT_PAY_CERT_PATH")
WECHAT_PAY_KEY_PATH = os.getenv("WECHAT_PAY_KEY_PATH")
WECHAT_PAY_SIGN_TYPE = os.getenv("WECHAT_PAY_SIGN_TYPE", "MD5")  # MD5 or HMAC-SHA256
WECHAT_PAY_BASE_URL = os.getenv("WECHAT_PAY_BASE_URL", "https://api.mch.weixin.qq.com")
WECHAT_PAY_TIMEOUT = float(os.getenv("WECHAT_PAY_TIMEOUT", "15"))

# Simulated payments bypass the gateway entirely. Never honoured in production.
PAYMENT_SIMULATE = os.getenv("PAYMENT_SIMULATE", "false").lower() == "true"
if PAYMENT_SIMULATE and APP_ENV == "production":
    import warnings

    warnings.warn(
        "PAYMENT_SIMULATE ignored because APP_ENV=production", RuntimeWarning, stacklevel=2
    )
    PAYMENT_SIMULATE = False

# Frontend origins allowed by CORS
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")
