import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import models so they're registered with SQLAlchemy Base
from . import models  # noqa: F401
from .config import ALLOWED_ORIGINS, APP_ENV, PAYMENT_SIMULATE
from .database import Base, engine
from .domain.appointments.router import merchant_router as merchant_appointments_router
from .domain.appointments.router import router as appointments_router
from .domain.coupons.router import merchant_router as merchant_coupons_router
from .domain.coupons.router import router as coupons_router
from .domain.payments.router import gateway_router as payment_gateway_router
from .domain.payments.router import merchant_router as merchant_payments_router
from .domain.payments.router import router as payments_router
from .domain.slots.router import merchant_router as merchant_slots_router
from .domain.slots.router import router as slots_router
from .errors import DomainError, ExternalDependencyError, IntegrityFailure

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Application starting up ({APP_ENV})...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    if PAYMENT_SIMULATE:
        logger.warning("⚠️ Simulated payments ENABLED - never use in production")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Booking API", version="1.0.0", lifespan=lifespan)


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError):
    """Render service errors as {detail, code}; dependency and integrity reasons stay in the log"""
    if isinstance(exc, (ExternalDependencyError, IntegrityFailure)):
        logger.error(f"{request.method} {request.url.path} - {exc.code}: {exc.reason}")
    else:
        logger.warning(f"{request.method} {request.url.path} - {exc.code}: {exc.reason}")
    return JSONResponse(
        status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code}
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors on the Authorization header to 401 authentication errors
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(
                f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
            )
            return JSONResponse(
                status_code=401,
                content={"detail": "Not authenticated", "code": "unauthenticated"},
            )

    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": jsonable_errors(exc), "code": "validation_failed"},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may hold the raw ValueError raised by a validator
    return [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]


@app.middleware("http")
async def log_requests(request: Request, call_next):
    try:
        response = await call_next(request)
        return response
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise


# CORS Configuration
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(slots_router)
app.include_router(coupons_router)
app.include_router(appointments_router)
app.include_router(payments_router)
app.include_router(payment_gateway_router)
app.include_router(merchant_slots_router)
app.include_router(merchant_coupons_router)
app.include_router(merchant_appointments_router)
app.include_router(merchant_payments_router)


@app.get("/")
def root():
    return {"message": "Booking API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}
