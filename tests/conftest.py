"""
Pytest configuration and shared fixtures for the booking API tests.
"""

import base64
import os
from datetime import date, datetime, timedelta

import httpx
import pytest

# Configure before the app modules read the environment
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
os.environ["PAYMENT_SIMULATE"] = "false"

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth import ROLE_CUSTOMER, ROLE_MERCHANT, create_access_token
from app.database import Base, get_db
from app.domain.appointments.schemas import AppointmentCreate
from app.domain.appointments.service import AppointmentService
from app.domain.payments.gateway import WechatPayClient, get_wechat_pay_client
from app.domain.payments.router import get_simulate_mode
from app.main import app
from app.models import CouponTemplate, Merchant, Service, Staff, TimeSlot, User, UserCoupon
from app.webhook_security import compute_signature, parse_xml, refund_info_key, to_xml

APP_ID = "wx2421b1c4370ec43b"
MCH_ID = "10000100"
API_KEY = "192006250b4c09247ec02edce69f6a2d"

engine = create_engine(
    "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class GatewayStub:
    """
    Stands in for the gateway's XML endpoints behind an httpx.MockTransport.

    Every request is recorded as (path, fields). ``responses`` overrides fields of the
    reply per path; paths in ``unreachable`` fail with a connection error.
    """

    def __init__(self):
        self.requests = []
        self.responses = {}
        self.unreachable = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        fields = parse_xml(request.content)
        path = request.url.path
        self.requests.append((path, fields))
        if path in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        body = {
            "return_code": "SUCCESS",
            "return_msg": "OK",
            "appid": APP_ID,
            "mch_id": MCH_ID,
            "nonce_str": "5K8264ILTKCH16CQ",
            "result_code": "SUCCESS",
        }
        if path == "/pay/unifiedorder":
            body["prepay_id"] = "wx201410272009395522657a690389285100"
        elif path == "/secapi/pay/refund":
            body.update(
                out_trade_no=fields.get("out_trade_no"),
                out_refund_no=fields.get("out_refund_no"),
                refund_id="50000000382019052709732678859",
                refund_fee=fields.get("refund_fee"),
            )
        elif path == "/pay/orderquery":
            body.update(out_trade_no=fields.get("out_trade_no"), trade_state="NOTPAY")

        body.update(self.responses.get(path, {}))
        body["sign"] = compute_signature(body, API_KEY)
        return httpx.Response(200, content=to_xml(body).encode("utf-8"))

    def calls(self, path):
        return [fields for p, fields in self.requests if p == path]


@pytest.fixture
def db():
    """Fresh schema and session per test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    """Gateway client wired to the stub; certificate paths are never opened"""
    return WechatPayClient(
        app_id=APP_ID,
        mch_id=MCH_ID,
        api_key=API_KEY,
        notify_url="https://api.example.test/api/payments/notify",
        refund_notify_url="https://api.example.test/api/payments/refund-notify",
        cert_path="apiclient_cert.pem",
        key_path="apiclient_key.pem",
        transport=httpx.MockTransport(gateway_stub),
    )


@pytest.fixture
def client(db, gateway):
    """TestClient sharing the test session and gateway stub."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_wechat_pay_client] = lambda: gateway
    app.dependency_overrides[get_simulate_mode] = lambda: False
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def simulate_mode(client):
    app.dependency_overrides[get_simulate_mode] = lambda: True
    return client


# ============================================================================
# SAMPLE DATA
# ============================================================================


@pytest.fixture
def merchant(db):
    merchant = Merchant(name="Lotus Spa", phone="021-55550000", address="88 Garden Road")
    db.add(merchant)
    db.commit()
    return merchant


@pytest.fixture
def other_merchant(db):
    merchant = Merchant(name="Other Spa")
    db.add(merchant)
    db.commit()
    return merchant


@pytest.fixture
def user(db):
    """A customer with a JSAPI openid"""
    user = User(openid="oUpF8uMuAJO_M2pxb1Q9zNjWeS6o", nickname="Mei", phone="13800000000")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def other_user(db):
    user = User(openid="oUpF8uN95-Ptaags6E_roPHg7AG0", nickname="Jun")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def staff(db, merchant):
    staff = Staff(merchant_id=merchant.id, name="Therapist A")
    db.add(staff)
    db.commit()
    return staff


@pytest.fixture
def service(db, merchant):
    """Massage priced at 5000 minor units"""
    service = Service(merchant_id=merchant.id, name="Massage", price=5000, duration=60)
    db.add(service)
    db.commit()
    return service


@pytest.fixture
def slot_date():
    return date.today() + timedelta(days=1)


@pytest.fixture
def slots(db, merchant, staff, slot_date):
    """Three consecutive one-hour slots tomorrow"""
    rows = [
        TimeSlot(
            merchant_id=merchant.id,
            staff_id=staff.id,
            date=slot_date,
            start_time=start,
            end_time=end,
            is_available=True,
        )
        for start, end in [("09:00", "10:00"), ("10:00", "11:00"), ("11:00", "12:00")]
    ]
    db.add_all(rows)
    db.commit()
    return rows


@pytest.fixture
def fixed_template(db, merchant):
    """500 off orders of at least 1000"""
    template = CouponTemplate(
        merchant_id=merchant.id,
        name="500 off",
        discount_type="fixed",
        discount_value=500,
        min_amount=1000,
        validity_days=7,
        total_count=10,
    )
    db.add(template)
    db.commit()
    return template


@pytest.fixture
def percent_template(db, merchant):
    """20 percent off, no minimum"""
    template = CouponTemplate(
        merchant_id=merchant.id,
        name="20% off",
        discount_type="percent",
        discount_value=20,
        min_amount=0,
        validity_days=7,
        total_count=10,
    )
    db.add(template)
    db.commit()
    return template


@pytest.fixture
def make_coupon(db):
    """Issue a coupon directly, bypassing template stock."""

    def _make(owner, template, valid_from=None, valid_to=None, status="unused", code=None):
        now = datetime.utcnow()
        coupon = UserCoupon(
            user_id=owner.id,
            template_id=template.id,
            coupon_code=code or f"T{template.id}U{owner.id}{len(owner.coupons)}",
            status=status,
            valid_from=valid_from or now - timedelta(hours=1),
            valid_to=valid_to or now + timedelta(days=7),
        )
        db.add(coupon)
        db.commit()
        return coupon

    return _make


@pytest.fixture
def book(db, merchant, staff, service, slot_date):
    """Book a slot through the appointment service."""

    def _book(owner, slot, coupon_id=None, remark=None):
        data = AppointmentCreate(
            merchant_id=merchant.id,
            service_id=service.id,
            staff_id=staff.id,
            time_slot_id=slot.id,
            appointment_date=slot_date,
            coupon_id=coupon_id,
            remark=remark,
        )
        return AppointmentService(db).create_appointment(owner, data)

    return _book


@pytest.fixture
def confirmed_appointment(db, merchant, user, slots, fixed_template, make_coupon, book):
    """Confirmed booking at 4500 (5000 less a 500 coupon)"""
    coupon = make_coupon(user, fixed_template)
    appointment = book(user, slots[0], coupon_id=coupon.id)
    return AppointmentService(db).update_status(merchant, appointment.id, "confirmed")


@pytest.fixture
def customer_headers(user):
    return {"Authorization": f"Bearer {create_access_token(user.id, ROLE_CUSTOMER)}"}


@pytest.fixture
def merchant_headers(merchant):
    return {"Authorization": f"Bearer {create_access_token(merchant.id, ROLE_MERCHANT)}"}


# ============================================================================
# GATEWAY PAYLOADS
# ============================================================================


@pytest.fixture
def signed_notification():
    """Build a payment notification signed with the merchant key."""

    def _build(key=API_KEY, **fields):
        payload = {
            "return_code": "SUCCESS",
            "result_code": "SUCCESS",
            "appid": APP_ID,
            "mch_id": MCH_ID,
            "nonce_str": "5d2b6c2a8db53831f7eda20af46e531c",
            "openid": "oUpF8uMuAJO_M2pxb1Q9zNjWeS6o",
            "trade_type": "JSAPI",
            "transaction_id": "1004400740201409030005092168",
        }
        payload.update(fields)
        payload["sign"] = compute_signature(payload, key)
        return payload

    return _build


@pytest.fixture
def refund_notification():
    """Build a refund notification with an AES-256-ECB encrypted req_info."""

    def _build(info, key=API_KEY, mch_id=MCH_ID):
        padder = padding.PKCS7(128).padder()
        plaintext = padder.update(to_xml(info).encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(refund_info_key(key)), modes.ECB()).encryptor()
        req_info = base64.b64encode(encryptor.update(plaintext) + encryptor.finalize()).decode()
        return {
            "return_code": "SUCCESS",
            "appid": APP_ID,
            "mch_id": mch_id,
            "nonce_str": "TeqClE3i0mvn3DrK",
            "req_info": req_info,
        }

    return _build
