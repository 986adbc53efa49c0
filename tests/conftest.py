"""Pytest configuration and fixtures."""

import json
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from korpri_run import models, services
from korpri_run.db import Base, get_session
from korpri_run.main import app, get_gateway, get_address_client
from korpri_run.address import AddressClient
from korpri_run.payments import MidtransClient
from korpri_run.settings import settings

SERVER_KEY = "SB-Mid-server-test"


@pytest.fixture(autouse=True)
def _settings(monkeypatch):
    monkeypatch.setattr(settings, "KR_MIDTRANS_SERVER_KEY", SERVER_KEY)
    monkeypatch.setattr(settings, "KR_MIDTRANS_VERIFY_SIGNATURE", True)
    monkeypatch.setattr(settings, "KR_REQUIRE_PAID_FOR_BIB", True)
    monkeypatch.setattr(settings, "KR_BIB_START", 1)


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


class GatewayRecorder:
    """Records Snap requests and answers them; set `fail` to simulate an outage."""

    def __init__(self):
        self.requests = []
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(503, json={"error_messages": ["down"]})
        body = json.loads(request.content)
        self.requests.append({"headers": dict(request.headers), "url": str(request.url), "body": body})
        token = f"snap-{uuid.uuid4().hex[:12]}"
        return httpx.Response(201, json={"token": token, "redirect_url": f"https://pay.example/{token}"})

    def client(self) -> MidtransClient:
        return MidtransClient(server_key=SERVER_KEY, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def gateway():
    return GatewayRecorder()


ADDRESS_DATA = {
    "province": [{"id": 31, "value": "DKI JAKARTA"}, {"id": 32, "value": "JAWA BARAT"}],
    "city/32": [{"id": 3273, "value": "KOTA BANDUNG"}],
    "sub_district/3273": [{"id": 327301, "value": "SUKASARI"}],
    "village/327301": [{"id": 3273011001, "value": "GEGERKALONG"}],
}


def address_handler(request: httpx.Request) -> httpx.Response:
    key = request.url.path.split("/api/", 1)[1]
    if key not in ADDRESS_DATA:
        return httpx.Response(404, json={"message": "not found"})
    return httpx.Response(200, json={"data": ADDRESS_DATA[key]})


@pytest.fixture
def address_client():
    return AddressClient(base_url="https://geo.example/api", api_key="k", transport=httpx.MockTransport(address_handler))


@pytest.fixture
def app_overrides(session_factory, gateway, address_client):
    def _get_session():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_gateway] = gateway.client
    app.dependency_overrides[get_address_client] = lambda: address_client
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def client(app_overrides):
    return TestClient(app)


@pytest.fixture
def participant_client(app_overrides):
    c = TestClient(app)
    r = c.post("/api/auth/signup", json={"email": "runner@example.com", "password": "secret1", "confirm_password": "secret1"})
    assert r.status_code == 201
    return c


def _staff_client(session_factory, email, role):
    s = session_factory()
    try:
        services.create_staff_user(s, email, "staffpass", name=email.split("@")[0], role=role)
    finally:
        s.close()
    c = TestClient(app)
    r = c.post("/api/admin/login", json={"email": email, "password": "staffpass"})
    assert r.status_code == 200
    return c


@pytest.fixture
def admin_client(app_overrides, session_factory):
    return _staff_client(session_factory, "chief@example.com", "admin")


@pytest.fixture
def staff_client(app_overrides, session_factory):
    return _staff_client(session_factory, "gate1@example.com", "staff")


@pytest.fixture
def make_registration(session):
    counter = {"n": 0}

    def _make(jenis_tiket="half-marathon", user_type="Umum", payment_status="completed", nama=None):
        counter["n"] += 1
        n = counter["n"]
        reg = models.Registration(
            user_type=user_type,
            nik=f"32730100000000{n:02d}",
            nama=nama or f"Runner {n}",
            nomer_hp=f"08120000{n:04d}",
            alamat=f"Jl. Setiabudi No. {n}",
            kab_kota="KOTA BANDUNG",
            jenis_tiket=jenis_tiket,
            ticket_price=0,
            payment_status=payment_status,
            ticket_number=f"KR25-T{n:07d}",
        )
        session.add(reg)
        session.commit()
        return reg

    return _make


def signed_notification(order_id, transaction_status, fraud_status=None, status_code="200", gross_amount="187500.00"):
    from korpri_run.payments import notification_signature
    body = {
        "order_id": order_id,
        "transaction_status": transaction_status,
        "status_code": status_code,
        "gross_amount": gross_amount,
        "payment_type": "bank_transfer",
        "signature_key": notification_signature(order_id, status_code, gross_amount, SERVER_KEY),
    }
    if fraud_status is not None:
        body["fraud_status"] = fraud_status
    return body
