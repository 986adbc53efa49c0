import httpx
import pytest
from sqlalchemy import select, func

from korpri_run import models, services
from korpri_run.auth import verify_password
from korpri_run.main import app, get_gateway
from korpri_run.payments import MidtransClient
from korpri_run.schemas import RegistrationCreate, SignUp

FORM = {
    "user_type": "Umum",
    "jenis_tiket": "half-marathon",
    "nik": "3273012345670001",
    "nama": "Budi Santoso",
    "nomer_hp": "081234567890",
    "alamat": "Jl. Dago No. 10",
    "regency": "KOTA BANDUNG",
    "province": "JAWA BARAT",
}


def _user(session, email="budi@example.com"):
    return services.create_user(session, SignUp(email=email, password="secret1", confirm_password="secret1"))


def _count(session):
    return session.execute(select(func.count(models.Registration.id))).scalar()


def test_signup_password_mismatch(session):
    with pytest.raises(ValueError, match="do not match"):
        services.create_user(session, SignUp(email="a@example.com", password="secret1", confirm_password="secret2"))


def test_signup_duplicate_email(session):
    _user(session)
    with pytest.raises(services.DuplicateEmailError):
        _user(session, email="BUDI@example.com")


def test_start_registration_happy_path(session, gateway):
    user = _user(session)
    start = services.start_registration(session, user.id, RegistrationCreate(**FORM), gateway.client())

    reg = start.registration
    assert reg.ticket_price == 187500
    assert reg.payment_status == "pending"
    assert reg.ticket_number.startswith("KR25-")
    assert start.payment_token == reg.payment_token
    body = gateway.requests[0]["body"]
    assert body["transaction_details"] == {"order_id": reg.id, "gross_amount": 187500}
    assert body["customer_details"]["email"] == "budi@example.com"
    assert body["item_details"][0]["name"] == "KORPRI RUN 2025 - Half Marathon (21K)"
    # profile picked up from the form
    assert session.get(models.User, user.id).kabupaten == "KOTA BANDUNG"


def test_duplicate_nik_rejected_before_any_write(session, gateway):
    first = _user(session)
    second = _user(session, email="other@example.com")
    services.start_registration(session, first.id, RegistrationCreate(**FORM), gateway.client())

    with pytest.raises(services.DuplicateNikError):
        services.start_registration(session, second.id, RegistrationCreate(**dict(FORM, nama="Someone Else")), gateway.client())
    assert _count(session) == 1
    assert len(gateway.requests) == 1


def test_gateway_failure_leaves_row_pending(session, gateway):
    user = _user(session)
    gateway.fail = True
    start = services.start_registration(session, user.id, RegistrationCreate(**FORM), gateway.client())
    assert start.payment_error
    assert start.payment_token is None
    assert start.registration.payment_status == "pending"

    gateway.fail = False
    retry = services.retry_payment(session, user.id, start.registration.id, gateway.client())
    assert retry.payment_token
    # a stored token is handed back instead of opening a second transaction
    again = services.retry_payment(session, user.id, start.registration.id, gateway.client())
    assert again.payment_token == retry.payment_token
    assert len(gateway.requests) == 1


def test_retry_rejected_for_settled_or_foreign(session, gateway):
    user = _user(session)
    start = services.start_registration(session, user.id, RegistrationCreate(**FORM), gateway.client())
    services.reconcile_payment(session, start.registration.id, "completed")
    with pytest.raises(ValueError):
        services.retry_payment(session, user.id, start.registration.id, gateway.client())
    with pytest.raises(services.RegistrationNotFound):
        services.retry_payment(session, "someone-else", start.registration.id, gateway.client())


def test_missing_identity_fields_blocked():
    with pytest.raises(ValueError):
        RegistrationCreate(**dict(FORM, regency="  "))
    with pytest.raises(ValueError):
        RegistrationCreate(**dict(FORM, user_type="VIP"))


def test_payment_outcomes():
    assert services.resolve_payment_outcome("success")["next_step"] == "confirmation"
    pending = services.resolve_payment_outcome("pending")
    assert pending["next_step"] == "confirmation" and pending["payment_pending"]
    assert services.resolve_payment_outcome("error")["next_step"] == "payment"
    assert services.resolve_payment_outcome("close")["next_step"] == "payment"
    with pytest.raises(ValueError):
        services.resolve_payment_outcome("refund")


def test_end_to_end_umum_half_marathon(participant_client, client, session, gateway):
    from conftest import signed_notification

    r = participant_client.post("/api/registrations", json=FORM)
    assert r.status_code == 201, r.text
    reg = r.json()["registration"]
    assert reg["ticket_price"] == 187500
    assert reg["payment_status"] == "pending"
    assert r.json()["payment"]["token"].startswith("snap-")
    assert gateway.requests[0]["body"]["transaction_details"]["gross_amount"] == 187500

    r = client.post("/api/payments/midtrans/webhook", json=signed_notification(reg["id"], "settlement"))
    assert r.status_code == 200
    assert r.json() == {"message": "Webhook processed successfully", "order_id": reg["id"], "status": "completed"}

    mine = participant_client.get("/api/me/registrations").json()
    assert mine[0]["payment_status"] == "completed"
    assert mine[0]["qr_url"].startswith("https://api.qrserver.com/")


def test_registration_api_errors(participant_client, gateway):
    assert participant_client.post("/api/registrations", json=FORM).status_code == 201
    r = participant_client.post("/api/registrations", json=dict(FORM, nama="Copycat"))
    assert r.status_code == 409

    r = participant_client.post("/api/registrations", json=dict(FORM, nik="", alamat=""))
    assert r.status_code == 422

    gateway.fail = True
    r = participant_client.post("/api/registrations", json=dict(FORM, nik="3273012345670002"))
    assert r.status_code == 502
    reg_id = r.json()["registration"]["id"]

    gateway.fail = False
    r = participant_client.post(f"/api/registrations/{reg_id}/payment")
    assert r.status_code == 200
    assert r.json()["payment"]["token"]

    r = participant_client.post(f"/api/registrations/{reg_id}/payment-outcome", json={"outcome": "close"})
    assert r.json()["next_step"] == "payment"


def test_registration_requires_login(client):
    assert client.post("/api/registrations", json=FORM).status_code == 401


def test_profile_and_ticket_qr(participant_client, client):
    r = participant_client.put("/api/me/profile", json={"nama": "Budi", "kabupaten": "KOTA BANDUNG"})
    assert r.status_code == 200
    assert participant_client.get("/api/me").json()["nama"] == "Budi"

    ticket = participant_client.post("/api/registrations", json=FORM).json()["registration"]["ticket_number"]
    r = participant_client.get(f"/api/tickets/{ticket}/qr.png")
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content.startswith(b"\x89PNG")
    assert client.get(f"/api/tickets/{ticket}/qr.png").status_code == 401


def test_login_logout(client, participant_client):
    assert client.post("/api/auth/login", json={"email": "runner@example.com", "password": "wrong"}).status_code == 401
    assert client.post("/api/auth/login", json={"email": "runner@example.com", "password": "secret1"}).status_code == 200
    assert client.get("/api/me").status_code == 200
    client.post("/api/auth/logout")
    assert client.get("/api/me").status_code == 401


def test_garbled_gateway_reply_keeps_registration(participant_client, app_overrides):
    app.dependency_overrides[get_gateway] = lambda: MidtransClient(
        server_key="k", transport=httpx.MockTransport(lambda r: httpx.Response(200, json=["x"]))
    )
    r = participant_client.post("/api/registrations", json=FORM)
    assert r.status_code == 502
    assert r.json()["registration"]["payment_status"] == "pending"


def test_corrupt_password_hash_is_a_failed_login(client, participant_client, session):
    for stored in ("pbkdf2_sha256$abc$zz$zz", "pbkdf2_sha256$1000$zz$zz", "pbkdf2_sha256$0$AAAA$AAAA", "plain"):
        assert verify_password("secret1", stored) is False

    user = session.execute(select(models.User).where(models.User.email == "runner@example.com")).scalar_one()
    user.password_hash = "pbkdf2_sha256$abc$zz$zz"
    session.commit()
    assert client.post("/api/auth/login", json={"email": "runner@example.com", "password": "secret1"}).status_code == 401
