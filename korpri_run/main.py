import logging
from typing import Optional

from fastapi import FastAPI, Request, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from .settings import settings, configure_logging
from .db import init_db, get_session, new_session, schema_exists
from . import services, race_ops, payments, pricing, qr
from .address import AddressClient, AddressLookupError
from .auth import (
    AuthCookieMiddleware,
    ADMIN_COOKIE,
    PARTICIPANT_COOKIE,
    get_current_user,
    get_current_admin,
    login_required,
    staff_required,
    admin_required,
    set_login_cookie,
    set_admin_cookie,
    clear_login_cookie,
)
from .bib_labels import BibLabel, bib_labels_pdf_bytes
from .payments import MidtransClient, PaymentGatewayError, InvalidNotification
from .schemas import (
    SignUp,
    Login,
    ProfileUpdate,
    RegistrationCreate,
    PaymentOutcome,
    AssignBib,
    CollectBib,
    BibEvent,
    ResultStatusUpdate,
    StaffCreate,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="KORPRI RUN")
app.add_middleware(AuthCookieMiddleware)

@app.on_event("startup")
def _startup() -> None:
    configure_logging()
    init_db()
    # Schema is created by `korpri-run migrate`, never from a request path.
    if not schema_exists():
        logger.warning("Database schema missing; run `korpri-run migrate`")
        return
    s = new_session()
    try:
        services.ensure_admin_user(s)
    finally:
        s.close()

@app.exception_handler(SQLAlchemyError)
def _db_error(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s", request.url.path)
    return JSONResponse({"detail": "Database unavailable, please retry"}, status_code=503)

@app.exception_handler(AddressLookupError)
def _address_error(request: Request, exc: AddressLookupError):
    return JSONResponse({"detail": str(exc)}, status_code=502)

def get_gateway() -> MidtransClient:
    return MidtransClient()

def get_address_client() -> AddressClient:
    return AddressClient()

def _op_response(result: race_ops.OperationResult) -> JSONResponse:
    return JSONResponse(result.to_dict(), status_code=200 if result.success else 409)

def _payment_payload(start: services.RegistrationStart) -> dict:
    return {
        "token": start.payment_token,
        "redirect_url": start.redirect_url,
        "client_key": settings.KR_MIDTRANS_CLIENT_KEY,
        "snap_js_url": payments.snap_js_url(),
    }

@app.get("/api/health")
def health():
    return {"ok": True}

# ---------------------------
# Catalogue & address lookup
# ---------------------------

@app.get("/api/tickets")
def tickets():
    return {"event": settings.KR_EVENT_NAME, "tickets": pricing.ticket_catalogue()}

@app.get("/api/price")
def price(user_type: str, jenis_tiket: str):
    try:
        amount = pricing.ticket_price(user_type, jenis_tiket)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"user_type": user_type, "jenis_tiket": jenis_tiket, "price": amount}

@app.get("/api/address/provinces")
def provinces(client: AddressClient = Depends(get_address_client)):
    return client.provinces()

@app.get("/api/address/regencies/{province_id}")
def regencies(province_id: int, client: AddressClient = Depends(get_address_client)):
    return client.regencies(province_id)

@app.get("/api/address/districts/{regency_id}")
def districts(regency_id: int, client: AddressClient = Depends(get_address_client)):
    return client.districts(regency_id)

@app.get("/api/address/villages/{district_id}")
def villages(district_id: int, client: AddressClient = Depends(get_address_client)):
    return client.villages(district_id)

# ---------------------------
# Participant auth & profile
# ---------------------------

@app.post("/api/auth/signup", status_code=201)
def signup(payload: SignUp, request: Request, session=Depends(get_session)):
    try:
        u = services.create_user(session, payload)
    except services.DuplicateEmailError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    set_login_cookie(request, user_id=u.id, email=u.email)
    return {"id": u.id, "email": u.email}

@app.post("/api/auth/login")
def login(payload: Login, request: Request, session=Depends(get_session)):
    u = services.authenticate_user(session, payload.email, payload.password)
    if not u:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    set_login_cookie(request, user_id=u.id, email=u.email)
    return {"id": u.id, "email": u.email}

@app.post("/api/auth/logout")
def logout(request: Request):
    clear_login_cookie(request, PARTICIPANT_COOKIE)
    return {"ok": True}

def _profile(u) -> dict:
    return {
        "id": u.id, "email": u.email, "nama": u.nama, "nik": u.nik, "nomer_hp": u.nomer_hp,
        "alamat": u.alamat, "provinsi": u.provinsi, "kabupaten": u.kabupaten,
        "kecamatan": u.kecamatan, "kelurahan": u.kelurahan,
    }

@app.get("/api/me")
def me(user=Depends(login_required), session=Depends(get_session)):
    return _profile(services.get_user(session, user.id))

@app.put("/api/me/profile")
def update_me(payload: ProfileUpdate, user=Depends(login_required), session=Depends(get_session)):
    return _profile(services.update_profile(session, user.id, payload))

@app.get("/api/me/registrations")
def my_registrations(user=Depends(login_required), session=Depends(get_session)):
    return [services.registration_to_dict(r) for r in services.list_user_registrations(session, user.id)]

# ---------------------------
# Registration workflow
# ---------------------------

@app.post("/api/registrations", status_code=201)
def create_registration(
    payload: RegistrationCreate,
    user=Depends(login_required),
    session=Depends(get_session),
    gateway: MidtransClient = Depends(get_gateway),
):
    try:
        start = services.start_registration(session, user.id, payload, gateway)
    except services.DuplicateNikError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    body = {"registration": services.registration_to_dict(start.registration)}
    if start.payment_error:
        body["detail"] = start.payment_error
        return JSONResponse(body, status_code=502)
    body["payment"] = _payment_payload(start)
    return body

@app.post("/api/registrations/{registration_id}/payment")
def retry_registration_payment(
    registration_id: str,
    user=Depends(login_required),
    session=Depends(get_session),
    gateway: MidtransClient = Depends(get_gateway),
):
    try:
        start = services.retry_payment(session, user.id, registration_id, gateway)
    except services.RegistrationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PaymentGatewayError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"registration": services.registration_to_dict(start.registration), "payment": _payment_payload(start)}

@app.post("/api/registrations/{registration_id}/payment-outcome")
def payment_outcome(registration_id: str, payload: PaymentOutcome, user=Depends(login_required), session=Depends(get_session)):
    reg = services.get_registration(session, registration_id)
    if not reg or reg.user_id != user.id:
        raise HTTPException(status_code=404, detail="Registration not found")
    return {"registration_id": reg.id, **services.resolve_payment_outcome(payload.outcome)}

@app.get("/api/tickets/{ticket_number}/qr.png")
def ticket_qr(ticket_number: str, user=Depends(get_current_user), admin=Depends(get_current_admin), session=Depends(get_session)):
    if not user and not admin:
        raise HTTPException(status_code=401, detail="Login required")
    reg = services.get_registration_by_ticket(session, ticket_number)
    if not reg or (not admin and reg.user_id != user.id):
        raise HTTPException(status_code=404, detail="Ticket not found")
    return Response(content=qr.make_qr_png_bytes(reg.ticket_number), media_type="image/png")

# ---------------------------
# Payment webhook
# ---------------------------

@app.post("/api/payments/midtrans/webhook")
async def midtrans_webhook(request: Request, session=Depends(get_session)):
    try:
        payload = await request.json()
        order_id, status = payments.parse_notification(payload)
    except (ValueError, InvalidNotification) as e:
        logger.warning("Rejected malformed Midtrans notification: %s", e)
        return JSONResponse({"error": "Malformed notification"}, status_code=400)

    if settings.KR_MIDTRANS_VERIFY_SIGNATURE and not payments.verify_signature(payload):
        logger.warning("Rejected Midtrans notification for %s: bad signature", order_id)
        return JSONResponse({"error": "Invalid signature"}, status_code=403)

    logger.info(
        "Midtrans notification %s: %s/%s -> %s",
        order_id, payload.get("transaction_status"), payload.get("fraud_status"), status,
    )
    try:
        matched = services.reconcile_payment(session, order_id, status)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Failed to update registration %s", order_id)
        return JSONResponse({"error": "Failed to update registration"}, status_code=500)
    if not matched:
        logger.warning("Midtrans notification for unknown order %s", order_id)
    return {"message": "Webhook processed successfully", "order_id": order_id, "status": status}

# ---------------------------
# Admin auth & accounts
# ---------------------------

def _admin_dict(a) -> dict:
    return {"id": a.id, "email": a.email, "name": a.name, "role": a.role}

@app.post("/api/admin/login")
def admin_login(payload: Login, request: Request, session=Depends(get_session)):
    a = services.verify_admin_credentials(session, payload.email, payload.password)
    if not a:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    set_admin_cookie(request, admin_id=a.id)
    return _admin_dict(a)

@app.post("/api/admin/logout")
def admin_logout(request: Request):
    clear_login_cookie(request, ADMIN_COOKIE)
    return {"ok": True}

@app.get("/api/admin/me")
def admin_me(admin=Depends(staff_required)):
    return _admin_dict(admin)

@app.get("/api/admin/users", dependencies=[Depends(admin_required)])
def admin_users(session=Depends(get_session)):
    return [_admin_dict(a) for a in services.list_admin_users(session)]

@app.post("/api/admin/users", status_code=201, dependencies=[Depends(admin_required)])
def admin_user_create(payload: StaffCreate, session=Depends(get_session)):
    try:
        a = services.create_staff_user(session, payload.email, payload.password, payload.name, payload.role)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _admin_dict(a)

# ---------------------------
# Admin registration console
# ---------------------------

@app.get("/api/admin/registrations", dependencies=[Depends(admin_required)])
def admin_registrations(
    search: str = "",
    status: Optional[str] = None,
    ticket: Optional[str] = None,
    session=Depends(get_session),
):
    rows = services.list_registrations(session, search=search, status=status, ticket=ticket)
    return {
        "registrations": [services.registration_to_dict(r) for r in rows],
        "summary": services.registration_summary(session),
    }

@app.get("/api/admin/registrations/{registration_id}", dependencies=[Depends(admin_required)])
def admin_registration_detail(registration_id: str, session=Depends(get_session)):
    reg = services.get_registration(session, registration_id)
    if not reg:
        raise HTTPException(status_code=404, detail="Registration not found")
    return services.registration_to_dict(reg)

# ---------------------------
# Race operations
# ---------------------------

@app.get("/api/admin/race/bibs", dependencies=[Depends(staff_required)])
def race_bibs(search: str = "", session=Depends(get_session)):
    return race_ops.list_bib_assignments(session, search=search)

@app.get("/api/admin/race/unassigned", dependencies=[Depends(staff_required)])
def race_unassigned(session=Depends(get_session)):
    return [services.registration_to_dict(r) for r in race_ops.list_unassigned_registrations(session)]

@app.post("/api/admin/race/bibs")
def race_assign_bib(payload: AssignBib, admin=Depends(staff_required), session=Depends(get_session)):
    return _op_response(race_ops.assign_bib(session, payload.registration_id, staff_id=admin.id))

@app.post("/api/admin/race/bibs/collect")
def race_collect_bib(payload: CollectBib, admin=Depends(staff_required), session=Depends(get_session)):
    return _op_response(race_ops.collect_bib(session, payload.ticket_number, staff_id=admin.id))

@app.get("/api/admin/race/bibs/labels.pdf", dependencies=[Depends(staff_required)])
def race_bib_labels(session=Depends(get_session)):
    labels = [
        BibLabel(bib_number=b["bib_number"], name=b["participant_name"], category=pricing.ticket_type_name(b["jenis_tiket"]))
        for b in race_ops.list_bib_assignments(session)
    ]
    pdf = bib_labels_pdf_bytes(labels, title=f"{settings.KR_EVENT_NAME} bibs")
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": 'attachment; filename="bib-labels.pdf"'},
    )

@app.post("/api/admin/race/start")
def race_start(payload: BibEvent, admin=Depends(staff_required), session=Depends(get_session)):
    return _op_response(race_ops.record_start(session, payload.bib_number, staff_id=admin.id))

@app.post("/api/admin/race/finish")
def race_finish(payload: BibEvent, admin=Depends(staff_required), session=Depends(get_session)):
    return _op_response(race_ops.record_finish(session, payload.bib_number, staff_id=admin.id))

@app.post("/api/admin/race/results/{bib_number}/status")
def race_result_status(bib_number: int, payload: ResultStatusUpdate, admin=Depends(admin_required), session=Depends(get_session)):
    return _op_response(race_ops.set_result_status(session, bib_number, payload.status, staff_id=admin.id))

@app.get("/api/admin/race/results", dependencies=[Depends(staff_required)])
def race_results(category: Optional[str] = None, session=Depends(get_session)):
    return race_ops.list_results(session, category=category)

@app.get("/api/admin/race/statistics", dependencies=[Depends(staff_required)])
def race_statistics(session=Depends(get_session)):
    # best effort: the console still renders without statistics
    try:
        stats = race_ops.get_statistics(session)
    except SQLAlchemyError as e:
        session.rollback()
        logger.warning("Could not fetch race statistics: %s", e)
        stats = None
    return {"statistics": stats}

@app.get("/api/results")
def public_results(category: Optional[str] = Query(default=None), session=Depends(get_session)):
    if category and category not in pricing.TICKET_CATEGORIES:
        raise HTTPException(status_code=400, detail="Unknown category")
    return race_ops.list_results(session, category=category, finished_only=True)

from .csv_export import router as csv_router
app.include_router(csv_router, prefix="/api", tags=["csv"])
