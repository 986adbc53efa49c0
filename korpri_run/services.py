from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .auth import hash_password, verify_password
from .models import utcnow
from .payments import MidtransClient, PaymentGatewayError
from .pricing import ticket_price, ticket_type_name
from .qr import qr_image_url
from .schemas import SignUp, ProfileUpdate, RegistrationCreate
from .settings import settings

logger = logging.getLogger(__name__)


class DuplicateEmailError(ValueError):
    pass

class DuplicateNikError(ValueError):
    pass

class RegistrationNotFound(LookupError):
    pass

# ---------------------------
# Participants
# ---------------------------

def create_user(session: Session, payload: SignUp) -> models.User:
    if payload.password != payload.confirm_password:
        raise ValueError("Passwords do not match")
    email = payload.email.strip().lower()
    if session.execute(select(models.User).where(models.User.email == email)).scalar_one_or_none():
        raise DuplicateEmailError("Email already registered")
    u = models.User(email=email, password_hash=hash_password(payload.password))
    session.add(u)
    try:
        session.commit()
    except IntegrityError as e:
        session.rollback()
        raise DuplicateEmailError("Email already registered") from e
    return u

def authenticate_user(session: Session, email: str, password: str) -> Optional[models.User]:
    u = session.execute(
        select(models.User).where(models.User.email == email.strip().lower())
    ).scalar_one_or_none()
    if u and verify_password(password, u.password_hash):
        return u
    return None

def get_user(session: Session, user_id: str) -> Optional[models.User]:
    return session.get(models.User, user_id)

def update_profile(session: Session, user_id: str, payload: ProfileUpdate) -> models.User:
    u = session.get(models.User, user_id)
    if not u:
        raise LookupError("User not found")
    for field, value in payload.model_dump().items():
        setattr(u, field, value.strip())
    session.commit()
    return u

# ---------------------------
# Admin / staff accounts
# ---------------------------

def ensure_admin_user(session: Session) -> None:
    """Ensure the bootstrap admin account (from settings) exists in DB."""
    email = settings.KR_ADMIN_EMAIL.strip().lower()
    existing = session.execute(
        select(models.AdminUser).where(models.AdminUser.email == email)
    ).scalar_one_or_none()

    if existing:
        existing.role = "admin"
        existing.is_active = 1
        # always sync the bootstrap password from settings
        existing.password_hash = hash_password(settings.KR_ADMIN_PASSWORD)
        session.commit()
        return

    session.add(models.AdminUser(
        email=email,
        name=settings.KR_ADMIN_NAME,
        password_hash=hash_password(settings.KR_ADMIN_PASSWORD),
        role="admin",
        is_active=1,
    ))
    session.commit()

def verify_admin_credentials(session: Session, email: str, password: str) -> Optional[models.AdminUser]:
    a = session.execute(
        select(models.AdminUser).where(models.AdminUser.email == email.strip().lower())
    ).scalar_one_or_none()
    if not a or not a.is_active:
        return None
    if verify_password(password, a.password_hash):
        return a
    return None

def create_staff_user(session: Session, email: str, password: str, name: str = "", role: str = "staff") -> models.AdminUser:
    if role not in ("admin", "staff"):
        raise ValueError("role must be admin or staff")
    email = email.strip().lower()
    if session.execute(select(models.AdminUser).where(models.AdminUser.email == email)).scalar_one_or_none():
        raise ValueError("Email already exists")
    a = models.AdminUser(email=email, name=name, password_hash=hash_password(password), role=role, is_active=1)
    session.add(a)
    session.commit()
    return a

def list_admin_users(session: Session) -> list[models.AdminUser]:
    return session.execute(
        select(models.AdminUser).order_by(models.AdminUser.role.asc(), models.AdminUser.email.asc())
    ).scalars().all()

# ---------------------------
# Registration workflow
# ---------------------------

def validate_registration(data: RegistrationCreate) -> int:
    """Re-check the data-entry step and return the ticket price."""
    for field in ("nik", "nama", "nomer_hp", "alamat", "regency"):
        if not (getattr(data, field) or "").strip():
            raise ValueError(f"{field} is required")
    return ticket_price(data.user_type, data.jenis_tiket)

def generate_ticket_number() -> str:
    return f"{settings.KR_TICKET_PREFIX}-{uuid.uuid4().hex[:8].upper()}"

def get_registration_by_nik(session: Session, nik: str) -> Optional[models.Registration]:
    return session.execute(
        select(models.Registration).where(models.Registration.nik == nik.strip())
    ).scalar_one_or_none()

@dataclass
class RegistrationStart:
    registration: models.Registration
    payment_token: Optional[str] = None
    redirect_url: str = ""
    payment_error: Optional[str] = None

def _insert_registration(session: Session, user: models.User, data: RegistrationCreate, price: int) -> models.Registration:
    for _ in range(3):
        reg = models.Registration(
            user_id=user.id,
            user_type=data.user_type,
            nik=data.nik.strip(),
            nama=data.nama.strip(),
            nomer_hp=data.nomer_hp.strip(),
            alamat=data.alamat.strip(),
            kab_kota=data.regency.strip(),
            jenis_tiket=data.jenis_tiket,
            ticket_price=price,
            payment_status="pending",
            ticket_number=generate_ticket_number(),
        )
        session.add(reg)
        try:
            session.commit()
            return reg
        except IntegrityError as e:
            session.rollback()
            if get_registration_by_nik(session, data.nik):
                raise DuplicateNikError("NIK already registered") from e
            # ticket number collision, draw another one
    raise RuntimeError("Could not allocate a unique ticket number")

def _sync_profile(session: Session, user: models.User, data: RegistrationCreate) -> None:
    changed = False
    for field, value in (
        ("nama", data.nama), ("nik", data.nik), ("nomer_hp", data.nomer_hp), ("alamat", data.alamat),
        ("provinsi", data.province), ("kabupaten", data.regency),
        ("kecamatan", data.district), ("kelurahan", data.village),
    ):
        if value and not getattr(user, field):
            setattr(user, field, value.strip())
            changed = True
    if changed:
        session.commit()

def create_payment(session: Session, reg: models.Registration, email: str, gateway: MidtransClient) -> dict:
    result = gateway.create_transaction(
        order_id=reg.id,
        gross_amount=reg.ticket_price,
        customer={"first_name": reg.nama, "email": email or "", "phone": reg.nomer_hp},
        items=[{
            "id": reg.jenis_tiket,
            "price": reg.ticket_price,
            "quantity": 1,
            "name": f"{settings.KR_EVENT_NAME} - {ticket_type_name(reg.jenis_tiket)}",
        }],
    )
    reg.payment_token = result["token"]
    session.commit()
    return result

def start_registration(session: Session, user_id: str, data: RegistrationCreate, gateway: MidtransClient) -> RegistrationStart:
    """Check NIK, persist a pending registration, then open a payment transaction.

    A gateway failure after the row is stored leaves it pending; the caller
    gets the registration back with `payment_error` set and may retry.
    """
    user = session.get(models.User, user_id)
    if not user:
        raise LookupError("User not found")
    price = validate_registration(data)

    if get_registration_by_nik(session, data.nik):
        raise DuplicateNikError("NIK already registered")

    reg = _insert_registration(session, user, data, price)
    logger.info("Registration %s created (%s, %s, %d)", reg.id, reg.user_type, reg.jenis_tiket, price)
    _sync_profile(session, user, data)

    try:
        result = create_payment(session, reg, user.email, gateway)
    except PaymentGatewayError as e:
        logger.warning("Registration %s left pending: %s", reg.id, e)
        return RegistrationStart(registration=reg, payment_error=str(e))
    return RegistrationStart(registration=reg, payment_token=result["token"], redirect_url=result["redirect_url"])

def retry_payment(session: Session, user_id: str, registration_id: str, gateway: MidtransClient) -> RegistrationStart:
    reg = session.get(models.Registration, registration_id)
    if not reg or reg.user_id != user_id:
        raise RegistrationNotFound("Registration not found")
    if reg.payment_status != "pending":
        raise ValueError(f"Registration payment is already {reg.payment_status}")
    if reg.payment_token:
        return RegistrationStart(registration=reg, payment_token=reg.payment_token)
    user = session.get(models.User, user_id)
    result = create_payment(session, reg, user.email if user else "", gateway)
    return RegistrationStart(registration=reg, payment_token=result["token"], redirect_url=result["redirect_url"])

_OUTCOMES = {
    "success": {"next_step": "confirmation", "payment_pending": False, "message": "Payment received, awaiting confirmation"},
    "pending": {"next_step": "confirmation", "payment_pending": True, "message": "Payment pending"},
    "error": {"next_step": "payment", "payment_pending": True, "message": "Payment failed. Please try again."},
    "close": {"next_step": "payment", "payment_pending": True, "message": "Payment window closed. Please try again."},
}

def resolve_payment_outcome(outcome: str) -> dict:
    """Where the hosted-page result sends the participant. Stored status is left to the webhook."""
    if outcome not in _OUTCOMES:
        raise ValueError(f"Unknown payment outcome: {outcome}")
    return dict(_OUTCOMES[outcome], outcome=outcome)

def list_user_registrations(session: Session, user_id: str) -> list[models.Registration]:
    return session.execute(
        select(models.Registration)
        .where(models.Registration.user_id == user_id)
        .order_by(models.Registration.created_at.desc())
    ).scalars().all()

def get_registration_by_ticket(session: Session, ticket_number: str) -> Optional[models.Registration]:
    return session.execute(
        select(models.Registration).where(models.Registration.ticket_number == ticket_number.strip())
    ).scalar_one_or_none()

def registration_to_dict(reg: models.Registration) -> dict:
    return {
        "id": reg.id,
        "user_id": reg.user_id,
        "user_type": reg.user_type,
        "nik": reg.nik,
        "nama": reg.nama,
        "nomer_hp": reg.nomer_hp,
        "alamat": reg.alamat,
        "kab_kota": reg.kab_kota,
        "jenis_tiket": reg.jenis_tiket,
        "ticket_name": ticket_type_name(reg.jenis_tiket),
        "ticket_price": reg.ticket_price,
        "payment_status": reg.payment_status,
        "ticket_number": reg.ticket_number,
        "qr_url": qr_image_url(reg.ticket_number),
        "created_at": reg.created_at.isoformat() if reg.created_at else None,
        "updated_at": reg.updated_at.isoformat() if reg.updated_at else None,
    }

# ---------------------------
# Admin registration console
# ---------------------------

def list_registrations(
    session: Session,
    search: str = "",
    status: Optional[str] = None,
    ticket: Optional[str] = None,
) -> list[models.Registration]:
    q = select(models.Registration).order_by(models.Registration.created_at.desc())
    search = (search or "").strip()
    if search:
        like = f"%{search.lower()}%"
        q = q.where(or_(
            func.lower(models.Registration.nama).like(like),
            models.Registration.nik.like(f"%{search}%"),
            func.lower(models.Registration.ticket_number).like(like),
        ))
    if status and status != "all":
        q = q.where(models.Registration.payment_status == status)
    if ticket and ticket != "all":
        q = q.where(models.Registration.jenis_tiket == ticket)
    return session.execute(q).scalars().all()

def get_registration(session: Session, registration_id: str) -> Optional[models.Registration]:
    return session.get(models.Registration, registration_id)

def registration_summary(session: Session) -> dict:
    rows = session.execute(
        select(
            models.Registration.payment_status,
            func.count(models.Registration.id),
            func.coalesce(func.sum(models.Registration.ticket_price), 0),
        ).group_by(models.Registration.payment_status)
    ).all()
    counts = {s: 0 for s in models.PAYMENT_STATUSES}
    revenue = 0
    for status, n, amount in rows:
        counts[status] = n
        if status == "completed":
            revenue = int(amount)
    return {"total": sum(counts.values()), **counts, "revenue": revenue}

# ---------------------------
# Payment reconciliation (webhook)
# ---------------------------

def reconcile_payment(session: Session, order_id: str, status: str) -> int:
    """Overwrite status and timestamp of the matching registration; returns rows matched.

    Replays converge to the same stored status, and an unknown order id is a no-op.
    """
    if status not in models.PAYMENT_STATUSES:
        raise ValueError(f"Invalid payment status: {status}")
    res = session.execute(
        update(models.Registration)
        .where(models.Registration.id == order_id)
        .values(payment_status=status, updated_at=utcnow())
    )
    session.commit()
    return res.rowcount
