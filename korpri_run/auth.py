from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, HTTPException, Depends
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from sqlalchemy.orm import Session

from . import models
from .db import get_session
from .settings import settings

PARTICIPANT_COOKIE = "kr_auth"
ADMIN_COOKIE = "kr_admin"

_PBKDF2_ITERS = 200_000

def hash_password(password: str) -> str:
    salt = os.urandom(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, _PBKDF2_ITERS)
    return "pbkdf2_sha256$%d$%s$%s" % (
        _PBKDF2_ITERS,
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(dk).decode("ascii"),
    )

def verify_password(password: str, stored: str) -> bool:
    try:
        algo, iters_s, salt_b64, dk_b64 = stored.split("$", 3)
        if algo != "pbkdf2_sha256":
            return False
        iters = int(iters_s)
        if iters < 1:
            return False
        salt = base64.b64decode(salt_b64.encode("ascii"), validate=True)
        dk_expected = base64.b64decode(dk_b64.encode("ascii"), validate=True)
    except (ValueError, binascii.Error):
        return False
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iters)
    return hmac.compare_digest(dk, dk_expected)

def _serializer(salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.KR_SECRET_KEY, salt=salt)

def _load(raw: Optional[str], salt: str) -> Optional[dict]:
    if not raw:
        return None
    try:
        return _serializer(salt).loads(raw, max_age=settings.KR_SESSION_MAX_AGE)
    except (SignatureExpired, BadSignature):
        return None

@dataclass
class CurrentUser:
    id: str
    email: str

@dataclass
class CurrentAdmin:
    id: str
    email: str
    name: str
    role: str  # "admin" | "staff"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

def set_login_cookie(request: Request, *, user_id: str, email: str) -> None:
    request.state._set_cookies = getattr(request.state, "_set_cookies", {})
    request.state._set_cookies[PARTICIPANT_COOKIE] = _serializer("kr-participant").dumps({"id": user_id, "e": email})

def set_admin_cookie(request: Request, *, admin_id: str) -> None:
    request.state._set_cookies = getattr(request.state, "_set_cookies", {})
    request.state._set_cookies[ADMIN_COOKIE] = _serializer("kr-admin").dumps({"id": admin_id})

def clear_login_cookie(request: Request, name: str = PARTICIPANT_COOKIE) -> None:
    request.state._clear_cookies = getattr(request.state, "_clear_cookies", set())
    request.state._clear_cookies.add(name)

def get_current_user(request: Request, session: Session = Depends(get_session)) -> Optional[CurrentUser]:
    data = _load(request.cookies.get(PARTICIPANT_COOKIE), "kr-participant")
    if not data:
        return None
    user = session.get(models.User, str(data.get("id")))
    if not user:
        return None
    return CurrentUser(id=user.id, email=user.email)

def login_required(user: Optional[CurrentUser] = Depends(get_current_user)) -> CurrentUser:
    if not user:
        raise HTTPException(status_code=401, detail="Login required")
    return user

def get_current_admin(request: Request, session: Session = Depends(get_session)) -> Optional[CurrentAdmin]:
    # Expiry is checked by the signature; the account itself is re-read on every call.
    data = _load(request.cookies.get(ADMIN_COOKIE), "kr-admin")
    if not data:
        return None
    admin = session.get(models.AdminUser, str(data.get("id")))
    if not admin or not admin.is_active:
        return None
    return CurrentAdmin(id=admin.id, email=admin.email, name=admin.name, role=admin.role)

def staff_required(admin: Optional[CurrentAdmin] = Depends(get_current_admin)) -> CurrentAdmin:
    if not admin:
        raise HTTPException(status_code=401, detail="Admin login required")
    if admin.role not in ("admin", "staff"):
        raise HTTPException(status_code=403, detail="Forbidden")
    return admin

def admin_required(admin: Optional[CurrentAdmin] = Depends(get_current_admin)) -> CurrentAdmin:
    if not admin:
        raise HTTPException(status_code=401, detail="Admin login required")
    if admin.role != "admin":
        raise HTTPException(status_code=403, detail="Admin required")
    return admin

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

class AuthCookieMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response: Response = await call_next(request)

        for name, token in getattr(request.state, "_set_cookies", {}).items():
            response.set_cookie(
                name,
                token,
                httponly=True,
                samesite="lax",
                secure=False,  # set True behind HTTPS
                max_age=settings.KR_SESSION_MAX_AGE,
            )
        for name in getattr(request.state, "_clear_cookies", set()):
            response.delete_cookie(name)
        return response
