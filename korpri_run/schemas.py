from __future__ import annotations
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ParticipantClass = Literal["ASN", "Umum"]
TicketCategory = Literal["fun-run", "half-marathon", "full-marathon"]


def _required(v: str) -> str:
    v = (v or "").strip()
    if not v:
        raise ValueError("Field is required")
    return v


class SignUp(BaseModel):
    email: str
    password: str = Field(min_length=6)
    confirm_password: str

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        v = _required(v).lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class Login(BaseModel):
    email: str
    password: str


class ProfileUpdate(BaseModel):
    nama: str = ""
    nik: str = ""
    nomer_hp: str = ""
    alamat: str = ""
    provinsi: str = ""
    kabupaten: str = ""
    kecamatan: str = ""
    kelurahan: str = ""


class RegistrationCreate(BaseModel):
    user_type: ParticipantClass
    jenis_tiket: TicketCategory
    nik: str
    nama: str
    nomer_hp: str
    alamat: str
    regency: str
    province: str = ""
    district: str = ""
    village: str = ""

    check_required = field_validator("nik", "nama", "nomer_hp", "alamat", "regency")(_required)


class PaymentOutcome(BaseModel):
    outcome: Literal["success", "pending", "error", "close"]


class AssignBib(BaseModel):
    registration_id: str


class CollectBib(BaseModel):
    ticket_number: str

    check_required = field_validator("ticket_number")(_required)


class BibEvent(BaseModel):
    bib_number: int = Field(gt=0)


class ResultStatusUpdate(BaseModel):
    status: Literal["dnf", "dsq"]


class StaffCreate(BaseModel):
    email: str
    password: str = Field(min_length=6)
    name: str = ""
    role: Literal["admin", "staff"] = "staff"
