from __future__ import annotations

import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Integer, DateTime, ForeignKey, UniqueConstraint, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def utcnow() -> datetime:
    # stored naive, always UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)

def _uuid() -> str:
    return str(uuid.uuid4())


PAYMENT_STATUSES = ("pending", "completed", "failed")
BIB_STATUSES = ("available", "assigned", "collected")
RESULT_STATUSES = ("registered", "started", "finished", "dnf", "dsq")


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String, nullable=False)

    # profile, filled in after sign-up
    nama: Mapped[str] = mapped_column(String, nullable=False, default="")
    nik: Mapped[str] = mapped_column(String, nullable=False, default="")
    nomer_hp: Mapped[str] = mapped_column(String, nullable=False, default="")
    alamat: Mapped[str] = mapped_column(String, nullable=False, default="")
    provinsi: Mapped[str] = mapped_column(String, nullable=False, default="")
    kabupaten: Mapped[str] = mapped_column(String, nullable=False, default="")
    kecamatan: Mapped[str] = mapped_column(String, nullable=False, default="")
    kelurahan: Mapped[str] = mapped_column(String, nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    registrations: Mapped[list["Registration"]] = relationship(back_populates="user")


class AdminUser(Base):
    __tablename__ = "admin_users"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[str] = mapped_column(String, nullable=False, default="staff")  # admin | staff
    is_active: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class Registration(Base):
    __tablename__ = "registrations"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    user_type: Mapped[str] = mapped_column(String, nullable=False)  # ASN | Umum
    nik: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    nama: Mapped[str] = mapped_column(String, nullable=False)
    nomer_hp: Mapped[str] = mapped_column(String, nullable=False)
    alamat: Mapped[str] = mapped_column(String, nullable=False)
    kab_kota: Mapped[str] = mapped_column(String, nullable=False)
    jenis_tiket: Mapped[str] = mapped_column(String, nullable=False)  # fun-run | half-marathon | full-marathon
    ticket_price: Mapped[int] = mapped_column(Integer, nullable=False)

    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    payment_token: Mapped[str | None] = mapped_column(String, nullable=True)
    ticket_number: Mapped[str] = mapped_column(String, nullable=False, unique=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    user: Mapped["User"] = relationship(back_populates="registrations")
    bib: Mapped["RaceBib"] = relationship(back_populates="registration", uselist=False)
    result: Mapped["RaceResult"] = relationship(back_populates="registration", uselist=False)

    __table_args__ = (
        Index("ix_registrations_status", "payment_status"),
    )


class RaceBib(Base):
    __tablename__ = "race_bibs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration_id: Mapped[str] = mapped_column(ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False)
    bib_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="available")
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    collected_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    staff_id: Mapped[str | None] = mapped_column(ForeignKey("admin_users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    registration: Mapped["Registration"] = relationship(back_populates="bib")

    __table_args__ = (
        UniqueConstraint("bib_number", name="uq_bib_number"),
        UniqueConstraint("registration_id", name="uq_bib_registration"),
    )


class RaceResult(Base):
    __tablename__ = "race_results"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    registration_id: Mapped[str] = mapped_column(ForeignKey("registrations.id", ondelete="CASCADE"), nullable=False)
    bib_number: Mapped[int] = mapped_column(Integer, nullable=False)

    start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finish_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    category_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="registered")

    staff_id: Mapped[str | None] = mapped_column(ForeignKey("admin_users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    registration: Mapped["Registration"] = relationship(back_populates="result")

    __table_args__ = (
        UniqueConstraint("bib_number", name="uq_result_bib"),
        UniqueConstraint("registration_id", name="uq_result_registration"),
        Index("ix_results_status", "status"),
    )
