"""Race-day operations: bib issuance and collection, start/finish timing, ranking.

Every operation answers with an OperationResult instead of raising, so a
checkpoint or timing station can show the message and let staff retry.

State changes are compare-and-set UPDATEs guarded by the expected prior
state; the affected row count decides who wins when two stations act on the
same bib at once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, func, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .models import utcnow
from .settings import settings

logger = logging.getLogger(__name__)

# arbitrary key for pg_advisory_xact_lock around ranking writes
RANKING_LOCK_KEY = 7_251_042

_BIB_ALLOCATION_ATTEMPTS = 5


@dataclass
class OperationResult:
    success: bool
    message: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"success": self.success, "message": self.message, **self.data}

def _ok(message: str, **data) -> OperationResult:
    logger.info("race op ok: %s", message)
    return OperationResult(True, message, data)

def _fail(message: str, **data) -> OperationResult:
    logger.info("race op rejected: %s", message)
    return OperationResult(False, message, data)


def format_duration(sec: Optional[int]) -> str:
    if sec is None:
        return ""
    sec = int(sec)
    hh = sec // 3600
    mm = (sec % 3600) // 60
    ss = sec % 60
    if hh > 0:
        return f"{hh:02d}:{mm:02d}:{ss:02d}"
    return f"{mm:02d}:{ss:02d}"


def _ranking_lock(session: Session) -> None:
    # SQLite already serializes writers; Postgres needs an explicit lock.
    if session.get_bind().dialect.name == "postgresql":
        session.execute(text("SELECT pg_advisory_xact_lock(:k)"), {"k": RANKING_LOCK_KEY})

def _bib(session: Session, bib_number: int) -> Optional[models.RaceBib]:
    return session.execute(
        select(models.RaceBib).where(models.RaceBib.bib_number == bib_number)
    ).scalar_one_or_none()

def _result(session: Session, bib: models.RaceBib) -> models.RaceResult:
    row = session.execute(
        select(models.RaceResult).where(models.RaceResult.bib_number == bib.bib_number)
    ).scalar_one_or_none()
    if row is None:
        row = models.RaceResult(registration_id=bib.registration_id, bib_number=bib.bib_number, status="registered")
        session.add(row)
        session.flush()
    return row

def _next_bib_number(session: Session) -> int:
    current = session.execute(select(func.max(models.RaceBib.bib_number))).scalar()
    floor = settings.KR_BIB_START - 1
    return max(current if current is not None else floor, floor) + 1

# ---------------------------
# Bibs
# ---------------------------

def assign_bib(session: Session, registration_id: str, staff_id: Optional[str] = None) -> OperationResult:
    reg = session.get(models.Registration, registration_id)
    if not reg:
        return _fail("Registration not found")
    if settings.KR_REQUIRE_PAID_FOR_BIB and reg.payment_status != "completed":
        return _fail(f"Payment for ticket {reg.ticket_number} is not completed")

    for _ in range(_BIB_ALLOCATION_ATTEMPTS):
        existing = session.execute(
            select(models.RaceBib).where(models.RaceBib.registration_id == registration_id)
        ).scalar_one_or_none()
        if existing:
            return _fail(f"Registration already has bib #{existing.bib_number}", bib_number=existing.bib_number)

        number = _next_bib_number(session)
        now = utcnow()
        session.add(models.RaceBib(
            registration_id=registration_id,
            bib_number=number,
            status="assigned",
            assigned_at=now,
            staff_id=staff_id,
        ))
        session.add(models.RaceResult(registration_id=registration_id, bib_number=number, status="registered"))
        try:
            session.commit()
        except IntegrityError:
            # another station took this number (or this registration); look again
            session.rollback()
            continue
        return _ok(f"Bib #{number} assigned to {reg.nama}", bib_number=number, ticket_number=reg.ticket_number)

    return _fail("Could not allocate a bib number, please retry")

def collect_bib(session: Session, ticket_number: str, staff_id: Optional[str] = None) -> OperationResult:
    ticket_number = (ticket_number or "").strip()
    row = session.execute(
        select(models.RaceBib, models.Registration)
        .join(models.Registration, models.RaceBib.registration_id == models.Registration.id)
        .where(models.Registration.ticket_number == ticket_number)
    ).first()
    if not row:
        return _fail(f"No bib assigned for ticket {ticket_number}")
    bib, reg = row
    if bib.status == "collected":
        return _fail(f"Bib #{bib.bib_number} was already collected", bib_number=bib.bib_number)

    now = utcnow()
    res = session.execute(
        update(models.RaceBib)
        .where(models.RaceBib.id == bib.id, models.RaceBib.status == "assigned")
        .values(status="collected", collected_at=now, staff_id=staff_id)
    )
    if res.rowcount != 1:
        session.rollback()
        return _fail(f"Bib #{bib.bib_number} was already collected", bib_number=bib.bib_number)
    session.commit()
    return _ok(
        f"Bib #{bib.bib_number} collected by {reg.nama}",
        bib_number=bib.bib_number,
        participant_name=reg.nama,
        collected_at=now.isoformat(),
    )

# ---------------------------
# Timing
# ---------------------------

def record_start(session: Session, bib_number: int, staff_id: Optional[str] = None,
                 at: Optional[datetime] = None) -> OperationResult:
    bib = _bib(session, bib_number)
    if not bib:
        return _fail(f"Bib #{bib_number} is not assigned")
    result = _result(session, bib)
    if result.status in ("dnf", "dsq"):
        return _fail(f"Bib #{bib_number} is marked {result.status}")
    if result.start_time is not None:
        return _fail(f"Race start already recorded for bib #{bib_number}")

    at = at or utcnow()
    res = session.execute(
        update(models.RaceResult)
        .where(
            models.RaceResult.id == result.id,
            models.RaceResult.start_time.is_(None),
            models.RaceResult.status == "registered",
        )
        .values(start_time=at, status="started", staff_id=staff_id, updated_at=utcnow())
    )
    if res.rowcount != 1:
        session.rollback()
        return _fail(f"Race start already recorded for bib #{bib_number}")
    session.commit()
    return _ok(f"Race start recorded for bib #{bib_number}", bib_number=bib_number, start_time=at.isoformat())

def _rerank(session: Session) -> None:
    """Positions over all finishers by (finish_time, bib_number); category positions likewise per ticket."""
    rows = session.execute(
        select(models.RaceResult, models.Registration.jenis_tiket)
        .join(models.Registration, models.RaceResult.registration_id == models.Registration.id)
        .where(models.RaceResult.status == "finished")
        .order_by(models.RaceResult.finish_time.asc(), models.RaceResult.bib_number.asc())
    ).all()
    per_category: dict[str, int] = {}
    for position, (result, category) in enumerate(rows, start=1):
        per_category[category] = per_category.get(category, 0) + 1
        result.position = position
        result.category_position = per_category[category]
    session.execute(
        update(models.RaceResult)
        .where(models.RaceResult.status != "finished", models.RaceResult.position.is_not(None))
        .values(position=None, category_position=None)
    )

def record_finish(session: Session, bib_number: int, staff_id: Optional[str] = None,
                  at: Optional[datetime] = None) -> OperationResult:
    at = at or utcnow()
    _ranking_lock(session)
    bib = _bib(session, bib_number)
    if not bib:
        session.rollback()
        return _fail(f"Bib #{bib_number} is not assigned")
    result = _result(session, bib)
    if result.status in ("dnf", "dsq"):
        session.rollback()
        return _fail(f"Bib #{bib_number} is marked {result.status}")
    if result.start_time is None:
        session.rollback()
        return _fail(f"No race start recorded for bib #{bib_number}")
    if result.finish_time is not None:
        session.rollback()
        return _fail(f"Finish already recorded for bib #{bib_number}")
    if at <= result.start_time:
        session.rollback()
        return _fail(f"Finish time for bib #{bib_number} is not after its start time")

    duration = int((at - result.start_time).total_seconds())
    res = session.execute(
        update(models.RaceResult)
        .where(
            models.RaceResult.id == result.id,
            models.RaceResult.finish_time.is_(None),
            models.RaceResult.status == "started",
        )
        .values(finish_time=at, duration_seconds=duration, status="finished", staff_id=staff_id, updated_at=utcnow())
    )
    if res.rowcount != 1:
        session.rollback()
        return _fail(f"Finish already recorded for bib #{bib_number}")
    _rerank(session)
    session.commit()
    session.refresh(result)
    return _ok(
        f"Finish recorded for bib #{bib_number}",
        bib_number=bib_number,
        position=result.position,
        category_position=result.category_position,
        duration_seconds=duration,
        duration=format_duration(duration),
        finish_time=at.isoformat(),
    )

def set_result_status(session: Session, bib_number: int, status: str, staff_id: Optional[str] = None) -> OperationResult:
    """Administrative dnf / dsq override."""
    if status not in ("dnf", "dsq"):
        return _fail(f"Status must be dnf or dsq, not {status}")
    _ranking_lock(session)
    bib = _bib(session, bib_number)
    if not bib:
        session.rollback()
        return _fail(f"Bib #{bib_number} is not assigned")
    result = _result(session, bib)
    if result.status == status:
        session.rollback()
        return _fail(f"Bib #{bib_number} is already marked {status}")
    if result.status == "dsq":
        session.rollback()
        return _fail(f"Bib #{bib_number} is disqualified")
    if status == "dnf" and result.status not in ("registered", "started"):
        session.rollback()
        return _fail(f"Bib #{bib_number} has status {result.status} and cannot be marked dnf")

    was_finished = result.status == "finished"
    result.status = status
    result.position = None
    result.category_position = None
    result.staff_id = staff_id
    result.updated_at = utcnow()
    session.flush()
    if was_finished:
        _rerank(session)
    session.commit()
    return _ok(f"Bib #{bib_number} marked {status}", bib_number=bib_number, status=status)

# ---------------------------
# Listings & statistics
# ---------------------------

def get_statistics(session: Session) -> dict:
    by_status = dict(session.execute(
        select(models.RaceResult.status, func.count(models.RaceResult.id)).group_by(models.RaceResult.status)
    ).all())
    by_bib_status = dict(session.execute(
        select(models.RaceBib.status, func.count(models.RaceBib.id)).group_by(models.RaceBib.status)
    ).all())
    finished_by_category = dict(session.execute(
        select(models.Registration.jenis_tiket, func.count(models.RaceResult.id))
        .join(models.Registration, models.RaceResult.registration_id == models.Registration.id)
        .where(models.RaceResult.status == "finished")
        .group_by(models.Registration.jenis_tiket)
    ).all())
    total_registered = session.execute(
        select(func.count(models.Registration.id)).where(models.Registration.payment_status == "completed")
    ).scalar() or 0
    total_started = session.execute(
        select(func.count(models.RaceResult.id)).where(models.RaceResult.start_time.is_not(None))
    ).scalar() or 0
    return {
        "total_registered": total_registered,
        "bibs_assigned": sum(by_bib_status.values()),
        "bibs_collected": by_bib_status.get("collected", 0),
        "total_started": total_started,
        "total_finished": by_status.get("finished", 0),
        "total_dnf": by_status.get("dnf", 0),
        "total_dsq": by_status.get("dsq", 0),
        "finished_by_category": finished_by_category,
    }

def list_bib_assignments(session: Session, search: str = "") -> list[dict]:
    q = (
        select(models.RaceBib, models.Registration)
        .join(models.Registration, models.RaceBib.registration_id == models.Registration.id)
        .order_by(models.RaceBib.bib_number.asc())
    )
    rows = session.execute(q).all()
    search = (search or "").strip().lower()
    out = []
    for bib, reg in rows:
        if search and search not in reg.nama.lower() and search not in reg.ticket_number.lower() \
                and search != str(bib.bib_number):
            continue
        out.append({
            "bib_number": bib.bib_number,
            "registration_id": reg.id,
            "participant_name": reg.nama,
            "ticket_number": reg.ticket_number,
            "jenis_tiket": reg.jenis_tiket,
            "status": bib.status,
            "assigned_at": bib.assigned_at.isoformat() if bib.assigned_at else None,
            "collected_at": bib.collected_at.isoformat() if bib.collected_at else None,
        })
    return out

def list_unassigned_registrations(session: Session) -> list[models.Registration]:
    q = (
        select(models.Registration)
        .outerjoin(models.RaceBib, models.RaceBib.registration_id == models.Registration.id)
        .where(models.RaceBib.id.is_(None))
        .order_by(models.Registration.created_at.asc())
    )
    if settings.KR_REQUIRE_PAID_FOR_BIB:
        q = q.where(models.Registration.payment_status == "completed")
    return session.execute(q).scalars().all()

def list_results(session: Session, category: Optional[str] = None, finished_only: bool = False) -> list[dict]:
    q = (
        select(models.RaceResult, models.Registration)
        .join(models.Registration, models.RaceResult.registration_id == models.Registration.id)
    )
    if finished_only:
        q = q.where(models.RaceResult.status == "finished")
    if category:
        q = q.where(models.Registration.jenis_tiket == category)
        pos = models.RaceResult.category_position
    else:
        pos = models.RaceResult.position
    q = q.order_by(pos.is_(None), pos.asc(), models.RaceResult.bib_number.asc())
    out = []
    for result, reg in session.execute(q).all():
        out.append({
            "bib_number": result.bib_number,
            "participant_name": reg.nama,
            "jenis_tiket": reg.jenis_tiket,
            "status": result.status,
            "start_time": result.start_time.isoformat() if result.start_time else None,
            "finish_time": result.finish_time.isoformat() if result.finish_time else None,
            "duration_seconds": result.duration_seconds,
            "duration": format_duration(result.duration_seconds),
            "position": result.position,
            "category_position": result.category_position,
        })
    return out
