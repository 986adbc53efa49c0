from __future__ import annotations

import csv
from io import StringIO
from typing import Optional

from fastapi import APIRouter, Depends
from starlette.responses import Response
from sqlalchemy.orm import Session

from .db import get_session
from .auth import admin_required, staff_required
from . import services, race_ops

router = APIRouter()

def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@router.get("/registrations.csv", dependencies=[Depends(admin_required)])
def registrations_csv(
    search: str = "",
    status: Optional[str] = None,
    ticket: Optional[str] = None,
    session: Session = Depends(get_session),
):
    rows = services.list_registrations(session, search=search, status=status, ticket=ticket)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["id", "ticket_number", "nama", "nik", "nomer_hp", "kab_kota", "user_type",
                "jenis_tiket", "ticket_price", "payment_status", "created_at"])
    for r in rows:
        w.writerow([
            r.id, r.ticket_number, r.nama, r.nik, r.nomer_hp, r.kab_kota, r.user_type,
            r.jenis_tiket, r.ticket_price, r.payment_status,
            r.created_at.isoformat() if r.created_at else "",
        ])
    return _csv_response("registrations.csv", buf.getvalue())

@router.get("/bibs.csv", dependencies=[Depends(staff_required)])
def bibs_csv(session: Session = Depends(get_session)):
    rows = race_ops.list_bib_assignments(session)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["bib_number", "ticket_number", "participant_name", "jenis_tiket", "status", "assigned_at", "collected_at"])
    for b in rows:
        w.writerow([
            b["bib_number"], b["ticket_number"], b["participant_name"], b["jenis_tiket"],
            b["status"], b["assigned_at"] or "", b["collected_at"] or "",
        ])
    return _csv_response("bibs.csv", buf.getvalue())

@router.get("/results.csv", dependencies=[Depends(staff_required)])
def results_csv(category: Optional[str] = None, session: Session = Depends(get_session)):
    table = race_ops.list_results(session, category=category, finished_only=True)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["position", "category_position", "bib", "name", "category", "time", "start_time", "finish_time"])
    for r in table:
        w.writerow([
            r["position"], r["category_position"], r["bib_number"], r["participant_name"],
            r["jenis_tiket"], r["duration"], r["start_time"] or "", r["finish_time"] or "",
        ])
    suffix = f"_{category}" if category else ""
    return _csv_response(f"results{suffix}.csv", buf.getvalue())
