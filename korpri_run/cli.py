"""korpri-run command line.

Usage examples:
  korpri-run migrate
  korpri-run create-staff --email gate1@example.com --password secret --name "Gate 1"
  korpri-run bib-labels --out bibs.pdf --cols 4 --rows 6
"""

from __future__ import annotations

import argparse
import logging

from .settings import settings, configure_logging
from .db import init_db, create_schema, new_session
from . import services, race_ops
from .bib_labels import BibLabel, LabelLayout, build_bib_labels_pdf
from .pricing import ticket_type_name

logger = logging.getLogger(__name__)


def cmd_migrate(args) -> None:
    create_schema()
    s = new_session()
    try:
        services.ensure_admin_user(s)
    finally:
        s.close()
    logger.info("Schema ready; admin %s ensured", settings.KR_ADMIN_EMAIL)


def cmd_create_staff(args) -> None:
    s = new_session()
    try:
        a = services.create_staff_user(s, args.email, args.password, args.name, args.role)
        print(f"Created {a.role} {a.email}")
    finally:
        s.close()


def cmd_bib_labels(args) -> None:
    layout = LabelLayout(cols=args.cols, rows=args.rows, size_mm=args.size_mm, qr_mm=args.qr_mm)
    s = new_session()
    try:
        labels = [
            BibLabel(bib_number=b["bib_number"], name=b["participant_name"], category=ticket_type_name(b["jenis_tiket"]))
            for b in race_ops.list_bib_assignments(s)
        ]
    finally:
        s.close()
    try:
        build_bib_labels_pdf(labels, args.out, layout=layout, title=f"{settings.KR_EVENT_NAME} bibs")
    except ValueError as e:
        raise SystemExit(str(e))
    print(f"Saved {len(labels)} labels to {args.out}")


def main(argv: list[str] | None = None) -> None:
    ap = argparse.ArgumentParser(prog="korpri-run")
    ap.add_argument("--db-url", type=str, default=None, help="Override KR_DB_URL")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("migrate", help="Create tables and the bootstrap admin")
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser("create-staff", help="Add an admin or staff account")
    p.add_argument("--email", required=True)
    p.add_argument("--password", required=True)
    p.add_argument("--name", default="")
    p.add_argument("--role", default="staff", choices=["staff", "admin"])
    p.set_defaults(func=cmd_create_staff)

    p = sub.add_parser("bib-labels", help="Print labels for all assigned bibs")
    p.add_argument("--out", type=str, default="bib_labels.pdf", help="Output PDF filename")
    p.add_argument("--cols", type=int, default=4, help="Number of columns")
    p.add_argument("--rows", type=int, default=6, help="Number of rows")
    p.add_argument("--size-mm", type=float, default=42.0, help="Label square size in mm")
    p.add_argument("--qr-mm", type=float, default=30.0, help="QR size in mm inside label")
    p.set_defaults(func=cmd_bib_labels)

    args = ap.parse_args(argv)
    configure_logging()
    init_db(args.db_url)
    args.func(args)


if __name__ == "__main__":
    main()
