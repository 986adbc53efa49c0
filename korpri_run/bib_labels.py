"""Printable A4 sheets of bib labels: big bib number, runner name and a QR.

The QR encodes just the bib number (e.g. "37") so timing stations can scan
it straight into record-start / record-finish.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import BinaryIO

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.lib.utils import ImageReader

from .qr import make_qr_png_bytes


@dataclass
class BibLabel:
    bib_number: int
    name: str = ""
    category: str = ""


@dataclass
class LabelLayout:
    cols: int = 4
    rows: int = 6
    margin_mm: float = 10.0
    gap_mm: float = 4.0
    size_mm: float = 42.0
    qr_mm: float = 30.0
    font: str = "Helvetica-Bold"
    font_size: float = 12.0
    small_font_size: float = 7.0

    def check(self) -> None:
        if self.qr_mm > self.size_mm:
            raise ValueError("qr_mm must be <= size_mm")
        page_w, page_h = A4
        usable_w = page_w - 2 * self.margin_mm * mm
        usable_h = page_h - 2 * self.margin_mm * mm
        needed_w = self.cols * self.size_mm * mm + (self.cols - 1) * self.gap_mm * mm
        needed_h = self.rows * self.size_mm * mm + (self.rows - 1) * self.gap_mm * mm
        if needed_w > usable_w + 1e-6 or needed_h > usable_h + 1e-6:
            raise ValueError(
                f"Grid does not fit on A4. "
                f"Needed: {needed_w/mm:.1f}x{needed_h/mm:.1f}mm, "
                f"Usable: {usable_w/mm:.1f}x{usable_h/mm:.1f}mm."
            )


def build_bib_labels_pdf(labels: list[BibLabel], out: str | BinaryIO, layout: LabelLayout | None = None,
                         title: str = "Bib labels") -> None:
    layout = layout or LabelLayout()
    layout.check()

    page_w, page_h = A4
    margin = layout.margin_mm * mm
    gap = layout.gap_mm * mm
    label = layout.size_mm * mm
    qr_size = layout.qr_mm * mm

    c = canvas.Canvas(out, pagesize=A4)
    c.setTitle(title)

    def draw_label(x: float, y: float, item: BibLabel):
        # (x, y) is the bottom-left corner of the label
        pad = 2 * mm
        qr_x = x + (label - qr_size) / 2
        qr_y = y + (label - qr_size) - pad

        img = ImageReader(BytesIO(make_qr_png_bytes(str(item.bib_number))))
        c.drawImage(img, qr_x, qr_y, width=qr_size, height=qr_size, preserveAspectRatio=True, mask="auto")

        c.setFont(layout.font, layout.font_size)
        c.drawCentredString(x + label / 2, y + pad + layout.small_font_size + 1, str(item.bib_number))
        if item.name or item.category:
            c.setFont("Helvetica", layout.small_font_size)
            caption = " / ".join(p for p in (item.name[:28], item.category) if p)
            c.drawCentredString(x + label / 2, y + pad, caption)

    per_page = layout.cols * layout.rows
    for idx, item in enumerate(labels):
        slot = idx % per_page
        if idx and slot == 0:
            c.showPage()
        r, col = divmod(slot, layout.cols)
        x = margin + col * (label + gap)
        # first row sits at the top of the usable area
        y = (page_h - margin - label) - r * (label + gap)
        draw_label(x, y, item)

    c.save()


def bib_labels_pdf_bytes(labels: list[BibLabel], layout: LabelLayout | None = None, title: str = "Bib labels") -> bytes:
    buf = BytesIO()
    build_bib_labels_pdf(labels, buf, layout=layout, title=title)
    return buf.getvalue()
