# layout.py
"""
Invoice page layout.

`layout_invoice()` turns one InvoiceData snapshot into pages of positioned
draw operations. It is a single top-to-bottom pass with a running Y cursor
(top-left origin, y grows downwards, units are PDF points on an A4 page).
Nothing here touches a canvas; pdf_service executes the operations.

Text is measured with reportlab's font metrics so the cursor can advance by
the height a wrapped block will really take. The operations themselves carry
the unwrapped text plus a max width; line breaking happens in the backend
with the same `wrap_paragraphs` helper.
"""
from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from typing import Optional

from reportlab.lib.pagesizes import A4
from reportlab.pdfbase.pdfmetrics import stringWidth

from finance import compute_totals, format_currency, format_long_date, format_number

# -----------------------------
# Page geometry
# -----------------------------
PAGE_W, PAGE_H = A4
M = 40.0
CONTENT_W = PAGE_W - 2 * M

HEADER_H = 56.0
LOGO_SIZE = 48.0
PARTIES_TOP = M + HEADER_H + 24
COLUMN_GAP = 24.0
DATES_MIN_TOP = 210.0
DATES_H = 44.0

ROW_H = 28.0
COMPACT_ROW_H = 22.0
COMPACT_AFTER = 24  # item count above which rows shrink
TABLE_HEADER_H = 24.0
SAFE_BOTTOM = 750.0
SUMMARY_BREAK_Y = 700.0
FOOTER_Y = PAGE_H - M

# Columns: description | qty | rate | amount
QTY_W = 60.0
RATE_W = 90.0
AMOUNT_W = 100.0
DESC_W = CONTENT_W - QTY_W - RATE_W - AMOUNT_W
CELL_PAD = 8.0

# -----------------------------
# Palette
# -----------------------------
INK = "#0f172a"
NAVY = "#1e3a8a"
BRASS = "#b08d57"
TEXT = "#111827"
MUTED = "#6b7280"
FAINT = "#9ca3af"
PANEL = "#f8fafc"
RULE = "#e5e7eb"
WHITE = "#ffffff"
NOTES_BG = "#fef3c7"
NOTES_BORDER = "#fde68a"
NOTES_LABEL = "#b45309"
NOTES_TEXT = "#374151"

BRAND_STOPS = ((0.0, INK), (1.0, NAVY))
TOTAL_STOPS = ((0.0, INK), (0.55, NAVY), (1.0, BRASS))


# -----------------------------
# Draw operations
# -----------------------------
@dataclass(frozen=True)
class FontSet:
    regular: str = "Helvetica"
    bold: str = "Helvetica-Bold"

    def face(self, bold: bool) -> str:
        return self.bold if bold else self.regular


@dataclass
class TextOp:
    x: float
    y: float  # baseline of the first line
    text: str
    size: float = 10
    bold: bool = False
    color: str = TEXT
    align: str = "left"  # left | right | center (x is the anchor)
    max_width: Optional[float] = None
    line_height: Optional[float] = None
    role: str = ""
    ref: Optional[str] = None


@dataclass
class RectOp:
    x: float
    y: float
    w: float
    h: float
    fill: Optional[str] = None
    stroke: Optional[str] = None
    radius: float = 0.0
    line_width: float = 1.0
    role: str = ""


@dataclass
class GradientRectOp:
    x: float
    y: float
    w: float
    h: float
    stops: tuple = BRAND_STOPS  # ((offset, color), ...) left to right
    radius: float = 0.0
    role: str = ""


@dataclass
class LineOp:
    x1: float
    y1: float
    x2: float
    y2: float
    color: str = RULE
    width: float = 1.0
    role: str = ""


@dataclass
class ImageOp:
    x: float
    y: float
    w: float
    h: float
    data: bytes = b""
    radius: float = 0.0
    role: str = ""


@dataclass
class Page:
    number: int
    ops: list = field(default_factory=list)


@dataclass
class DocumentLayout:
    pages: list[Page]
    title: str
    width: float = PAGE_W
    height: float = PAGE_H

    def ops(self, role: str | None = None) -> list:
        out = []
        for p in self.pages:
            out.extend(op for op in p.ops if role is None or op.role == role)
        return out


# -----------------------------
# Text measuring
# -----------------------------
def _split_long_token(token: str, font: str, size: float, max_width: float) -> list[str]:
    """Break a single long token (like an email) into width-safe chunks."""
    if stringWidth(token, font, size) <= max_width:
        return [token]
    chunks = []
    remaining = token
    while remaining:
        lo, hi = 1, len(remaining)
        fit = 1
        while lo <= hi:
            mid = (lo + hi) // 2
            if stringWidth(remaining[:mid], font, size) <= max_width:
                fit = mid
                lo = mid + 1
            else:
                hi = mid - 1
        chunks.append(remaining[:fit])
        remaining = remaining[fit:]
    return chunks


def wrap_text(text, font: str, size: float, max_width: float) -> list[str]:
    words = []
    for w in str(text or "").split():
        words.extend(_split_long_token(w, font, size, max_width))

    lines = []
    current = ""
    for w in words:
        test = current + (" " if current else "") + w
        if stringWidth(test, font, size) <= max_width:
            current = test
        else:
            if current:
                lines.append(current)
            current = w
    if current:
        lines.append(current)
    return lines or [""]


def wrap_paragraphs(text, font: str, size: float, max_width: float) -> list[str]:
    """wrap_text per source line, keeping the user's line breaks."""
    out = []
    for ln in str(text or "").splitlines() or [""]:
        if ln.strip():
            out.extend(wrap_text(ln, font, size, max_width))
        else:
            out.append("")
    return out


# -----------------------------
# Logo
# -----------------------------
_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?P<params>(;[^,;]*)*?);base64,(?P<data>.*)$", re.S)


def decode_logo(data_uri: str | None) -> bytes | None:
    """Raw image bytes of a base64 data URI, or None when absent or malformed."""
    if not data_uri:
        return None
    m = _DATA_URI_RE.match(data_uri.strip())
    if not m:
        return None
    try:
        raw = base64.b64decode(m.group("data"), validate=False)
    except (binascii.Error, ValueError):
        return None
    return raw or None


# -----------------------------
# Engine
# -----------------------------
class _Flow:
    """Running cursor plus the page list."""

    def __init__(self, fonts: FontSet):
        self.fonts = fonts
        self.pages = [Page(number=1)]
        self.y = M

    @property
    def ops(self) -> list:
        return self.pages[-1].ops

    def add(self, op):
        self.ops.append(op)
        return op

    def new_page(self):
        self.pages.append(Page(number=len(self.pages) + 1))
        self.y = M

    def text_height(self, text: str, size: float, bold: bool, max_width: float, line_height: float) -> float:
        return len(wrap_paragraphs(text, self.fonts.face(bold), size, max_width)) * line_height

    def block(self, x, text, size, *, bold=False, color=TEXT, max_width, line_height, role="", ref=None) -> float:
        """Emit a wrapped text block at the cursor; return its height."""
        self.add(TextOp(
            x=x, y=self.y + size, text=text, size=size, bold=bold, color=color,
            max_width=max_width, line_height=line_height, role=role, ref=ref,
        ))
        return self.text_height(text, size, bold, max_width, line_height)


def _draw_header(flow: _Flow, data) -> None:
    logo = decode_logo(data.logo)
    if logo:
        flow.add(ImageOp(M, M, LOGO_SIZE, LOGO_SIZE, data=logo, radius=10, role="logo"))
    else:
        flow.add(GradientRectOp(M, M, LOGO_SIZE, LOGO_SIZE, stops=BRAND_STOPS, radius=10, role="logo"))
        flow.add(TextOp(M + LOGO_SIZE / 2, M + LOGO_SIZE / 2 + 7, "INV", size=14, bold=True,
                        color=WHITE, align="center", role="logo"))

    title_x = M + LOGO_SIZE + 14
    flow.add(TextOp(title_x, M + 22, "INVOICE", size=20, bold=True, color=TEXT, role="title"))
    flow.add(TextOp(title_x, M + 40, data.invoice_number or "", size=10, color=MUTED, role="invoice-number"))
    flow.y = M + HEADER_H


def _draw_party(flow: _Flow, x: float, top: float, label: str, party, placeholder: str) -> float:
    col_w = CONTENT_W / 2 - COLUMN_GAP / 2
    flow.y = top
    flow.add(TextOp(x, flow.y + 8, label.upper(), size=8, bold=True, color=FAINT, role="party-label"))
    flow.y += 14
    flow.y += flow.block(x, (party.name or "").strip() or placeholder, 12, bold=True, max_width=col_w,
                         line_height=15, role="party-name") + 2

    for key in ("email", "address", "phone"):
        value = (getattr(party, key, None) or "").strip()
        if not value:
            continue
        flow.y += flow.block(x, value, 9, color=MUTED, max_width=col_w, line_height=12, role=f"party-{key}")
        flow.y += 1
    return flow.y


def _draw_parties(flow: _Flow, data) -> None:
    left_end = _draw_party(flow, M, PARTIES_TOP, "From", data.sender, "Your Business")
    right_end = _draw_party(flow, M + CONTENT_W / 2, PARTIES_TOP, "Bill To", data.recipient, "Client Name")
    flow.y = max(left_end, right_end)


def _draw_dates(flow: _Flow, data) -> None:
    top = max(flow.y + 16, DATES_MIN_TOP)
    flow.add(RectOp(M, top, CONTENT_W, DATES_H, fill=PANEL, radius=8, role="dates-panel"))
    for i, (label, value) in enumerate((("Issue Date", data.issue_date), ("Due Date", data.due_date))):
        x = M + 16 + i * 160
        flow.add(TextOp(x, top + 16, label.upper(), size=8, bold=True, color=FAINT, role="date-label"))
        flow.add(TextOp(x, top + 32, format_long_date(value), size=11, bold=True, color=TEXT, role="date-value"))
    flow.y = top + DATES_H + 20


def _draw_table_header(flow: _Flow) -> None:
    top = flow.y
    base = top + 15
    right = M + CONTENT_W
    flow.add(TextOp(M + CELL_PAD, base, "DESCRIPTION", size=8, bold=True, color=MUTED, role="table-header"))
    flow.add(TextOp(M + DESC_W + QTY_W / 2, base, "QTY", size=8, bold=True, color=MUTED, align="center", role="table-header"))
    flow.add(TextOp(right - AMOUNT_W - CELL_PAD, base, "RATE", size=8, bold=True, color=MUTED, align="right", role="table-header"))
    flow.add(TextOp(right - CELL_PAD, base, "AMOUNT", size=8, bold=True, color=MUTED, align="right", role="table-header"))
    flow.add(LineOp(M, top + TABLE_HEADER_H, right, top + TABLE_HEADER_H, color=RULE, width=1.5, role="table-rule"))
    flow.y = top + TABLE_HEADER_H


def _continue_table(flow: _Flow) -> None:
    flow.new_page()
    flow.add(LineOp(M, flow.y, M + CONTENT_W, flow.y, color=RULE, width=0.75, role="continuation-rule"))
    flow.y += 6


def _draw_items(flow: _Flow, items) -> None:
    base_h = COMPACT_ROW_H if len(items) > COMPACT_AFTER else ROW_H
    size = 10
    line_h = 12
    desc_max = DESC_W - 2 * CELL_PAD
    right = M + CONTENT_W
    # description lines that fit in one row on a fresh continuation page
    max_lines = int((SAFE_BOTTOM - M - 6 - 10) // line_h)

    for index, item in enumerate(items):
        desc = (item.description or "").strip() or "-"
        lines = wrap_paragraphs(desc, flow.fonts.regular, size, desc_max)
        # A description taller than a page continues as extra row segments on the next pages
        chunks = [lines[i:i + max_lines] for i in range(0, len(lines), max_lines)]

        for part, chunk in enumerate(chunks):
            row_h = max(base_h, len(chunk) * line_h + 10)
            if flow.y + row_h > SAFE_BOTTOM:
                _continue_table(flow)

            top = flow.y
            if index % 2 == 0:
                flow.add(RectOp(M, top, CONTENT_W, row_h, fill=PANEL, role="row-stripe"))

            text = desc if len(chunks) == 1 else "\n".join(chunk)
            first_base = top + (row_h - len(chunk) * line_h) / 2 + size * 0.85
            flow.add(TextOp(M + CELL_PAD, first_base, text, size=size, color=TEXT, max_width=desc_max,
                            line_height=line_h, role="item-description", ref=item.id))
            if part == 0:
                mid_base = top + row_h / 2 + size * 0.35
                flow.add(TextOp(M + DESC_W + QTY_W / 2, mid_base, format_number(item.quantity), size=size,
                                color=MUTED, align="center", role="item-quantity", ref=item.id))
                flow.add(TextOp(right - AMOUNT_W - CELL_PAD, mid_base, format_currency(item.rate), size=size,
                                color=MUTED, align="right", role="item-rate", ref=item.id))
                flow.add(TextOp(right - CELL_PAD, mid_base, format_currency(item.amount), size=size, bold=True,
                                color=TEXT, align="right", role="item-amount", ref=item.id))
            flow.y = top + row_h

    flow.y += 16


def _draw_summary(flow: _Flow, data) -> None:
    if flow.y > SUMMARY_BREAK_Y:
        flow.new_page()

    totals = compute_totals(data)
    right = M + CONTENT_W
    label_x = right - 220

    def summary_line(label, value, role):
        top = flow.y
        flow.add(TextOp(label_x, top + 14, label, size=10, color=MUTED, role=role))
        flow.add(TextOp(right - 14, top + 14, value, size=10, bold=True, color=TEXT, align="right", role=role))
        flow.add(LineOp(label_x, top + 20, right, top + 20, color="#f3f4f6", role=role))
        flow.y = top + 20

    summary_line("Subtotal", format_currency(totals.subtotal), "subtotal")
    if (data.tax or 0) > 0:
        summary_line(f"Tax ({format_number(data.tax)}%)", format_currency(totals.tax_amount), "tax")

    flow.y += 8
    pill_h = 36
    top = flow.y
    flow.add(GradientRectOp(M, top, CONTENT_W, pill_h, stops=TOTAL_STOPS, radius=8, role="total-pill"))
    flow.add(TextOp(M + 16, top + 23, "Total", size=12, bold=True, color=WHITE, role="total-label"))
    flow.add(TextOp(right - 16, top + 23, format_currency(totals.total), size=14, bold=True, color=WHITE,
                    align="right", role="total-amount"))
    flow.y = top + pill_h + 20


def _draw_notes(flow: _Flow, notes: str) -> None:
    inner_w = CONTENT_W - 32
    line_h = 13
    bottom = PAGE_H - M
    lines = wrap_paragraphs(notes, flow.fonts.regular, 10, inner_w)

    if flow.y + 26 + len(lines) * line_h + 10 > bottom:
        flow.new_page()

    first = True
    while lines:
        head_h = 26 if first else 12
        fit = max(1, int((bottom - flow.y - head_h - 10) // line_h))
        chunk, lines = lines[:fit], lines[fit:]
        panel_h = head_h + len(chunk) * line_h + 10

        top = flow.y
        flow.add(RectOp(M, top, CONTENT_W, panel_h, fill=NOTES_BG, stroke=NOTES_BORDER, radius=8, role="notes-panel"))
        if first:
            flow.add(TextOp(M + 16, top + 20, "NOTES", size=8, bold=True, color=NOTES_LABEL, role="notes-label"))
        flow.y = top + head_h
        text = notes if first and not lines else "\n".join(chunk)
        flow.block(M + 16, text, 10, color=NOTES_TEXT, max_width=inner_w, line_height=line_h, role="notes")
        flow.y = top + panel_h + 16

        if lines:
            flow.new_page()
        first = False


def _draw_footer(flow: _Flow) -> None:
    # Single-page documents only, and only when nothing runs into it.
    if len(flow.pages) != 1 or flow.y > FOOTER_Y - 20:
        return
    flow.add(LineOp(M, FOOTER_Y - 14, M + CONTENT_W, FOOTER_Y - 14, color="#f3f4f6", role="footer"))
    flow.add(TextOp(PAGE_W / 2, FOOTER_Y, "Thank you for your business!", size=10, color=FAINT,
                    align="center", role="footer"))


def layout_invoice(data, fonts: FontSet | None = None) -> DocumentLayout:
    """
    Lay out an invoice as pages of draw operations.

    Bands, top to bottom: header, parties, dates, line items (paginated per
    row), summary, notes (when present), footer (single-page documents).
    """
    flow = _Flow(fonts or FontSet())

    _draw_header(flow, data)
    _draw_parties(flow, data)
    _draw_dates(flow, data)
    _draw_table_header(flow)
    _draw_items(flow, data.items)
    _draw_summary(flow, data)

    notes = (data.notes or "").strip()
    if notes:
        _draw_notes(flow, notes)

    _draw_footer(flow)

    return DocumentLayout(pages=flow.pages, title=f"Invoice - {data.invoice_number or 'draft'}")
