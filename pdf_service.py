# pdf_service.py
import io
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from pathlib import Path

import requests
from reportlab.pdfgen import canvas
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont, TTFError

from config import Config
from layout import (
    FontSet, DocumentLayout, TextOp, RectOp, GradientRectOp, LineOp, ImageOp,
    PAGE_W, PAGE_H, BRAND_STOPS, layout_invoice, wrap_paragraphs,
)

logger = logging.getLogger(__name__)

USER_MESSAGE = "Could not generate the PDF. Please try again."


class RenderError(Exception):
    """Any failure inside the render pipeline. str() is safe to show to the user."""

    def __init__(self, message: str = USER_MESSAGE):
        super().__init__(message)


class FontLoadError(RenderError):
    pass


class RenderTimeoutError(RenderError):
    pass


def _safe_filename(name: str) -> str:
    # strip characters not allowed on Windows/mac paths
    return re.sub(r'[\\/*?:"<>|]', "", (name or "")).strip()


def pdf_filename(invoice_number: str | None) -> str:
    return f"invoice-{_safe_filename(invoice_number) or 'draft'}.pdf"


# -----------------------------
# Fonts
# -----------------------------
@dataclass(frozen=True)
class FontSource:
    """Where the two weights of the display typeface come from. Empty name = built-in Helvetica."""
    name: str = ""
    regular_path: str = ""
    bold_path: str = ""
    regular_url: str = ""
    bold_url: str = ""
    timeout: float = 10.0

    @classmethod
    def from_config(cls, cfg=None) -> "FontSource":
        get = cfg.get if isinstance(cfg, dict) else (lambda k, d=None: getattr(cfg or Config, k, d))
        return cls(
            name=get("PDF_FONT_NAME", "") or "",
            regular_path=get("PDF_FONT_REGULAR_PATH", "") or "",
            bold_path=get("PDF_FONT_BOLD_PATH", "") or "",
            regular_url=get("PDF_FONT_REGULAR_URL", "") or "",
            bold_url=get("PDF_FONT_BOLD_URL", "") or "",
            timeout=float(get("PDF_FONT_FETCH_TIMEOUT", 10.0) or 10.0),
        )


_font_lock = threading.Lock()
_font_cache: dict[FontSource, FontSet] = {}


def _fetch_font_bytes(path: str, url: str, timeout: float) -> bytes:
    """Local font program first, remote URL as fallback."""
    if path and Path(path).is_file():
        return Path(path).read_bytes()
    if not url:
        raise FontLoadError()
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    return resp.content


def load_fonts(source: FontSource | None = None) -> FontSet:
    """
    Register the regular + bold font programs with reportlab (once per source).
    Both weights are fetched in parallel and both must arrive before drawing.
    """
    source = source or FontSource.from_config()
    if not source.name:
        return FontSet()

    with _font_lock:
        cached = _font_cache.get(source)
        if cached:
            return cached

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="font-fetch") as pool:
            regular_f = pool.submit(_fetch_font_bytes, source.regular_path, source.regular_url, source.timeout)
            bold_f = pool.submit(_fetch_font_bytes, source.bold_path, source.bold_url, source.timeout)
            try:
                regular_bytes = regular_f.result()
                bold_bytes = bold_f.result()
            except (OSError, requests.RequestException) as exc:
                logger.warning("Font fetch failed for %s: %r", source.name, exc)
                raise FontLoadError() from exc

        fonts = FontSet(regular=source.name, bold=f"{source.name}-Bold")
        try:
            pdfmetrics.registerFont(TTFont(fonts.regular, io.BytesIO(regular_bytes)))
            pdfmetrics.registerFont(TTFont(fonts.bold, io.BytesIO(bold_bytes)))
        except TTFError as exc:
            logger.warning("Font program for %s is not a usable TrueType font: %r", source.name, exc)
            raise FontLoadError() from exc

        _font_cache[source] = fonts
        return fonts


# -----------------------------
# Drawing
# -----------------------------
def _color(hex_value):
    return colors.HexColor(hex_value) if hex_value else None


def _clip_round_rect(pdf, x, y, w, h, radius):
    p = pdf.beginPath()
    if radius:
        p.roundRect(x, y, w, h, radius)
    else:
        p.rect(x, y, w, h)
    pdf.clipPath(p, stroke=0, fill=0)


def _draw_gradient(pdf, x, y, w, h, stops, radius):
    pdf.saveState()
    _clip_round_rect(pdf, x, y, w, h, radius)
    pdf.linearGradient(
        x, y, x + w, y,
        [colors.HexColor(c) for _, c in stops],
        [float(offset) for offset, _ in stops],
        extend=False,
    )
    pdf.restoreState()


def _draw_text(pdf, op: TextOp, fonts: FontSet):
    font = fonts.face(op.bold)
    pdf.setFont(font, op.size)
    pdf.setFillColor(_color(op.color))

    if op.max_width:
        lines = wrap_paragraphs(op.text, font, op.size, op.max_width)
    else:
        lines = [str(op.text)]
    step = op.line_height or op.size * 1.2

    y = op.y
    for line in lines:
        baseline = PAGE_H - y
        if op.align == "right":
            pdf.drawRightString(op.x, baseline, line)
        elif op.align == "center":
            pdf.drawCentredString(op.x, baseline, line)
        else:
            pdf.drawString(op.x, baseline, line)
        y += step


def _draw_image(pdf, op: ImageOp):
    x, y = op.x, PAGE_H - op.y - op.h
    try:
        img = ImageReader(io.BytesIO(op.data))
        iw, ih = img.getSize()
    except Exception:
        # unreadable logo falls back to the brand placeholder
        logger.warning("Logo image could not be decoded; drawing placeholder")
        _draw_gradient(pdf, x, y, op.w, op.h, BRAND_STOPS, op.radius)
        return

    # cover-fit, centred, clipped to the rounded box
    scale = max(op.w / float(iw), op.h / float(ih))
    dw, dh = iw * scale, ih * scale
    pdf.saveState()
    _clip_round_rect(pdf, x, y, op.w, op.h, op.radius)
    pdf.drawImage(img, x + (op.w - dw) / 2, y + (op.h - dh) / 2, width=dw, height=dh, mask="auto")
    pdf.restoreState()


def draw_layout(pdf, doc: DocumentLayout, fonts: FontSet) -> None:
    """Execute every page's operations on a reportlab canvas (one showPage per page)."""
    for page in doc.pages:
        for op in page.ops:
            if isinstance(op, TextOp):
                _draw_text(pdf, op, fonts)
            elif isinstance(op, RectOp):
                pdf.setLineWidth(op.line_width)
                if op.fill:
                    pdf.setFillColor(_color(op.fill))
                if op.stroke:
                    pdf.setStrokeColor(_color(op.stroke))
                args = (op.x, PAGE_H - op.y - op.h, op.w, op.h)
                if op.radius:
                    pdf.roundRect(*args, op.radius, stroke=1 if op.stroke else 0, fill=1 if op.fill else 0)
                else:
                    pdf.rect(*args, stroke=1 if op.stroke else 0, fill=1 if op.fill else 0)
            elif isinstance(op, GradientRectOp):
                _draw_gradient(pdf, op.x, PAGE_H - op.y - op.h, op.w, op.h, op.stops, op.radius)
            elif isinstance(op, LineOp):
                pdf.setStrokeColor(_color(op.color))
                pdf.setLineWidth(op.width)
                pdf.line(op.x1, PAGE_H - op.y1, op.x2, PAGE_H - op.y2)
            elif isinstance(op, ImageOp):
                _draw_image(pdf, op)
            else:
                raise TypeError(f"Unknown draw operation: {type(op).__name__}")
        pdf.showPage()


def _render_bytes(data, font_source: FontSource | None = None) -> bytes:
    fonts = load_fonts(font_source)
    doc = layout_invoice(data, fonts)

    buf = io.BytesIO()
    pdf = canvas.Canvas(buf, pagesize=(PAGE_W, PAGE_H))
    pdf.setTitle(doc.title)
    pdf.setAuthor((data.sender.name or "").strip())
    draw_layout(pdf, doc, fonts)
    pdf.save()
    return buf.getvalue()


# -----------------------------
# Public entry points
# -----------------------------
_render_pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="pdf-render")


def submit_render(data, font_source: FontSource | None = None):
    """Start a render in the background. The returned Future resolves to PDF bytes."""
    return _render_pool.submit(_render_bytes, data, font_source)


def render_to_pdf(data, *, font_source: FontSource | None = None, timeout: float | None = None) -> bytes:
    """
    Render an InvoiceData to PDF bytes.

    Always returns bytes or raises RenderError (FontLoadError / RenderTimeoutError
    for those two cases). With a timeout the render runs on the render pool and
    is abandoned once the timeout passes; it is not cancelled mid-draw.
    """
    number = getattr(data, "invoice_number", "") or "draft"
    try:
        if timeout is None:
            return _render_bytes(data, font_source)
        return submit_render(data, font_source).result(timeout=timeout)
    except RenderError:
        logger.exception("PDF render failed for %s", number)
        raise
    except FutureTimeout as exc:
        logger.error("PDF render for %s did not finish within %.1fs", number, timeout)
        raise RenderTimeoutError() from exc
    except Exception as exc:
        logger.exception("PDF render failed for %s", number)
        raise RenderError() from exc
