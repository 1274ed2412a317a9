import base64
import io
import re
import time
from pathlib import Path

import pytest
import reportlab
import requests

import pdf_service
from layout import FontSet
from pdf_service import (
    FontSource, FontLoadError, RenderError, RenderTimeoutError,
    load_fonts, pdf_filename, render_to_pdf, submit_render,
)


def _page_count(pdf_bytes: bytes) -> int:
    return len(re.findall(rb"/Type /Page(?!s)", pdf_bytes))


def _png_data_uri(size=(64, 32), color=(200, 30, 30)) -> str:
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode()


def test_renders_single_page_pdf(make_invoice):
    pdf = render_to_pdf(make_invoice(tax=10, notes="Thanks!"))
    assert pdf.startswith(b"%PDF")
    assert _page_count(pdf) == 1


def test_renders_multiple_pages_for_long_invoices(make_invoice):
    pdf = render_to_pdf(make_invoice(n_items=60))
    assert _page_count(pdf) >= 2


def test_renders_embedded_logo(make_invoice):
    pdf = render_to_pdf(make_invoice(logo=_png_data_uri()))
    assert pdf.startswith(b"%PDF")
    assert b"/Subtype /Image" in pdf


def test_unreadable_logo_falls_back_to_placeholder(make_invoice):
    bogus = "data:image/png;base64," + base64.b64encode(b"not really a png").decode()
    pdf = render_to_pdf(make_invoice(logo=bogus))
    assert pdf.startswith(b"%PDF")
    assert b"/Subtype /Image" not in pdf


def test_pdf_filename():
    assert pdf_filename("INV-2501-0042") == "invoice-INV-2501-0042.pdf"
    assert pdf_filename("") == "invoice-draft.pdf"
    assert pdf_filename(None) == "invoice-draft.pdf"
    assert pdf_filename('a/b:"c"') == "invoice-abc.pdf"


def test_builtin_fonts_when_no_font_configured():
    fonts = load_fonts(FontSource(name=""))
    assert (fonts.regular, fonts.bold) == ("Helvetica", "Helvetica-Bold")


def test_font_fetch_failure_is_a_render_error(make_invoice, tmp_path, monkeypatch):
    def boom(url, timeout):
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(pdf_service.requests, "get", boom)
    source = FontSource(
        name="BrokenSans",
        regular_path=str(tmp_path / "missing-regular.ttf"),
        bold_path=str(tmp_path / "missing-bold.ttf"),
        regular_url="https://fonts.example.test/regular.ttf",
        bold_url="https://fonts.example.test/bold.ttf",
    )
    with pytest.raises(FontLoadError) as exc_info:
        render_to_pdf(make_invoice(), font_source=source)
    assert isinstance(exc_info.value, RenderError)
    assert str(exc_info.value) == pdf_service.USER_MESSAGE


def test_font_without_any_source_fails(tmp_path):
    source = FontSource(name="NoWhere", regular_path=str(tmp_path / "nope.ttf"), bold_path=str(tmp_path / "nope-b.ttf"))
    with pytest.raises(FontLoadError):
        load_fonts(source)


def test_garbage_font_program_fails(tmp_path):
    reg = tmp_path / "reg.ttf"
    bold = tmp_path / "bold.ttf"
    reg.write_bytes(b"not a font")
    bold.write_bytes(b"not a font either")
    with pytest.raises(FontLoadError):
        load_fonts(FontSource(name="Garbage", regular_path=str(reg), bold_path=str(bold)))


def test_internal_failures_surface_as_one_render_error(make_invoice, monkeypatch):
    def broken_layout(data, fonts=None):
        raise ZeroDivisionError("layout bug")

    monkeypatch.setattr(pdf_service, "layout_invoice", broken_layout)
    with pytest.raises(RenderError) as exc_info:
        render_to_pdf(make_invoice())
    assert str(exc_info.value) == pdf_service.USER_MESSAGE
    assert isinstance(exc_info.value.__cause__, ZeroDivisionError)


def test_render_times_out_instead_of_hanging(make_invoice, monkeypatch):
    def slow(data, font_source=None):
        time.sleep(0.5)
        return b"%PDF-late"

    monkeypatch.setattr(pdf_service, "_render_bytes", slow)
    with pytest.raises(RenderTimeoutError):
        render_to_pdf(make_invoice(), timeout=0.05)


def test_submit_render_resolves_to_pdf(make_invoice):
    future = submit_render(make_invoice())
    assert future.result(timeout=30).startswith(b"%PDF")
    assert render_to_pdf(make_invoice(), timeout=30).startswith(b"%PDF")


def _vera_source(name):
    fonts_dir = Path(reportlab.__file__).parent / "fonts"
    return FontSource(
        name=name,
        regular_path=str(fonts_dir / "Vera.ttf"),
        bold_path=str(fonts_dir / "VeraBd.ttf"),
    )


def test_embedded_font_pair_is_registered_cached_and_used(make_invoice, monkeypatch):
    source = _vera_source("InvoiceVera")
    fetched = []
    real_fetch = pdf_service._fetch_font_bytes

    def recording_fetch(path, url, timeout):
        fetched.append(Path(path).name)
        return real_fetch(path, url, timeout)

    monkeypatch.setattr(pdf_service, "_fetch_font_bytes", recording_fetch)
    fonts = load_fonts(source)
    assert fonts == FontSet(regular="InvoiceVera", bold="InvoiceVera-Bold")
    assert sorted(fetched) == ["Vera.ttf", "VeraBd.ttf"]

    # second call is served from the cache
    assert load_fonts(source) is fonts
    assert len(fetched) == 2

    pdf = render_to_pdf(make_invoice(tax=10), font_source=source)
    assert len(fetched) == 2
    assert pdf.startswith(b"%PDF")
    assert b"/FontFile2" in pdf
    assert b"BitstreamVeraSans" in pdf


def test_embedded_font_falls_back_to_url_when_file_missing(tmp_path, monkeypatch):
    vera = _vera_source("unused")
    payloads = {
        "https://fonts.example.test/r.ttf": Path(vera.regular_path).read_bytes(),
        "https://fonts.example.test/b.ttf": Path(vera.bold_path).read_bytes(),
    }

    class FakeResponse:
        def __init__(self, content):
            self.content = content

        def raise_for_status(self):
            pass

    monkeypatch.setattr(pdf_service.requests, "get", lambda url, timeout: FakeResponse(payloads[url]))
    source = FontSource(
        name="RemoteVera",
        regular_path=str(tmp_path / "missing.ttf"),
        bold_path=str(tmp_path / "missing-bold.ttf"),
        regular_url="https://fonts.example.test/r.ttf",
        bold_url="https://fonts.example.test/b.ttf",
    )
    assert load_fonts(source) == FontSet(regular="RemoteVera", bold="RemoteVera-Bold")
