import pytest

import bulk_generate_pdfs
from bulk_generate_pdfs import export_user_invoices
from models import Base, User, Invoice, make_engine, make_session_factory, create_invoice_record
from pdf_service import RenderError


@pytest.fixture
def session():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(engine)
    with make_session_factory(engine)() as s:
        s.add(User(username="alice", password_hash="x"))
        s.commit()
        yield s


def test_exports_one_pdf_per_invoice(session, make_invoice, tmp_path, capsys):
    uid = session.query(User).one().id
    create_invoice_record(session, uid, make_invoice(invoice_number="INV-1"))
    create_invoice_record(session, uid, make_invoice(invoice_number="INV-2"), "final")

    counts = export_user_invoices(session, uid, tmp_path / "out")
    assert counts == {"generated": 2, "skipped": 0, "failed": 0}
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["invoice-INV-1.pdf", "invoice-INV-2.pdf"]
    assert (tmp_path / "out" / "invoice-INV-1.pdf").read_bytes().startswith(b"%PDF")
    assert "DONE" in capsys.readouterr().out

    # existing files are kept unless overwrite is asked for
    assert export_user_invoices(session, uid, tmp_path / "out")["skipped"] == 2
    assert export_user_invoices(session, uid, tmp_path / "out", overwrite=True)["generated"] == 2
    assert export_user_invoices(session, uid, tmp_path / "final", status="final")["generated"] == 1


def test_failures_are_counted_and_skipped(session, make_invoice, tmp_path, monkeypatch):
    uid = session.query(User).one().id
    create_invoice_record(session, uid, make_invoice(invoice_number="INV-OK"))
    create_invoice_record(session, uid, make_invoice(invoice_number="INV-BAD"))
    broken = Invoice(id="broken-row", user_id=uid, status="draft", data={"items": []})
    session.add(broken)
    session.commit()

    real_render = bulk_generate_pdfs.render_to_pdf

    def flaky_render(data, **kwargs):
        if data.invoice_number == "INV-BAD":
            raise RenderError()
        return real_render(data, **kwargs)

    monkeypatch.setattr(bulk_generate_pdfs, "render_to_pdf", flaky_render)
    counts = export_user_invoices(session, uid, tmp_path)
    assert counts == {"generated": 1, "skipped": 0, "failed": 2}
    assert [p.name for p in tmp_path.iterdir()] == ["invoice-INV-OK.pdf"]


def test_records_sharing_a_number_each_get_a_file(session, make_invoice, tmp_path):
    uid = session.query(User).one().id
    first = create_invoice_record(session, uid, make_invoice(invoice_number="INV-1", notes="first"))
    second = create_invoice_record(session, uid, make_invoice(invoice_number="INV-1", notes="second"))

    counts = export_user_invoices(session, uid, tmp_path)
    assert counts == {"generated": 2, "skipped": 0, "failed": 0}
    names = sorted(p.name for p in tmp_path.iterdir())
    assert len(names) == 2
    assert "invoice-INV-1.pdf" in names
    assert any(n in names for n in (f"invoice-INV-1-{first.id[:8]}.pdf", f"invoice-INV-1-{second.id[:8]}.pdf"))

    # a rerun finds both files and skips them
    assert export_user_invoices(session, uid, tmp_path) == {"generated": 0, "skipped": 2, "failed": 0}
    assert export_user_invoices(session, uid, tmp_path, overwrite=True)["generated"] == 2
    assert len(list(tmp_path.iterdir())) == 2
