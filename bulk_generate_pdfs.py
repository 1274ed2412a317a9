# bulk_generate_pdfs.py
import argparse
import logging
from pathlib import Path

from config import Config
from invoice_data import InvoiceDataError
from models import Base, make_engine, make_session_factory, User, list_invoice_records
from pdf_service import FontSource, RenderError, render_to_pdf, pdf_filename


def export_user_invoices(session, user_id: int, out_dir: Path, status: str | None = None,
                         overwrite: bool = False, timeout: float | None = None,
                         font_source: FontSource | None = None) -> dict:
    """Write one PDF per saved invoice into out_dir. Returns generated/skipped/failed counts."""
    out_dir.mkdir(parents=True, exist_ok=True)
    rows = list_invoice_records(session, user_id, status)

    counts = {"generated": 0, "skipped": 0, "failed": 0}
    total = len(rows)
    used_names = set()
    for i, inv in enumerate(rows, start=1):
        try:
            data = inv.invoice_data()
        except InvoiceDataError as e:
            counts["failed"] += 1
            print(f"[{i}/{total}] FAIL  {inv.id}  ({e})")
            continue

        # Same invoice number on several records: later ones get an id suffix
        name = pdf_filename(data.invoice_number)
        if name in used_names:
            name = f"{name[:-4]}-{inv.id[:8]}.pdf"
        used_names.add(name)

        path = out_dir / name
        if path.exists() and not overwrite:
            counts["skipped"] += 1
            print(f"[{i}/{total}] SKIP  {data.invoice_number} (already has PDF)")
            continue

        try:
            path.write_bytes(render_to_pdf(data, font_source=font_source, timeout=timeout))
        except RenderError as e:
            counts["failed"] += 1
            print(f"[{i}/{total}] FAIL  {data.invoice_number}  ({e})")
            continue

        counts["generated"] += 1
        print(f"[{i}/{total}] DONE  {data.invoice_number} -> {path}")

    return counts


def main():
    parser = argparse.ArgumentParser(description="Bulk generate invoice PDFs for one user.")
    parser.add_argument("--user", required=True, help="Username whose saved invoices are exported.")
    parser.add_argument("--status", choices=["draft", "final"], default=None, help="Only export this status.")
    parser.add_argument("--all", action="store_true", help="Regenerate PDFs even if the file already exists.")
    args = parser.parse_args()

    logging.basicConfig(level=Config.LOG_LEVEL)

    engine = make_engine(Config.SQLALCHEMY_DATABASE_URI, echo=Config.SQLALCHEMY_ECHO)
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)

    with SessionLocal() as s:
        user = s.query(User).filter(User.username == args.user.strip()).first()
        if not user:
            raise SystemExit(f"No such user: {args.user}")

        counts = export_user_invoices(
            s,
            user.id,
            Path(Config.EXPORTS_DIR),
            status=args.status,
            overwrite=args.all,
            timeout=Config.PDF_RENDER_TIMEOUT,
            font_source=FontSource.from_config(Config),
        )

    if not sum(counts.values()):
        print("No invoices found for the given filter.")
        return

    print("\n✅ Bulk PDF generation complete.")
    print(f"Generated: {counts['generated']}")
    print(f"Skipped:   {counts['skipped']}")
    print(f"Failed:    {counts['failed']}")
    print(f"Exports:   {Config.EXPORTS_DIR}")


if __name__ == "__main__":
    main()
