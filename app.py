# app.py
import io
import logging
import zipfile

from flask import Flask, request, jsonify, send_file
from flask_login import (
    LoginManager, UserMixin, login_user, logout_user,
    login_required, current_user
)
from werkzeug.security import generate_password_hash, check_password_hash

from config import Config
from finance import compute_totals
from invoice_data import (
    InvoiceData, InvoiceDataError, new_invoice_data, duplicate_invoice_data,
    parse_extraction, apply_extracted_fields,
)
from models import (
    Base, make_engine, make_session_factory, sqlite_file_dir, User,
    list_invoice_records, get_invoice_record, create_invoice_record,
    update_invoice_record, delete_invoice_record,
)
from pdf_service import RenderError, FontSource, render_to_pdf, pdf_filename

logger = logging.getLogger(__name__)

login_manager = LoginManager()


# -----------------------------
# Flask-Login user wrapper
# -----------------------------
class AppUser(UserMixin):
    def __init__(self, user_id: int, username: str):
        self.id = str(user_id)
        self.username = username

    def to_dict(self) -> dict:
        return {"id": self.id, "username": self.username}


# -----------------------------
# Helpers
# -----------------------------
def _error(message: str, status: int):
    return jsonify({"error": message}), status


def _current_user_id_int() -> int:
    try:
        return int(current_user.get_id())
    except (TypeError, ValueError):
        return -1


def _invoice_data_from(payload) -> InvoiceData:
    if not isinstance(payload, dict) or payload.get("data") is None:
        raise InvoiceDataError("Missing invoice data")
    return InvoiceData.from_dict(payload["data"])


def _pdf_response(pdf_bytes: bytes, invoice_number: str):
    return send_file(
        io.BytesIO(pdf_bytes),
        as_attachment=True,
        download_name=pdf_filename(invoice_number),
        mimetype="application/pdf",
    )


def _ensure_dirs(cfg):
    db_dir = sqlite_file_dir(cfg["SQLALCHEMY_DATABASE_URI"])
    if db_dir is not None:
        db_dir.mkdir(parents=True, exist_ok=True)


# -----------------------------
# App factory
# -----------------------------
def create_app(overrides: dict | None = None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=app.config.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    _ensure_dirs(app.config)
    login_manager.init_app(app)

    engine = make_engine(app.config["SQLALCHEMY_DATABASE_URI"], echo=app.config["SQLALCHEMY_ECHO"])
    Base.metadata.create_all(engine)
    SessionLocal = make_session_factory(engine)
    app.extensions["session_factory"] = SessionLocal

    def db_session():
        return SessionLocal()

    def font_source() -> FontSource:
        return FontSource.from_config(app.config)

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            uid = int(user_id)
        except (TypeError, ValueError):
            return None
        with db_session() as s:
            u = s.get(User, uid)
            if not u:
                return None
            return AppUser(u.id, u.username)

    @login_manager.unauthorized_handler
    def unauthorized():
        return _error("Unauthorized", 401)

    @app.errorhandler(InvoiceDataError)
    def invalid_invoice(exc):
        return _error(str(exc), 400)

    @app.errorhandler(RenderError)
    def render_failed(exc):
        return _error(str(exc), 500)

    # -----------------------------
    # Auth routes
    # -----------------------------
    @app.route("/api/auth/register", methods=["POST"])
    def register():
        payload = request.get_json(silent=True) or {}
        username = (payload.get("username") or "").strip()
        password = payload.get("password") or ""

        if len(username) < 3:
            return _error("Username must be at least 3 characters.", 400)
        if len(password) < 6:
            return _error("Password must be at least 6 characters.", 400)

        with db_session() as s:
            taken = s.query(User).filter(User.username == username).first()
            if taken:
                return _error("That username is already taken.", 409)

            u = User(username=username, password_hash=generate_password_hash(password))
            s.add(u)
            s.commit()
            user = AppUser(u.id, u.username)

        login_user(user)
        return jsonify({"user": user.to_dict()}), 201

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request.get_json(silent=True) or {}
        username = (payload.get("username") or "").strip()
        password = payload.get("password") or ""
        with db_session() as s:
            u = s.query(User).filter(User.username == username).first()
            if not u or not check_password_hash(u.password_hash, password):
                return _error("Invalid username or password.", 401)
            user = AppUser(u.id, u.username)

        login_user(user)
        return jsonify({"user": user.to_dict()})

    @app.route("/api/auth/logout", methods=["POST"])
    def logout():
        logout_user()
        return jsonify({"ok": True})

    @app.route("/api/auth/me")
    def me():
        if not current_user.is_authenticated:
            return jsonify({"user": None})
        return jsonify({"user": current_user.to_dict()})

    # -----------------------------
    # Editor (no account needed)
    # -----------------------------
    @app.route("/api/invoices/new")
    def invoice_defaults():
        data = new_invoice_data(due_days=app.config["INVOICE_DUE_DAYS"])
        return jsonify({"data": data.to_dict(), "totals": compute_totals(data).to_dict()})

    @app.route("/api/invoices/totals", methods=["POST"])
    def invoice_totals():
        data = _invoice_data_from(request.get_json(silent=True))
        return jsonify(compute_totals(data).to_dict())

    @app.route("/api/invoices/pdf", methods=["POST"])
    def invoice_pdf_from_editor():
        data = _invoice_data_from(request.get_json(silent=True))
        pdf_bytes = render_to_pdf(data, font_source=font_source(), timeout=app.config["PDF_RENDER_TIMEOUT"])
        return _pdf_response(pdf_bytes, data.invoice_number)

    # -----------------------------
    # Magic Fill
    # -----------------------------
    def _extract(text):
        """Run the configured extractor; returns (ExtractedFields, None) or (None, error response)."""
        if not isinstance(text, str) or not text.strip():
            return None, _error("Please provide text to parse", 400)
        extractor = app.config.get("TEXT_EXTRACTOR")
        if extractor is None:
            return None, _error("AI extraction is not configured", 503)
        try:
            raw = extractor(text)
        except Exception:
            logger.exception("Text extraction failed")
            return None, _error("Failed to parse invoice data", 502)
        return parse_extraction(raw), None

    @app.route("/api/magic-fill", methods=["POST"])
    def magic_fill():
        payload = request.get_json(silent=True) or {}
        # Validate the invoice before calling out, so a bad body costs no extraction.
        current = InvoiceData.from_dict(payload["invoice"]) if payload.get("invoice") is not None else None

        extracted, err = _extract(payload.get("text"))
        if err:
            return err

        out = {"extracted": extracted.to_dict()}
        if current is not None:
            merged = apply_extracted_fields(current, extracted)
            out["invoice"] = merged.to_dict()
            out["totals"] = compute_totals(merged).to_dict()
        return jsonify(out)

    @app.route("/api/transcribe", methods=["POST"])
    def transcribe():
        audio = request.get_data(cache=False)
        if not audio:
            return _error("No audio data provided", 400)
        if len(audio) > app.config["MAX_AUDIO_BYTES"]:
            return _error("Audio clip is too large", 413)

        transcriber = app.config.get("TRANSCRIBER")
        if transcriber is None:
            return _error("Transcription is not configured", 503)
        try:
            text = transcriber(audio, request.mimetype or "audio/webm")
        except Exception:
            logger.exception("Transcription failed")
            return _error("Failed to transcribe audio", 502)
        return jsonify({"text": text or ""})

    # -----------------------------
    # Saved invoices (scoped to user)
    # -----------------------------
    @app.route("/api/invoices", methods=["GET"])
    @login_required
    def invoices():
        status = (request.args.get("status") or "").strip()
        with db_session() as s:
            rows = list_invoice_records(s, _current_user_id_int(), status or None)
            return jsonify({"invoices": [r.to_record().to_dict() for r in rows]})

    @app.route("/api/invoices", methods=["POST"])
    @login_required
    def invoice_create():
        payload = request.get_json(silent=True) or {}
        data = _invoice_data_from(payload)
        with db_session() as s:
            inv = create_invoice_record(s, _current_user_id_int(), data, payload.get("status"))
            return jsonify({"invoice": inv.to_record().to_dict()}), 201

    @app.route("/api/invoices/<record_id>", methods=["PUT"])
    @login_required
    def invoice_update(record_id):
        payload = request.get_json(silent=True) or {}
        data = InvoiceData.from_dict(payload["data"]) if payload.get("data") is not None else None
        with db_session() as s:
            inv = update_invoice_record(s, _current_user_id_int(), record_id, data, payload.get("status"))
            if inv is None:
                return _error("Invoice not found", 404)
            return jsonify({"invoice": inv.to_record().to_dict()})

    @app.route("/api/invoices/<record_id>", methods=["DELETE"])
    @login_required
    def invoice_delete(record_id):
        with db_session() as s:
            if not delete_invoice_record(s, _current_user_id_int(), record_id):
                return _error("Invoice not found", 404)
        return jsonify({"ok": True})

    @app.route("/api/invoices/<record_id>/duplicate", methods=["POST"])
    @login_required
    def invoice_duplicate(record_id):
        with db_session() as s:
            inv = get_invoice_record(s, _current_user_id_int(), record_id)
            if inv is None:
                return _error("Invoice not found", 404)
            data = duplicate_invoice_data(inv.invoice_data())
        return jsonify({"data": data.to_dict()})

    @app.route("/api/invoices/<record_id>/magic-fill", methods=["POST"])
    @login_required
    def invoice_magic_fill(record_id):
        payload = request.get_json(silent=True) or {}
        with db_session() as s:
            inv = get_invoice_record(s, _current_user_id_int(), record_id)
            if inv is None:
                return _error("Invoice not found", 404)
            current = inv.invoice_data()

        extracted, err = _extract(payload.get("text"))
        if err:
            return err
        merged = apply_extracted_fields(current, extracted)
        return jsonify({
            "extracted": extracted.to_dict(),
            "invoice": merged.to_dict(),
            "totals": compute_totals(merged).to_dict(),
        })

    # -----------------------------
    # PDF routes (scoped)
    # -----------------------------
    @app.route("/api/invoices/<record_id>/pdf")
    @login_required
    def invoice_pdf_download(record_id):
        with db_session() as s:
            inv = get_invoice_record(s, _current_user_id_int(), record_id)
            if inv is None:
                return _error("Invoice not found", 404)
            data = inv.invoice_data()

        pdf_bytes = render_to_pdf(data, font_source=font_source(), timeout=app.config["PDF_RENDER_TIMEOUT"])
        return _pdf_response(pdf_bytes, data.invoice_number)

    @app.route("/api/invoices/pdfs.zip")
    @login_required
    def pdfs_download_all():
        status = (request.args.get("status") or "").strip()
        with db_session() as s:
            rows = list_invoice_records(s, _current_user_id_int(), status or None)
            batch = [(r.id, r.invoice_data()) for r in rows]

        mem = io.BytesIO()
        failed = 0
        used_names = set()
        with zipfile.ZipFile(mem, "w", zipfile.ZIP_DEFLATED) as z:
            for record_id, data in batch:
                try:
                    pdf_bytes = render_to_pdf(data, font_source=font_source(), timeout=app.config["PDF_RENDER_TIMEOUT"])
                except RenderError:
                    failed += 1
                    continue
                name = pdf_filename(data.invoice_number)
                if name in used_names:
                    name = f"{name[:-4]}-{record_id[:8]}.pdf"
                used_names.add(name)
                z.writestr(name, pdf_bytes)

        mem.seek(0)
        resp = send_file(mem, as_attachment=True, download_name="invoices_pdfs.zip", mimetype="application/zip")
        resp.headers["X-Failed-Renders"] = str(failed)
        return resp

    @app.route("/api/health")
    def health():
        return jsonify({"status": "ok"})

    return app


if __name__ == "__main__":
    app = create_app()
    app.run(debug=True)
