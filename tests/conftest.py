import pytest

from app import create_app
from invoice_data import InvoiceData, LineItem, PartyInfo


def build_invoice(n_items=1, quantity=5, rate=20, **overrides) -> InvoiceData:
    fields = dict(
        invoice_number="INV-2501-0042",
        issue_date="2025-01-15",
        due_date="2025-02-14",
        sender=PartyInfo(name="Acme", email="billing@acme.test", address="1 Main St, Springfield", phone=""),
        recipient=PartyInfo(name="Globex", email="ap@globex.test", address="9 Side Rd, Shelbyville"),
        items=[
            LineItem(id=f"item{i + 1}", description=f"Service {i + 1}", quantity=quantity, rate=rate)
            for i in range(n_items)
        ],
        notes="",
        tax=None,
    )
    fields.update(overrides)
    return InvoiceData(**fields)


@pytest.fixture
def make_invoice():
    return build_invoice


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{(tmp_path / 'test.db').as_posix()}",
        "SQLALCHEMY_ECHO": False,
        "EXPORTS_DIR": (tmp_path / "exports").as_posix(),
        "PDF_FONT_NAME": "",
        "PDF_RENDER_TIMEOUT": 30,
        "TEXT_EXTRACTOR": None,
        "TRANSCRIBER": None,
    })
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    resp = client.post("/api/auth/register", json={"username": "alice", "password": "secret123"})
    assert resp.status_code == 201
    return client
