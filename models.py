# models.py
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Optional

from sqlalchemy import (
    create_engine,
    String,
    Integer,
    DateTime,
    ForeignKey,
    JSON,
    select,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
    sessionmaker,
)
from sqlalchemy.pool import StaticPool

from invoice_data import (
    STATUSES,
    InvoiceData,
    InvoiceRecord,
    generate_record_id,
    to_epoch_ms,
)

# -----------------------------
# SQLAlchemy base
# -----------------------------
class Base(DeclarativeBase):
    pass


# -----------------------------
# Tables
# -----------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(80), unique=True, nullable=False, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    invoices: Mapped[list["Invoice"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
    )


class Invoice(Base):
    """
    One saved invoice (draft or final). The editor's InvoiceData is kept
    whole in `data` so it round-trips exactly as the editor sent it.
    """
    __tablename__ = "invoices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_record_id)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")
    data: Mapped[dict] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    user: Mapped["User"] = relationship(back_populates="invoices")

    def invoice_data(self) -> InvoiceData:
        return InvoiceData.from_dict(self.data)

    def to_record(self) -> InvoiceRecord:
        return InvoiceRecord(
            id=self.id,
            user_id=str(self.user_id),
            status=self.status,
            data=self.invoice_data(),
            created_at=to_epoch_ms(self.created_at),
            updated_at=to_epoch_ms(self.updated_at),
        )


# -----------------------------
# Engine / Session factory
# -----------------------------
def sqlite_file_dir(db_url: str) -> Optional[Path]:
    """Directory holding a file-backed SQLite database; None for other URLs and in-memory SQLite."""
    if not db_url.startswith("sqlite:///") or db_url == "sqlite:///:memory:":
        return None
    return Path(db_url[len("sqlite:///"):]).parent


def make_engine(db_url: str, echo: bool = False):
    """
    Create SQLAlchemy engine.
    Note: SQLite path must exist (instance/ folder). In-memory SQLite shares one connection.
    """
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(
            db_url,
            echo=echo,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(db_url, echo=echo, future=True)


def make_session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


# -----------------------------
# Invoice store (scoped to one user)
# -----------------------------
def list_invoice_records(session, user_id: int, status: str | None = None) -> list[Invoice]:
    """Most recently updated first."""
    q = select(Invoice).where(Invoice.user_id == user_id)
    if status in STATUSES:
        q = q.where(Invoice.status == status)
    q = q.order_by(Invoice.updated_at.desc(), Invoice.created_at.desc())
    return list(session.execute(q).scalars())


def get_invoice_record(session, user_id: int, record_id: str) -> Optional[Invoice]:
    inv = session.get(Invoice, record_id)
    if inv is None or inv.user_id != user_id:
        return None
    return inv


def create_invoice_record(session, user_id: int, data: InvoiceData, status: str | None = None) -> Invoice:
    now = datetime.utcnow()
    inv = Invoice(
        id=generate_record_id(),
        user_id=user_id,
        status="final" if status == "final" else "draft",
        data=data.to_dict(),
        created_at=now,
        updated_at=now,
    )
    session.add(inv)
    session.commit()
    return inv


def update_invoice_record(
    session,
    user_id: int,
    record_id: str,
    data: InvoiceData | None = None,
    status: str | None = None,
) -> Optional[Invoice]:
    """
    Returns None when the record does not exist or belongs to someone else.
    Unknown statuses keep the current one; missing data keeps the current data.
    """
    inv = get_invoice_record(session, user_id, record_id)
    if inv is None:
        return None
    if status in STATUSES:
        inv.status = status
    if data is not None:
        inv.data = data.to_dict()
    inv.updated_at = datetime.utcnow()
    session.commit()
    return inv


def delete_invoice_record(session, user_id: int, record_id: str) -> bool:
    inv = get_invoice_record(session, user_id, record_id)
    if inv is None:
        return False
    session.delete(inv)
    session.commit()
    return True
