# invoice_data.py
"""
Invoice data entities, defaults and the Magic Fill merge rule.

The dict shapes produced by `to_dict()` are the JSON wire contract shared by
the editor and the history views (camelCase keys, unset optionals omitted).
"""
from __future__ import annotations

import math
import random
import re
import string
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from finance import item_amount

STATUSES = ("draft", "final")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ID_ALPHABET = string.digits + string.ascii_lowercase


class InvoiceDataError(ValueError):
    """Raised when invoice data from the wire has the wrong shape."""
    pass


# -----------------------------
# Entities
# -----------------------------
@dataclass
class LineItem:
    id: str
    description: str = ""
    quantity: Optional[float] = None
    rate: Optional[float] = None

    # Derived, never set directly
    @property
    def amount(self) -> float:
        return item_amount(self.quantity, self.rate)

    def to_dict(self) -> dict:
        out = {"id": self.id, "description": self.description}
        if self.quantity is not None:
            out["quantity"] = self.quantity
        if self.rate is not None:
            out["rate"] = self.rate
        out["amount"] = self.amount
        return out

    @classmethod
    def from_dict(cls, raw) -> "LineItem":
        if not isinstance(raw, dict):
            raise InvoiceDataError("Each line item must be an object")
        item_id = raw.get("id")
        if not isinstance(item_id, str) or not item_id:
            raise InvoiceDataError("Line item is missing an id")
        return cls(
            id=item_id,
            description=_opt_str(raw.get("description"), "description") or "",
            quantity=_opt_number(raw.get("quantity"), "quantity"),
            rate=_opt_number(raw.get("rate"), "rate"),
        )


@dataclass
class PartyInfo:
    name: str = ""
    email: str = ""
    address: str = ""
    phone: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"name": self.name, "email": self.email, "address": self.address}
        if self.phone is not None:
            out["phone"] = self.phone
        return out

    @classmethod
    def from_dict(cls, raw) -> "PartyInfo":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise InvoiceDataError("Sender and recipient must be objects")
        return cls(
            name=_opt_str(raw.get("name"), "name") or "",
            email=_opt_str(raw.get("email"), "email") or "",
            address=_opt_str(raw.get("address"), "address") or "",
            phone=_opt_str(raw.get("phone"), "phone"),
        )


@dataclass
class InvoiceData:
    invoice_number: str
    issue_date: str
    due_date: str
    sender: PartyInfo = field(default_factory=PartyInfo)
    recipient: PartyInfo = field(default_factory=PartyInfo)
    items: list[LineItem] = field(default_factory=list)
    notes: Optional[str] = None
    tax: Optional[float] = None
    logo: Optional[str] = None  # data URI

    def to_dict(self) -> dict:
        out = {
            "invoiceNumber": self.invoice_number,
            "issueDate": self.issue_date,
            "dueDate": self.due_date,
            "sender": self.sender.to_dict(),
            "recipient": self.recipient.to_dict(),
            "items": [i.to_dict() for i in self.items],
        }
        if self.notes is not None:
            out["notes"] = self.notes
        if self.tax is not None:
            out["tax"] = self.tax
        if self.logo is not None:
            out["logo"] = self.logo
        return out

    @classmethod
    def from_dict(cls, raw) -> "InvoiceData":
        if not isinstance(raw, dict):
            raise InvoiceDataError("Invoice data must be an object")

        raw_items = raw.get("items")
        if not isinstance(raw_items, list):
            raise InvoiceDataError("Invoice items must be a list")
        if not raw_items:
            raise InvoiceDataError("An invoice needs at least one line item")

        tax = _opt_number(raw.get("tax"), "tax")
        if tax is not None and not (0 <= tax <= 100):
            raise InvoiceDataError("Tax rate must be between 0 and 100")

        logo = _opt_str(raw.get("logo"), "logo")
        if logo is not None and logo and not logo.startswith("data:"):
            raise InvoiceDataError("Logo must be a data URI")

        return cls(
            invoice_number=_opt_str(raw.get("invoiceNumber"), "invoiceNumber") or "",
            issue_date=_opt_str(raw.get("issueDate"), "issueDate") or "",
            due_date=_opt_str(raw.get("dueDate"), "dueDate") or "",
            sender=PartyInfo.from_dict(raw.get("sender")),
            recipient=PartyInfo.from_dict(raw.get("recipient")),
            items=[LineItem.from_dict(i) for i in raw_items],
            notes=_opt_str(raw.get("notes"), "notes"),
            tax=tax,
            logo=logo,
        )


@dataclass
class InvoiceRecord:
    """A saved InvoiceData plus ownership, status and timestamps (epoch ms)."""
    id: str
    user_id: str
    status: str
    data: InvoiceData
    created_at: int
    updated_at: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "status": self.status,
            "data": self.data.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw) -> "InvoiceRecord":
        if not isinstance(raw, dict):
            raise InvoiceDataError("Invoice record must be an object")
        status = raw.get("status")
        if status not in STATUSES:
            raise InvoiceDataError(f"Unknown invoice status: {status!r}")
        return cls(
            id=str(raw.get("id") or ""),
            user_id=str(raw.get("userId") or ""),
            status=status,
            data=InvoiceData.from_dict(raw.get("data")),
            created_at=int(raw.get("createdAt") or 0),
            updated_at=int(raw.get("updatedAt") or 0),
        )


def to_epoch_ms(dt: datetime | None) -> int:
    if dt is None:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


# -----------------------------
# Field validation helpers
# -----------------------------
def _opt_str(value, name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvoiceDataError(f"Field '{name}' must be text")
    return value


def _opt_number(value, name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvoiceDataError(f"Field '{name}' must be a number")
    if math.isnan(value) or math.isinf(value):
        raise InvoiceDataError(f"Field '{name}' must be a finite number")
    if value < 0:
        raise InvoiceDataError(f"Field '{name}' cannot be negative")
    return value


# -----------------------------
# Defaults
# -----------------------------
def generate_item_id() -> str:
    return "".join(random.choice(_ID_ALPHABET) for _ in range(9))


def generate_record_id() -> str:
    return str(uuid.uuid4())


def generate_invoice_number(today: date | None = None) -> str:
    """INV-YYMM-NNNN with a random 4-digit suffix."""
    d = today or date.today()
    return f"INV-{d:%y%m}-{random.randint(0, 9999):04d}"


def empty_line_item() -> LineItem:
    return LineItem(id=generate_item_id(), description="", quantity=1, rate=None)


def new_invoice_data(today: date | None = None, due_days: int = 30) -> InvoiceData:
    d = today or date.today()
    return InvoiceData(
        invoice_number=generate_invoice_number(d),
        issue_date=d.isoformat(),
        due_date=(d + timedelta(days=due_days)).isoformat(),
        sender=PartyInfo(phone=""),
        recipient=PartyInfo(phone=""),
        items=[empty_line_item()],
        notes="",
        tax=None,
    )


def duplicate_invoice_data(data: InvoiceData, today: date | None = None) -> InvoiceData:
    """Copy of a saved invoice for the editor: new number, new item ids."""
    return replace(
        data,
        invoice_number=generate_invoice_number(today),
        sender=replace(data.sender),
        recipient=replace(data.recipient),
        items=[replace(i, id=generate_item_id()) for i in data.items],
    )


# -----------------------------
# Line item editing
# -----------------------------
def add_line_item(data: InvoiceData) -> InvoiceData:
    return replace(data, items=[*data.items, empty_line_item()])


def update_line_item(data: InvoiceData, item_id: str, **changes) -> InvoiceData:
    allowed = {"description", "quantity", "rate"}
    unknown = set(changes) - allowed
    if unknown:
        raise InvoiceDataError(f"Cannot edit line item field(s): {', '.join(sorted(unknown))}")
    # same checks as the wire format
    if "description" in changes:
        changes["description"] = _opt_str(changes["description"], "description") or ""
    for key in ("quantity", "rate"):
        if key in changes:
            changes[key] = _opt_number(changes[key], key)
    items = [replace(i, **changes) if i.id == item_id else i for i in data.items]
    return replace(data, items=items)


def remove_line_item(data: InvoiceData, item_id: str) -> InvoiceData:
    # The last remaining line cannot be removed.
    if len(data.items) <= 1:
        return data
    return replace(data, items=[i for i in data.items if i.id != item_id])


# -----------------------------
# Magic Fill
# -----------------------------
_PARTY_FIELDS = ("name", "email", "address", "phone")


@dataclass
class ExtractedItem:
    description: str
    quantity: Optional[float]
    rate: Optional[float]


@dataclass
class ExtractedFields:
    """Validated subset of an extraction result. None means "not extracted"."""
    sender: dict[str, str] = field(default_factory=dict)
    recipient: dict[str, str] = field(default_factory=dict)
    items: list[ExtractedItem] = field(default_factory=list)
    issue_date: Optional[str] = None
    due_date: Optional[str] = None
    notes: Optional[str] = None

    def to_dict(self) -> dict:
        out: dict = {}
        if self.sender:
            out["sender"] = dict(self.sender)
        if self.recipient:
            out["recipient"] = dict(self.recipient)
        if self.items:
            out["items"] = [
                {k: v for k, v in (("description", i.description), ("quantity", i.quantity), ("rate", i.rate)) if v is not None}
                for i in self.items
            ]
        if self.issue_date:
            out["issueDate"] = self.issue_date
        if self.due_date:
            out["dueDate"] = self.due_date
        if self.notes:
            out["notes"] = self.notes
        return out


def _clean_text(value) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _loose_number(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().replace(",", "").lstrip("$")
        if not value:
            return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(v) or math.isinf(v) or v < 0:
        return None
    return int(v) if v.is_integer() else v


def _clean_date(value) -> str | None:
    s = _clean_text(value)
    if not s or not _ISO_DATE_RE.match(s):
        return None
    try:
        date.fromisoformat(s)
    except ValueError:
        return None
    return s


def _clean_party(raw) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    out = {}
    for key in _PARTY_FIELDS:
        val = _clean_text(raw.get(key))
        if val is not None:
            out[key] = val
    return out


def parse_extraction(raw) -> ExtractedFields:
    """
    Validate an untrusted extraction payload field by field.
    Anything with the wrong shape is dropped instead of merged.
    """
    if not isinstance(raw, dict):
        return ExtractedFields()

    items: list[ExtractedItem] = []
    raw_items = raw.get("items")
    if isinstance(raw_items, list):
        for r in raw_items:
            if not isinstance(r, dict):
                continue
            desc = r.get("description")
            items.append(ExtractedItem(
                description=desc.strip() if isinstance(desc, str) else "",
                quantity=_loose_number(r.get("quantity")),
                rate=_loose_number(r.get("rate")),
            ))

    return ExtractedFields(
        sender=_clean_party(raw.get("sender")),
        recipient=_clean_party(raw.get("recipient")),
        items=items,
        issue_date=_clean_date(raw.get("issueDate")),
        due_date=_clean_date(raw.get("dueDate")),
        notes=_clean_text(raw.get("notes")),
    )


def apply_extracted_fields(current: InvoiceData, extracted) -> InvoiceData:
    """
    Merge Magic Fill output onto the invoice being edited.

    - sender / recipient: per-field, extracted values win, missing ones keep the current value
    - items: a non-empty extracted list replaces the whole item list, an empty one changes nothing
    - dates / notes: overwrite when extracted

    `extracted` may be a raw dict (validated here) or an ExtractedFields.
    `current` is not modified.
    """
    if not isinstance(extracted, ExtractedFields):
        extracted = parse_extraction(extracted)

    updated = replace(
        current,
        sender=replace(current.sender, **extracted.sender),
        recipient=replace(current.recipient, **extracted.recipient),
    )

    if extracted.items:
        updated.items = [
            LineItem(id=generate_item_id(), description=i.description, quantity=i.quantity, rate=i.rate)
            for i in extracted.items
        ]
    else:
        updated.items = list(current.items)

    if extracted.issue_date:
        updated.issue_date = extracted.issue_date
    if extracted.due_date:
        updated.due_date = extracted.due_date
    if extracted.notes:
        updated.notes = extracted.notes

    return updated
