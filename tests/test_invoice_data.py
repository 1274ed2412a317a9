import json
import re
from datetime import date

import pytest

from invoice_data import (
    InvoiceData, InvoiceDataError, InvoiceRecord, LineItem,
    new_invoice_data, generate_invoice_number, generate_item_id, duplicate_invoice_data,
    add_line_item, update_line_item, remove_line_item,
    parse_extraction, apply_extracted_fields,
)


def test_defaults():
    data = new_invoice_data(today=date(2025, 1, 31))
    assert data.issue_date == "2025-01-31"
    assert data.due_date == "2025-03-02"
    assert re.fullmatch(r"INV-2501-\d{4}", data.invoice_number)
    assert len(data.items) == 1
    assert data.items[0].quantity == 1
    assert data.items[0].rate is None
    assert data.items[0].amount == 0
    assert data.tax is None
    assert data.notes == ""


def test_generated_ids():
    assert re.fullmatch(r"INV-\d{4}-\d{4}", generate_invoice_number())
    assert re.fullmatch(r"[0-9a-z]{9}", generate_item_id())


def test_amount_follows_quantity_and_rate():
    data = InvoiceData("INV-1", "2025-01-01", "2025-01-31", items=[LineItem(id="a", quantity=2, rate=3)])
    assert data.items[0].amount == 6
    data = update_line_item(data, "a", quantity=4)
    assert data.items[0].amount == 12
    data = update_line_item(data, "a", rate=None)
    assert data.items[0].amount == 0


def test_update_line_item_rejects_amount():
    data = new_invoice_data()
    with pytest.raises(InvoiceDataError):
        update_line_item(data, data.items[0].id, amount=99)


def test_last_item_cannot_be_removed():
    data = new_invoice_data()
    only = data.items[0].id
    assert remove_line_item(data, only).items[0].id == only

    data = add_line_item(data)
    assert len(data.items) == 2
    assert [i.id for i in remove_line_item(data, only).items] == [data.items[1].id]


def test_round_trip_keeps_unset_fields_unset(make_invoice):
    data = make_invoice(tax=None, notes=None)
    data.items.append(LineItem(id="blank", description="", quantity=None, rate=None))

    wire = json.loads(json.dumps(data.to_dict()))
    assert "tax" not in wire
    assert "notes" not in wire
    assert "phone" not in wire["recipient"]
    assert "quantity" not in wire["items"][-1]

    back = InvoiceData.from_dict(wire)
    assert back == data
    assert back.tax is None


def test_record_round_trip(make_invoice):
    record = InvoiceRecord(
        id="3f0c", user_id="7", status="final",
        data=make_invoice(tax=8.25, notes="Net 30", logo="data:image/png;base64,AAAA"),
        created_at=1736899200000, updated_at=1736985600000,
    )
    wire = json.loads(json.dumps(record.to_dict()))
    assert set(wire) == {"id", "userId", "status", "data", "createdAt", "updatedAt"}
    assert InvoiceRecord.from_dict(wire) == record


@pytest.mark.parametrize("mutate, message", [
    (lambda d: d.update(items=[]), "at least one"),
    (lambda d: d.update(items="nope"), "must be a list"),
    (lambda d: d.update(tax=150), "between 0 and 100"),
    (lambda d: d["items"][0].update(quantity="5"), "must be a number"),
    (lambda d: d["items"][0].update(rate=-1), "negative"),
    (lambda d: d.update(sender="Acme"), "objects"),
])
def test_from_dict_rejects_bad_shapes(make_invoice, mutate, message):
    wire = make_invoice().to_dict()
    mutate(wire)
    with pytest.raises(InvoiceDataError, match=message):
        InvoiceData.from_dict(wire)


def test_duplicate_gets_new_number_and_item_ids(make_invoice):
    data = make_invoice(n_items=3)
    copy = duplicate_invoice_data(data)
    assert [i.description for i in copy.items] == [i.description for i in data.items]
    assert not {i.id for i in copy.items} & {i.id for i in data.items}
    assert copy.sender == data.sender and copy.sender is not data.sender


# -----------------------------
# Magic Fill merge
# -----------------------------
def test_party_fields_merge_per_field(make_invoice):
    current = make_invoice()
    merged = apply_extracted_fields(current, {"sender": {"email": "new@acme.test"}, "recipient": {"phone": "555-0100"}})
    assert merged.sender.name == "Acme"
    assert merged.sender.email == "new@acme.test"
    assert merged.sender.address == current.sender.address
    assert merged.recipient.phone == "555-0100"
    assert merged.recipient.name == "Globex"
    # input untouched
    assert current.sender.email == "billing@acme.test"


def test_empty_item_list_does_not_replace(make_invoice):
    current = make_invoice(n_items=3)
    merged = apply_extracted_fields(current, {"items": []})
    assert merged.items == current.items

    merged = apply_extracted_fields(current, {})
    assert merged.items == current.items


def test_items_replace_wholesale(make_invoice):
    current = make_invoice(n_items=3)
    merged = apply_extracted_fields(current, {"items": [
        {"description": "Design", "quantity": 10, "rate": 85},
        {"description": "Hosting", "quantity": "1", "rate": "$120.50"},
    ]})
    assert [i.description for i in merged.items] == ["Design", "Hosting"]
    assert merged.items[0].amount == 850
    assert merged.items[1].rate == 120.5
    assert not {i.id for i in merged.items} & {i.id for i in current.items}


def test_dates_and_notes_overwrite(make_invoice):
    current = make_invoice(notes="old")
    merged = apply_extracted_fields(current, {"issueDate": "2025-06-19", "dueDate": "2025-07-19", "notes": "Pay by wire"})
    assert merged.issue_date == "2025-06-19"
    assert merged.due_date == "2025-07-19"
    assert merged.notes == "Pay by wire"


def test_untrusted_fields_are_dropped(make_invoice):
    current = make_invoice()
    merged = apply_extracted_fields(current, {
        "sender": {"name": 42, "email": ["x"], "address": "  "},
        "recipient": "Globex Corp",
        "items": ["not an object", None],
        "issueDate": "19th of June",
        "dueDate": "2025-02-30",
        "notes": {"text": "hi"},
        "tax": 50,
    })
    assert merged == current


def test_parse_extraction_to_dict():
    extracted = parse_extraction({
        "recipient": {"name": "Initech "},
        "items": [{"description": "Consulting", "quantity": 2.0, "rate": "abc"}],
    })
    assert extracted.to_dict() == {
        "recipient": {"name": "Initech"},
        "items": [{"description": "Consulting", "quantity": 2}],
    }
    assert parse_extraction("garbage").to_dict() == {}


@pytest.mark.parametrize("changes", [
    {"quantity": -1},
    {"rate": float("nan")},
    {"rate": float("inf")},
    {"quantity": "3"},
    {"rate": True},
    {"description": 42},
])
def test_update_line_item_applies_wire_checks(changes):
    data = new_invoice_data()
    with pytest.raises(InvoiceDataError):
        update_line_item(data, data.items[0].id, **changes)
    assert data.items[0].quantity == 1
