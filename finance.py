# finance.py
"""
Invoice money math.

Everything here is a total function: missing, non-numeric and NaN inputs count
as 0 so neither the editor nor the PDF can ever show "NaN". No rounding happens
in the math; `format_currency` rounds to cents for display only.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def _num(x) -> float:
    if x is None or isinstance(x, bool):
        return 0.0
    try:
        v = float(x)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(v) or math.isinf(v):
        return 0.0
    return v


def item_amount(quantity=None, rate=None) -> float:
    return _num(quantity) * _num(rate)


def subtotal(items) -> float:
    """
    Sum of each item's `amount`. The amount is not recomputed here from
    quantity x rate; line items keep it in sync themselves.
    """
    total_ = 0.0
    for item in items or []:
        amount = item.get("amount") if isinstance(item, dict) else getattr(item, "amount", 0.0)
        total_ += _num(amount)
    return total_


def tax_amount(subtotal_value, tax_rate_percent=None) -> float:
    return _num(subtotal_value) * _num(tax_rate_percent) / 100


def total(subtotal_value, tax_value) -> float:
    return _num(subtotal_value) + _num(tax_value)


@dataclass(frozen=True)
class Totals:
    subtotal: float
    tax_amount: float
    total: float

    def to_dict(self) -> dict:
        return {"subtotal": self.subtotal, "taxAmount": self.tax_amount, "total": self.total}


def compute_totals(data) -> Totals:
    """Derive subtotal / tax / total from an InvoiceData. Never cached."""
    sub = subtotal(data.items)
    tax_value = tax_amount(sub, data.tax)
    return Totals(subtotal=sub, tax_amount=tax_value, total=total(sub, tax_value))


# -----------------------------
# Display formatting
# -----------------------------
def format_currency(amount) -> str:
    """USD display string: $1,234.50 / -$12.00. Half-cents round away from zero."""
    v = Decimal(str(_num(amount))).quantize(CENT, rounding=ROUND_HALF_UP)
    sign = "-" if v < 0 else ""  # no "-$0.00"
    return f"{sign}${abs(v):,.2f}"


def format_number(x) -> str:
    """Plain number the way a browser prints it: 5 -> "5", 1.5 -> "1.5"."""
    v = _num(x)
    if v.is_integer():
        return str(int(v))
    return f"{v:.10f}".rstrip("0").rstrip(".")


def format_long_date(value) -> str:
    """'2025-03-07' -> 'March 7, 2025'. Empty -> '-'. Unparseable text is shown as-is."""
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, date):
        d = value
    else:
        s = (value or "").strip()
        if not s:
            return "-"
        try:
            d = date.fromisoformat(s[:10])
        except ValueError:
            return s
    return f"{d.strftime('%B')} {d.day}, {d.year}"
