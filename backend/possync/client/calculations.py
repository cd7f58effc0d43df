# backend/possync/client/calculations.py
"""Cart money math. Every amount is rounded half-up to 2 decimals."""

from __future__ import annotations

from typing import Iterable

from ..identity import get_field
from ..validation import round_money


def calculate_line_total(quantity, unit_price, per_line_discount=0) -> float:
    """quantity x unit_price - per_line_discount"""
    return round_money(float(quantity) * float(unit_price) - float(per_line_discount or 0))


def calculate_subtotal(lines: Iterable) -> float:
    return round_money(sum(float(get_field(line, "line_total") or 0) for line in lines))


def calculate_tax(subtotal: float, tax_percent) -> float:
    return round_money(float(subtotal) * float(tax_percent or 0) / 100)


def calculate_grand_total(subtotal: float, tax: float, other_charges=0, discount=0) -> float:
    return round_money(float(subtotal) + float(tax) + float(other_charges or 0) - float(discount or 0))


def calculate_transaction_totals(lines, tax_percent=0, discount=0, other_charges=0) -> dict:
    """
    Totals for a cart. Lines are dicts or objects with line_total and quantity.

    Tax applies to the subtotal; the transaction-level discount and other
    charges are applied after tax.
    """
    lines = list(lines)
    subtotal = calculate_subtotal(lines)
    tax = calculate_tax(subtotal, tax_percent)
    grand_total = calculate_grand_total(subtotal, tax, other_charges, discount)

    return {
        "subtotal": subtotal,
        "tax": tax,
        "discount": round_money(discount or 0),
        "other_charges": round_money(other_charges or 0),
        "grand_total": grand_total,
        "item_count": len(lines),
        "unit_count": round_money(sum(float(get_field(line, "quantity") or 0) for line in lines)),
    }
