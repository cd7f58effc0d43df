# backend/possync/client/sales.py
"""
Recording sales on the device.

A sale is complete the moment it is written locally: it gets a provisional
"PROV-..." voucher so a receipt can be shown offline, and the final number
arrives later with the push (or a confirm round trip).

Stock is NOT decremented here. The server decrements once when the sale is
pushed and the new quantities come back with the next pull.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from ..identity import (
    assign_identity,
    assign_idempotency_key,
    generate_local_id,
    generate_provisional_voucher,
)
from ..models.sales import PAYMENT_TYPES
from ..time_utils import parse_timestamp, utcnow
from ..validation import ValidationError, round_money
from .calculations import calculate_line_total, calculate_transaction_totals
from .models import LocalCustomer, LocalItem, LocalTransaction, LocalTransactionLine
from .repository import create_item, find_by_local_id, find_item_by_barcode, mark_pending


logger = logging.getLogger(__name__)


def create_item_if_missing(
    session: Session,
    user_id: Optional[str],
    *,
    barcode: str,
    name: str,
    price=0,
    unit: str = "pc",
) -> LocalItem:
    """Item for a scanned barcode, created on the spot when the catalog lacks it."""
    item = find_item_by_barcode(session, barcode)
    if item is not None:
        return item
    logger.info("Creating item for unknown barcode %s", barcode)
    return create_item(session, user_id, name=name, barcode=barcode, price=price or 0, unit=unit)


def _build_line(session: Session, user_id: Optional[str], position: int, raw: dict) -> LocalTransactionLine:
    try:
        quantity = float(raw.get("quantity"))
    except (TypeError, ValueError):
        raise ValidationError("quantity must be a number")
    if quantity <= 0:
        raise ValidationError("quantity must be > 0")

    item_local_id = raw.get("item_id") or raw.get("item_local_id")
    item = find_by_local_id(session, LocalItem, item_local_id)
    name = raw.get("item_name") or raw.get("name")

    if item is None and raw.get("barcode"):
        if not name:
            raise ValidationError(f"item_name required for unknown barcode {raw['barcode']}")
        item = create_item_if_missing(
            session,
            user_id,
            barcode=raw["barcode"],
            name=name,
            price=raw.get("unit_price", raw.get("price", 0)),
            unit=raw.get("unit") or "pc",
        )

    if item is not None:
        item_local_id = item.local_id
        name = name or item.name

    if not name:
        raise ValidationError("item_name is required")

    unit_price = raw.get("unit_price", raw.get("price"))
    if unit_price is None:
        if item is None:
            raise ValidationError(f"unit_price is required for '{name}'")
        unit_price = item.price
    if float(unit_price) < 0:
        raise ValidationError("unit_price must be >= 0")
    per_line_discount = round_money(raw.get("per_line_discount") or 0)

    return LocalTransactionLine(
        position=position,
        local_id=raw.get("local_id") or generate_local_id(),
        item_local_id=item_local_id,
        item_name=name,
        quantity=quantity,
        unit_price=round_money(unit_price),
        per_line_discount=per_line_discount,
        line_total=calculate_line_total(quantity, unit_price, per_line_discount),
    )


def _write_transaction(
    store,
    context,
    cart_lines: Iterable[dict],
    *,
    status: str,
    payment_type: str,
    tax_percent,
    discount,
    other_charges,
    customer,
    date,
    receipt_path: Optional[str],
) -> LocalTransaction:
    if payment_type not in PAYMENT_TYPES:
        raise ValidationError(f"payment_type must be one of: {', '.join(PAYMENT_TYPES)}")
    cart_lines = list(cart_lines or [])
    if not cart_lines:
        raise ValidationError("Cart is empty")

    with store.write() as session:
        lines = [
            _build_line(session, context.user_id, position, raw)
            for position, raw in enumerate(cart_lines)
        ]
        totals = calculate_transaction_totals(lines, tax_percent, discount, other_charges)

        now = utcnow()
        txn = LocalTransaction(
            user_id=context.user_id,
            date=parse_timestamp(date) if date is not None else now,
            created_at=now,
            updated_at=now,
            status=status,
            payment_type=payment_type,
            receipt_path=receipt_path,
            voucher_number=None,
            provisional_voucher=generate_provisional_voucher() if status == "completed" else None,
            **totals,
        )
        if customer is not None:
            if isinstance(customer, LocalCustomer):
                txn.customer_local_id = customer.local_id
                txn.customer_name = customer.name
                txn.customer_mobile = customer.phone
            else:
                txn.customer_local_id = customer.get("local_id") or customer.get("id")
                txn.customer_name = customer.get("name")
                txn.customer_mobile = customer.get("phone") or customer.get("mobile")

        txn.lines = lines
        assign_identity(txn)
        assign_idempotency_key(txn, "transaction")
        mark_pending(txn)
        session.add(txn)
        session.flush()

    logger.info("Recorded %s transaction %s (%s)", status, txn.local_id, txn.provisional_voucher or "no voucher")
    return txn


def record_sale(
    store,
    context,
    cart_lines: Iterable[dict],
    payment_type: str = "cash",
    *,
    tax_percent=0,
    discount=0,
    other_charges=0,
    customer=None,
    date=None,
    receipt_path: Optional[str] = None,
) -> LocalTransaction:
    """
    Write a completed sale and its lines in one atomic block.

    cart_lines: dicts with quantity, item_id (local id) or barcode,
    item_name, unit_price, per_line_discount.
    """
    return _write_transaction(
        store, context, cart_lines,
        status="completed",
        payment_type=payment_type,
        tax_percent=tax_percent,
        discount=discount,
        other_charges=other_charges,
        customer=customer,
        date=date,
        receipt_path=receipt_path,
    )


def save_for_later(
    store,
    context,
    cart_lines: Iterable[dict],
    payment_type: str = "cash",
    *,
    tax_percent=0,
    discount=0,
    other_charges=0,
    customer=None,
) -> LocalTransaction:
    """Park a cart. No voucher of any kind is attached."""
    return _write_transaction(
        store, context, cart_lines,
        status="saved_for_later",
        payment_type=payment_type,
        tax_percent=tax_percent,
        discount=discount,
        other_charges=other_charges,
        customer=customer,
        date=None,
        receipt_path=None,
    )
