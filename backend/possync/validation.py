from __future__ import annotations
from datetime import datetime
from possync.time_utils import parse_timestamp

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from sqlalchemy import Boolean, Float, Integer, String, Text, DateTime
from sqlalchemy.orm import DeclarativeMeta


# Upper bound on any single money value (prevents nonsensical totals)
MAX_AMOUNT = 99_999_999.99


class ValidationError(ValueError):
    """400-level input problem."""


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer for one synchronized entity:
    - writable_fields: what devices are allowed to set (security boundary)
    - required_on_create: fields required when the record is new
    - aliases: wire key -> column key (devices send "id" for local_id etc.)
    - money_fields: rounded to 2 decimals and range-checked
    Unknown keys are dropped, not rejected: devices send their whole record
    including local-only sync bookkeeping (is_synced, sync_status, ...).
    """
    writable_fields: frozenset[str]
    required_on_create: frozenset[str] = frozenset()
    aliases: dict[str, str] = field(default_factory=dict)
    money_fields: frozenset[str] = frozenset()


def round_money(value) -> float:
    """Half-up to 2 decimals (float round() would round half to even)."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - reject bools and non-integral floats
    if isinstance(coltype, Integer):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if not value.is_integer():
                raise ValidationError(f"{col.key} must be an integer, not a decimal")
            return int(value)
        if isinstance(value, str):
            stripped = value.strip()
            try:
                return int(stripped)
            except ValueError:
                raise ValidationError(f"{col.key} must be an integer")
        raise ValidationError(f"{col.key} must be an integer")

    # Floats (money, quantities, stock)
    if isinstance(coltype, Float):
        if isinstance(value, bool):
            raise ValidationError(f"{col.key} must be a number")
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                raise ValidationError(f"{col.key} must be a number")
        raise ValidationError(f"{col.key} must be a number")

    # Booleans
    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        # fallback: truthiness (mobile stores send 0/1)
        return bool(value)

    # Datetimes (ISO-8601 strings or epoch milliseconds; normalize to UTC)
    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return parse_timestamp(value)
        try:
            dt = parse_timestamp(value)
        except (TypeError, ValueError):
            raise ValidationError(f"{col.key} must be an ISO-8601 datetime or epoch milliseconds")
        if dt is None:
            raise ValidationError(f"{col.key} must be an ISO-8601 datetime or epoch milliseconds")
        return dt

    # Strings / Text
    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    # Default: leave as-is
    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes one incoming wire record against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields), after applying aliases
    - required_on_create (if partial=False)
    Returns a cleaned patch dict keyed by column name.

    partial=False: create semantics (enforce required_on_create)
    partial=True: update semantics (validate only provided keys)
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationError("Invalid record payload")

    renamed: dict = {}
    for key, raw in payload.items():
        target = policy.aliases.get(key, key)
        # An explicit column key wins over its alias
        if target in renamed and key != target:
            continue
        renamed[target] = raw

    if not partial:
        missing = sorted(
            f for f in policy.required_on_create
            if renamed.get(f) is None or (isinstance(renamed.get(f), str) and not renamed[f].strip())
        )
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    cols = _columns_by_key(model)
    patch: dict = {}

    for k, raw in renamed.items():
        if k not in policy.writable_fields or k not in cols:
            continue
        col = cols[k]

        # NULL handling: a null for a column with a default means "use the default"
        if raw is None:
            if not col.nullable:
                if col.default is not None:
                    continue
                raise ValidationError(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        # Blank string check for non-nullable text fields
        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationError(f"{k} cannot be blank")

        # Max length check for String(n)
        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationError(f"{k} exceeds max length {col.type.length}")

        if k in policy.money_fields:
            val = round_money(val)
            if abs(val) > MAX_AMOUNT:
                raise ValidationError(f"{k} cannot exceed {MAX_AMOUNT:,.2f}")

        patch[k] = val

    return patch


def enforce_rules_item(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Keep these small and centralized.
    """
    if patch.get("price") is not None and patch["price"] < 0:
        raise ValidationError("price must be >= 0")


def enforce_rules_transaction(patch: dict, lines: list[dict]) -> None:
    from .models import PAYMENT_TYPES, TRANSACTION_STATUSES

    if patch.get("payment_type") is not None and patch["payment_type"] not in PAYMENT_TYPES:
        raise ValidationError(f"payment_type must be one of: {', '.join(PAYMENT_TYPES)}")
    if patch.get("status") is not None and patch["status"] not in TRANSACTION_STATUSES:
        raise ValidationError(f"status must be one of: {', '.join(TRANSACTION_STATUSES)}")

    for line in lines:
        if line.get("quantity") is None or line["quantity"] <= 0:
            raise ValidationError(f"quantity must be > 0 (line '{line.get('item_name')}')")
        if line.get("unit_price") is not None and line["unit_price"] < 0:
            raise ValidationError("unit_price must be >= 0")


def enforce_rules_transaction_line(patch: dict) -> None:
    # line_total = quantity x unit_price - per_line_discount, recomputed server-side
    quantity = patch.get("quantity") or 0
    unit_price = patch.get("unit_price") or 0
    discount = patch.get("per_line_discount") or 0
    patch["line_total"] = round_money(quantity * unit_price - discount)
