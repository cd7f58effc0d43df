# Overview: Service-layer operations for device push/pull; conflict resolution and idempotency.

"""
Delta sync (server side)

PUSH: every incoming record is resolved in this order:
1. idempotency_key already applied for this user -> report the existing record
2. (user_id, local_id) match -> Items/Customers: last-write-wins on updated_at,
   Transactions: append-only, reported as already synced
3. no match -> insert (completed Transactions also get a voucher and decrement
   inventory in the same DB transaction)

Each record is its own unit of work. A failure becomes a conflict entry for
that record only and never aborts the rest of the batch.

PULL: every record whose server_modified_at is after the cursor, as a full
snapshot. server_modified_at is server time, so a device clock that runs
behind can never hide its writes from other devices.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Customer, IdempotencyRecord, Item, Transaction, TransactionLine
from ..time_utils import EPOCH, parse_timestamp, to_utc_z, utcnow
from ..validation import (
    ModelValidationPolicy,
    ValidationError,
    enforce_rules_item,
    enforce_rules_transaction,
    enforce_rules_transaction_line,
    validate_payload,
)
from .concurrency import begin_write, run_with_retry
from .voucher_service import claim_voucher_number, voucher_date_str


class SyncError(Exception):
    """Raised for sync operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


# Racing duplicate inserts and lock timeouts replay the record from lookup
PUSH_RETRYABLE = (OperationalError, StaleDataError, IntegrityError)

SERVER_NEWER = "Server version is newer"

COLLECTIONS = ("items", "customers", "transactions")

ENTITY_TYPES = {
    "items": "item",
    "customers": "customer",
    "transactions": "transaction",
}

MODELS = {
    "items": Item,
    "customers": Customer,
    "transactions": Transaction,
}

_ENVELOPE_FIELDS = {"local_id", "idempotency_key", "created_at", "updated_at"}

ITEM_POLICY = ModelValidationPolicy(
    writable_fields=frozenset(_ENVELOPE_FIELDS | {
        "name", "barcode", "sku", "price", "unit", "category", "inventory_qty", "recommended",
    }),
    required_on_create=frozenset({"local_id", "name"}),
    aliases={"id": "local_id"},
    money_fields=frozenset({"price"}),
)

CUSTOMER_POLICY = ModelValidationPolicy(
    writable_fields=frozenset(_ENVELOPE_FIELDS | {"name", "phone", "email", "address"}),
    required_on_create=frozenset({"local_id", "name"}),
    aliases={"id": "local_id"},
)

TRANSACTION_POLICY = ModelValidationPolicy(
    writable_fields=frozenset(_ENVELOPE_FIELDS | {
        "customer_local_id", "customer_name", "customer_mobile", "date",
        "subtotal", "tax", "discount", "other_charges", "grand_total",
        "item_count", "unit_count", "payment_type", "status",
        "voucher_number", "provisional_voucher", "receipt_path",
    }),
    required_on_create=frozenset({"local_id"}),
    aliases={"id": "local_id", "customer_id": "customer_local_id"},
    money_fields=frozenset({"subtotal", "tax", "discount", "other_charges", "grand_total"}),
)

LINE_POLICY = ModelValidationPolicy(
    writable_fields=frozenset({
        "local_id", "item_local_id", "item_name", "quantity", "unit_price", "per_line_discount",
    }),
    required_on_create=frozenset({"item_name", "quantity"}),
    aliases={"id": "local_id", "item_id": "item_local_id"},
    money_fields=frozenset({"unit_price", "per_line_discount"}),
)


# =============================================================================
# Payload parsing
# =============================================================================

def _parse_envelope(model, payload: dict, policy: ModelValidationPolicy) -> dict:
    patch = validate_payload(model=model, payload=payload, policy=policy, partial=False)
    if patch.get("updated_at") is None:
        # Devices always stamp updated_at; fall back to created_at, then receipt time
        patch["updated_at"] = patch.get("created_at") or utcnow()
    return patch


def parse_item_payload(payload: dict) -> dict:
    patch = _parse_envelope(Item, payload, ITEM_POLICY)
    enforce_rules_item(patch)
    return patch


def parse_customer_payload(payload: dict) -> dict:
    return _parse_envelope(Customer, payload, CUSTOMER_POLICY)


def parse_transaction_payload(payload: dict) -> tuple[dict, list[dict]]:
    """
    Returns (header patch, line patches). Line totals are recomputed so the
    stored lines always satisfy line_total = quantity x unit_price - discount.
    """
    patch = _parse_envelope(Transaction, payload, TRANSACTION_POLICY)
    if patch.get("date") is None:
        patch["date"] = patch.get("created_at") or patch["updated_at"]
    if patch.get("status") is None:
        patch["status"] = "completed"

    raw_lines = payload.get("lines") or []
    if not isinstance(raw_lines, list):
        raise ValidationError("lines must be a list")

    lines = []
    for raw in raw_lines:
        line = validate_payload(model=TransactionLine, payload=raw, policy=LINE_POLICY, partial=False)
        enforce_rules_transaction_line(line)
        lines.append(line)

    enforce_rules_transaction(patch, lines)
    return patch, lines


# =============================================================================
# Result entries
# =============================================================================

def _synced_entry(record, status: str, **extra) -> dict:
    entry = {
        "id": record.local_id,
        "local_id": record.local_id,
        "cloud_id": record.cloud_id,
        "status": status,
        "updated_at": to_utc_z(record.updated_at),
    }
    if isinstance(record, Transaction):
        entry["voucher_number"] = record.voucher_number
        entry["provisional_voucher"] = record.provisional_voucher
    entry.update({k: v for k, v in extra.items() if v})
    return entry


def _conflict_entry(payload, error: str, cloud_id: Optional[str] = None, **extra) -> dict:
    local_id = None
    if isinstance(payload, dict):
        local_id = payload.get("local_id") or payload.get("id")
    entry = {"id": local_id, "local_id": local_id, "error": error}
    if cloud_id:
        entry["cloud_id"] = cloud_id
    entry.update({k: v for k, v in extra.items() if v})
    return entry


# =============================================================================
# Lookups
# =============================================================================

def _find_by_idempotency_key(model, user_id: str, entity_type: str, key: Optional[str]):
    if not key:
        return None
    applied = (
        db.session.query(IdempotencyRecord)
        .filter_by(user_id=user_id, idempotency_key=key)
        .first()
    )
    if applied is None or applied.entity_type != entity_type:
        return None
    return db.session.get(model, applied.entity_id)


def _find_by_local_id(model, user_id: str, local_id: str):
    return db.session.query(model).filter_by(user_id=user_id, local_id=local_id).first()


def _remember_key(user_id: str, entity_type: str, key: Optional[str], record) -> None:
    if not key:
        return
    db.session.flush()
    db.session.add(IdempotencyRecord(
        user_id=user_id,
        idempotency_key=key,
        entity_type=entity_type,
        entity_id=record.id,
    ))


# =============================================================================
# Items / Customers (mutable, last-write-wins)
# =============================================================================

def _apply_mutable(model, entity_type: str, patch: dict, *, user_id: str, company_code: str) -> dict:
    key = patch.get("idempotency_key")

    def _op() -> dict:
        begin_write()
        duplicate = _find_by_idempotency_key(model, user_id, entity_type, key)
        if duplicate is not None:
            entry = _synced_entry(duplicate, "duplicate")
            db.session.rollback()
            return entry

        record = _find_by_local_id(model, user_id, patch["local_id"])
        now = utcnow()

        if record is None:
            record = model(user_id=user_id, company_code=company_code, server_modified_at=now)
            for field, value in patch.items():
                setattr(record, field, value)
            if record.created_at is None:
                record.created_at = patch["updated_at"]
            db.session.add(record)
            _remember_key(user_id, entity_type, key, record)
            db.session.commit()
            return _synced_entry(record, "created")

        if patch["updated_at"] > record.updated_at:
            for field, value in patch.items():
                # local_id and created_at are fixed at first insert
                if field in ("local_id", "created_at"):
                    continue
                setattr(record, field, value)
            record.company_code = record.company_code or company_code
            record.server_modified_at = now
            _remember_key(user_id, entity_type, key, record)
            db.session.commit()
            return _synced_entry(record, "updated")

        if patch["updated_at"] == record.updated_at:
            # Same version already stored (e.g. retry with a lost key)
            entry = _synced_entry(record, "unchanged")
            db.session.rollback()
            return entry

        conflict = {"conflict": True, "cloud_id": record.cloud_id, "server_updated_at": to_utc_z(record.updated_at)}
        db.session.rollback()
        return conflict

    return run_with_retry(_op, retry_on=PUSH_RETRYABLE)


# =============================================================================
# Transactions (append-only)
# =============================================================================

def _decrement_inventory(user_id: str, lines: list[TransactionLine], now: datetime) -> list[dict]:
    """
    Subtract each line's quantity from its item. Never blocks the sale:
    negative stock is allowed and reported back as a warning.
    """
    warnings = []
    for line in lines:
        if not line.item_local_id:
            continue
        item = _find_by_local_id(Item, user_id, line.item_local_id)
        if item is None:
            continue
        item.inventory_qty = round((item.inventory_qty or 0) - line.quantity, 3)
        # Stock changes are a server-side write: other devices must pick them up
        item.updated_at = max(item.updated_at, now)
        item.server_modified_at = now
        if item.inventory_qty < 0:
            warnings.append({
                "item_id": item.local_id,
                "item_name": line.item_name,
                "new_inventory_qty": item.inventory_qty,
                "warning": "Inventory is now negative",
            })
    return warnings


def _apply_transaction(patch: dict, line_patches: list[dict], *, user_id: str, company_code: str) -> dict:
    key = patch.get("idempotency_key")

    def _op() -> dict:
        begin_write()
        duplicate = _find_by_idempotency_key(Transaction, user_id, "transaction", key)
        if duplicate is not None:
            entry = _synced_entry(duplicate, "duplicate")
            db.session.rollback()
            return entry

        existing = _find_by_local_id(Transaction, user_id, patch["local_id"])
        if existing is not None:
            # Accepted once, never rewritten by a later push
            _remember_key(user_id, "transaction", key, existing)
            db.session.commit()
            return _synced_entry(existing, "exists")

        now = utcnow()
        txn = Transaction(user_id=user_id, company_code=company_code, server_modified_at=now)
        for field, value in patch.items():
            setattr(txn, field, value)
        if txn.created_at is None:
            txn.created_at = patch["updated_at"]

        for position, line_patch in enumerate(line_patches):
            line = TransactionLine(position=position, **line_patch)
            txn.lines.append(line)

        warnings = []
        if txn.status == "completed":
            txn.voucher_number = claim_voucher_number(
                user_id,
                company_code,
                voucher_date_str(txn.date),
                requested=patch.get("voucher_number"),
            )
            txn.provisional_voucher = None
            warnings = _decrement_inventory(user_id, txn.lines, now)
        else:
            # Drafts and saved-for-later carts hold no final number yet
            txn.voucher_number = None

        db.session.add(txn)
        _remember_key(user_id, "transaction", key, txn)
        db.session.commit()
        return _synced_entry(txn, "created", inventory_warnings=warnings)

    return run_with_retry(_op, retry_on=PUSH_RETRYABLE)


# =============================================================================
# Batch entry points
# =============================================================================

def _max_batch() -> int:
    return int(current_app.config.get("SYNC_MAX_BATCH", 500))


def push_records(collection: str, records, *, user_id: str, company_code: str) -> dict:
    """
    Apply one collection of a push. Returns {"synced": [...], "conflicts": [...]}.

    Per-record failures become conflicts; only a malformed batch raises.
    """
    if collection not in MODELS:
        raise SyncError(f"Unknown collection: {collection}")
    if records is None:
        records = []
    if not isinstance(records, list):
        raise ValidationError(f"{collection} must be a list")
    if len(records) > _max_batch():
        raise ValidationError(
            f"Too many {collection} in one batch (max {_max_batch()})",
        )

    result = {"synced": [], "conflicts": []}
    for payload in records:
        try:
            if not isinstance(payload, dict):
                raise ValidationError("Invalid record payload")

            if collection == "transactions":
                patch, lines = parse_transaction_payload(payload)
                outcome = _apply_transaction(patch, lines, user_id=user_id, company_code=company_code)
            elif collection == "items":
                patch = parse_item_payload(payload)
                outcome = _apply_mutable(Item, "item", patch, user_id=user_id, company_code=company_code)
            else:
                patch = parse_customer_payload(payload)
                outcome = _apply_mutable(Customer, "customer", patch, user_id=user_id, company_code=company_code)

            if outcome.pop("conflict", False):
                result["conflicts"].append(_conflict_entry(payload, SERVER_NEWER, **outcome))
            else:
                result["synced"].append(outcome)

        except ValidationError as e:
            db.session.rollback()
            result["conflicts"].append(_conflict_entry(payload, str(e)))
        except Exception as e:
            db.session.rollback()
            current_app.logger.exception("Failed to apply pushed %s record", ENTITY_TYPES[collection])
            result["conflicts"].append(_conflict_entry(payload, str(e) or type(e).__name__))

    if result["conflicts"]:
        current_app.logger.info(
            "Push %s for user %s: %d synced, %d conflicts",
            collection, user_id, len(result["synced"]), len(result["conflicts"]),
        )
    return result


def push_changes(payload: dict, *, user_id: str, company_code: str) -> dict:
    """Combined push: {items, customers, transactions} -> per-collection outcomes."""
    server_timestamp = utcnow()
    response = {}
    # Catalog first so a transaction in the same push finds its items for the decrement
    for collection in COLLECTIONS:
        response[collection] = push_records(
            collection,
            payload.get(collection),
            user_id=user_id,
            company_code=company_code,
        )
    response["server_timestamp"] = to_utc_z(server_timestamp)
    return response


# =============================================================================
# Pull
# =============================================================================

def parse_since(value) -> datetime:
    """Pull cursor from the wire; absent means everything (epoch)."""
    if value is None or value == "":
        return EPOCH
    try:
        since = parse_timestamp(value)
    except (TypeError, ValueError):
        raise ValidationError("since must be an ISO-8601 timestamp or epoch milliseconds")
    return since or EPOCH


def list_changes(collection: str, *, user_id: str, since: datetime, overlap_ms: int = 0) -> list:
    model = MODELS[collection]
    cutoff = since
    if overlap_ms and since > EPOCH:
        cutoff = max(EPOCH, since - timedelta(milliseconds=overlap_ms))
    return (
        db.session.query(model)
        .filter(model.user_id == user_id, model.server_modified_at > cutoff)
        .order_by(model.server_modified_at, model.id)
        .all()
    )


def pull_changes(*, user_id: str, since=None) -> dict:
    """
    Everything changed for this user after `since`.

    server_timestamp is taken BEFORE querying: the device stores it as its
    next cursor, so a write landing during this pull is picked up next time.
    """
    since_dt = parse_since(since)
    server_timestamp = utcnow()
    overlap_ms = int(current_app.config.get("SYNC_PULL_OVERLAP_MS", 0))

    response = {}
    for collection in COLLECTIONS:
        records = list_changes(collection, user_id=user_id, since=since_dt, overlap_ms=overlap_ms)
        response[collection] = [r.to_dict() for r in records]
    response["server_timestamp"] = to_utc_z(server_timestamp)
    return response


def sync_status(user_id: str) -> dict:
    counts = {
        collection: db.session.query(MODELS[collection]).filter_by(user_id=user_id).count()
        for collection in COLLECTIONS
    }
    return {"user_id": user_id, "counts": counts, "server_timestamp": to_utc_z(utcnow())}
