# Overview: Client-generated identity and idempotency keys for synchronized records.

"""
Identity & Idempotency

WHY: Every record needs a stable cross-device identity before it can take part
in sync. The store's internal row id is never used for that; local_id is.

RULES:
- local_id: UUID4 string, assigned once at first local creation, never reassigned.
- idempotency_key: "{entity_type}-{local_id}-{ms}", assigned once per logical
  write. Retries of the same write resend the same key; an edit of a mutable
  record is a new logical write and gets a new key (renew_idempotency_key).

Pure functions: they only read and set attributes on the record passed in.
Records may be ORM objects or plain dicts.
"""

from __future__ import annotations

import uuid
from typing import Any

from .time_utils import to_epoch_ms, utcnow


ENTITY_TYPES = ("item", "customer", "transaction", "transaction_line")
PROVISIONAL_PREFIX = "PROV-"


def get_field(record: Any, field: str):
    if isinstance(record, dict):
        return record.get(field)
    return getattr(record, field, None)


def set_field(record: Any, field: str, value) -> None:
    if isinstance(record, dict):
        record[field] = value
    else:
        setattr(record, field, value)


def generate_local_id() -> str:
    return str(uuid.uuid4())


def assign_identity(record: Any) -> str:
    """Give the record a local_id if it has none. Returns the local_id."""
    local_id = get_field(record, "local_id")
    if not local_id:
        local_id = generate_local_id()
        set_field(record, "local_id", local_id)
    return local_id


def build_idempotency_key(entity_type: str, local_id: str, at=None) -> str:
    if entity_type not in ENTITY_TYPES:
        raise ValueError(f"Unknown entity type: {entity_type}")
    if not local_id:
        raise ValueError("local_id is required to build an idempotency key")
    return f"{entity_type}-{local_id}-{to_epoch_ms(at or utcnow())}"


def assign_idempotency_key(record: Any, entity_type: str) -> str:
    """
    Give the record an idempotency key if it has none. Returns the key.

    The timestamp component is the record's created_at when present so the
    key is reproducible from the record itself.
    """
    key = get_field(record, "idempotency_key")
    if key:
        return key
    local_id = assign_identity(record)
    key = build_idempotency_key(entity_type, local_id, get_field(record, "created_at"))
    set_field(record, "idempotency_key", key)
    return key


def renew_idempotency_key(record: Any, entity_type: str) -> str:
    """
    New key for a new logical write of a mutable record (Item/Customer edit).

    Derived from updated_at, so two edits never share a key and a retry of
    one edit (same updated_at) reproduces it.
    """
    local_id = assign_identity(record)
    key = build_idempotency_key(entity_type, local_id, get_field(record, "updated_at"))
    set_field(record, "idempotency_key", key)
    return key


def generate_provisional_voucher() -> str:
    return f"{PROVISIONAL_PREFIX}{uuid.uuid4()}"


def is_provisional_voucher(value: str | None) -> bool:
    return bool(value) and value.startswith(PROVISIONAL_PREFIX)
