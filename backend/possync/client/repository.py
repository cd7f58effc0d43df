# backend/possync/client/repository.py
"""
Local entity writes.

Every create/update stamps what sync needs BEFORE the write block commits:
local_id, idempotency_key, updated_at, and the record marked pending.
Functions take the Session of an open LocalStore.write() block.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..identity import assign_identity, assign_idempotency_key, renew_idempotency_key
from ..time_utils import utcnow
from ..validation import ValidationError, round_money
from .models import COLLECTION_MODELS, LocalCustomer, LocalItem, LocalTransaction


ITEM_FIELDS = frozenset(LocalItem.DOMAIN_FIELDS)
CUSTOMER_FIELDS = frozenset(LocalCustomer.DOMAIN_FIELDS)


def next_modified_at(previous: Optional[datetime]) -> datetime:
    """
    Now, but strictly after `previous`: two edits inside the same
    millisecond must still order (and key) differently.
    """
    now = utcnow()
    if previous is not None and now <= previous:
        return previous + timedelta(milliseconds=1)
    return now


def mark_pending(record) -> None:
    record.is_synced = False
    record.sync_status = "pending"
    record.sync_error = None


def _check_item(fields: dict) -> dict:
    unknown = set(fields) - ITEM_FIELDS
    if unknown:
        raise ValidationError(f"Unknown item fields: {', '.join(sorted(unknown))}")
    if "name" in fields and not (fields["name"] or "").strip():
        raise ValidationError("name is required")
    if fields.get("price") is not None:
        if fields["price"] < 0:
            raise ValidationError("price must be >= 0")
        fields["price"] = round_money(fields["price"])
    return fields


def _check_customer(fields: dict) -> dict:
    unknown = set(fields) - CUSTOMER_FIELDS
    if unknown:
        raise ValidationError(f"Unknown customer fields: {', '.join(sorted(unknown))}")
    if "name" in fields and not (fields["name"] or "").strip():
        raise ValidationError("name is required")
    return fields


def _create(session: Session, model, entity_type: str, user_id: Optional[str], fields: dict):
    now = utcnow()
    record = model(user_id=user_id, created_at=now, updated_at=now, **fields)
    assign_identity(record)
    assign_idempotency_key(record, entity_type)
    mark_pending(record)
    session.add(record)
    session.flush()
    return record


def _update(record, entity_type: str, changes: dict):
    for field, value in changes.items():
        setattr(record, field, value)
    record.updated_at = next_modified_at(record.updated_at)
    # An edit is a new logical write: a retry key would make the server drop it
    renew_idempotency_key(record, entity_type)
    mark_pending(record)
    return record


def create_item(session: Session, user_id: Optional[str], **fields) -> LocalItem:
    fields = _check_item(fields)
    if not fields.get("name"):
        raise ValidationError("name is required")
    return _create(session, LocalItem, "item", user_id, fields)


def update_item(session: Session, item: LocalItem, **changes) -> LocalItem:
    return _update(item, "item", _check_item(changes))


def create_customer(session: Session, user_id: Optional[str], **fields) -> LocalCustomer:
    fields = _check_customer(fields)
    if not fields.get("name"):
        raise ValidationError("name is required")
    return _create(session, LocalCustomer, "customer", user_id, fields)


def update_customer(session: Session, customer: LocalCustomer, **changes) -> LocalCustomer:
    return _update(customer, "customer", _check_customer(changes))


def soft_delete(session: Session, record) -> None:
    """
    Hide an item/customer locally. Local-only: the row is never pushed
    again and the server copy is left alone. Sync history is kept.
    """
    if not hasattr(record, "is_deleted"):
        raise ValidationError(f"{type(record).__name__} cannot be deleted")
    now = utcnow()
    record.is_deleted = True
    record.deleted_at = now
    record.updated_at = next_modified_at(record.updated_at)


def find_by_local_id(session: Session, model, local_id: Optional[str]):
    if not local_id:
        return None
    return session.query(model).filter_by(local_id=local_id).first()


def find_by_cloud_id(session: Session, model, cloud_id: Optional[str]):
    if not cloud_id:
        return None
    return session.query(model).filter_by(cloud_id=str(cloud_id)).first()


def find_item_by_barcode(session: Session, barcode: str) -> Optional[LocalItem]:
    return (
        session.query(LocalItem)
        .filter(LocalItem.barcode == barcode, LocalItem.is_deleted.is_(False))
        .first()
    )


def unsynced(session: Session, model, user_id: Optional[str] = None) -> list:
    """Rows still waiting for the server (is_synced false or NULL), excluding soft-deleted."""
    query = session.query(model).filter(or_(model.is_synced.is_(False), model.is_synced.is_(None)))
    if hasattr(model, "is_deleted"):
        query = query.filter(model.is_deleted.is_(False))
    if model is LocalTransaction:
        # Drafts stay on the device until completed or saved
        query = query.filter(LocalTransaction.status != "draft")
    if user_id is not None:
        query = query.filter(or_(model.user_id == user_id, model.user_id.is_(None)))
    return query.order_by(model.id).all()


def pending_counts(session: Session, user_id: Optional[str] = None) -> dict:
    return {
        collection: len(unsynced(session, model, user_id))
        for collection, model in COLLECTION_MODELS.items()
    }
