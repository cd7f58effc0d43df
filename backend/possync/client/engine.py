# backend/possync/client/engine.py
"""
Device sync engine.

PUSH: unsynced rows go up in combined requests of at most batch_size rows per
collection (the server rejects larger batches). Each request stamps its own
rows and has its outcomes applied in its own write block. An outcome only
lands on a row that still carries the idempotency key that was pushed: a row
edited while the request was in flight keeps its newer state and stays
pending.

PULL: full snapshots of everything the server changed after the cursor,
merged per collection in one write block each. Lookup is cloud_id, then
local_id. Items/Customers: last-write-wins on updated_at (a strictly newer
remote wins). Transactions are append-only: an existing one only adopts its
final voucher number and cloud_id. The cursor moves to the server_timestamp
of the response only after every collection merged.

At most one pass runs at a time; a second caller gets a skipped result.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

import httpx
from sqlalchemy import Boolean, Float, Integer, String, Text

from ..identity import generate_local_id, is_provisional_voucher
from ..time_utils import parse_timestamp, to_utc_z, utcnow
from .api import ApiError
from .models import COLLECTION_MODELS, LocalTransaction, LocalTransactionLine
from .repository import find_by_cloud_id, find_by_local_id, pending_counts, unsynced
from .store import set_setting


logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_time"

# Network-level failures: reported in the result, retried by the next pass
SYNC_NETWORK_ERRORS = (httpx.TransportError, ApiError)


def collection_cursor_key(collection: str) -> str:
    return f"{LAST_SYNC_KEY}:{collection}"


@dataclass
class PushResult:
    pushed: int = 0
    synced: int = 0
    conflicts: int = 0
    errors: list = field(default_factory=list)
    inventory_warnings: list = field(default_factory=list)


@dataclass
class PullResult:
    received: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    server_timestamp: Optional[str] = None


@dataclass
class SyncResult:
    success: bool
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    push: Optional[PushResult] = None
    pull: Optional[PullResult] = None


class MalformedRecord(ValueError):
    """A pulled record that cannot be merged."""


def _coerce_columns(model, values: dict) -> dict:
    """
    Convert pulled values to the local column types. Anything that does not
    convert marks the whole record malformed, before it reaches a flush.
    """
    columns = model.__table__.columns
    coerced = {}
    for name, value in values.items():
        column = columns.get(name)
        if column is None or value is None:
            coerced[name] = value
            continue
        try:
            if isinstance(column.type, Boolean):
                if isinstance(value, bool):
                    coerced[name] = value
                elif value in (0, 1):
                    coerced[name] = bool(value)
                else:
                    raise ValueError(value)
            elif isinstance(column.type, Integer):
                if isinstance(value, bool) or float(value) != int(float(value)):
                    raise ValueError(value)
                coerced[name] = int(float(value))
            elif isinstance(column.type, Float):
                if isinstance(value, bool):
                    raise ValueError(value)
                coerced[name] = float(value)
            elif isinstance(column.type, (String, Text)):
                if isinstance(value, (dict, list)):
                    raise ValueError(value)
                coerced[name] = str(value)
            else:
                coerced[name] = value
        except (TypeError, ValueError, OverflowError):
            raise MalformedRecord(f"invalid {name}: {value!r}")
    return coerced


def _optional_timestamp(raw: dict, name: str):
    try:
        return parse_timestamp(raw.get(name))
    except (TypeError, ValueError):
        raise MalformedRecord(f"invalid {name}")


def _required_timestamp(raw: dict, name: str):
    try:
        value = parse_timestamp(raw.get(name))
    except (TypeError, ValueError):
        raise MalformedRecord(f"invalid {name}")
    if value is None:
        raise MalformedRecord(f"missing {name}")
    return value


def _remote_ids(raw) -> tuple[str, Optional[str]]:
    if not isinstance(raw, dict):
        raise MalformedRecord("record is not an object")
    local_id = raw.get("local_id")
    if not local_id:
        raise MalformedRecord("missing local_id")
    cloud_id = raw.get("cloud_id") or raw.get("id")
    return str(local_id), str(cloud_id) if cloud_id is not None else None


def _mark_synced(record, now) -> None:
    record.is_synced = True
    record.sync_status = "synced"
    record.sync_error = None
    record.synced_at = now


class SyncEngine:
    def __init__(self, store, api, context, *, batch_size: int = 500):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.api = api
        self.context = context
        self.batch_size = batch_size
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, store, api, context, config) -> "SyncEngine":
        return cls(store, api, context, batch_size=config.push_batch_size)

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    # =========================================================================
    # Entry points (guarded)
    # =========================================================================

    def _guarded(self, work) -> SyncResult:
        if not self._lock.acquire(blocking=False):
            logger.info("Sync already in progress; skipping")
            return SyncResult(success=False, skipped=True, reason="Sync in progress")
        result = SyncResult(success=True)
        try:
            work(result)
        except SYNC_NETWORK_ERRORS as e:
            logger.warning("Sync failed: %s", e)
            result.success = False
            result.error = str(e) or type(e).__name__
        finally:
            self._lock.release()
        return result

    def sync(self) -> SyncResult:
        """Push, then pull. The pull never starts before the push finished."""
        def _work(result: SyncResult) -> None:
            result.push = self._push()
            result.pull = self._pull()
        return self._guarded(_work)

    def push(self) -> SyncResult:
        def _work(result: SyncResult) -> None:
            result.push = self._push()
        return self._guarded(_work)

    def pull(self) -> SyncResult:
        def _work(result: SyncResult) -> None:
            result.pull = self._pull()
        return self._guarded(_work)

    def sync_collection(self, collection: str) -> SyncResult:
        """Push then pull one collection through its batch/listing endpoints."""
        if collection not in COLLECTION_MODELS:
            raise ValueError(f"Unknown collection: {collection}")

        def _work(result: SyncResult) -> None:
            result.push = self._push_collection(collection)
            result.pull = self._pull_collection(collection)
        return self._guarded(_work)

    def status(self) -> dict:
        with self.store.read() as session:
            pending = pending_counts(session, self.context.user_id)
        return {
            "is_syncing": self.is_syncing,
            "last_sync_time": self.store.get_setting(LAST_SYNC_KEY),
            "pending": pending,
        }

    # =========================================================================
    # Push
    # =========================================================================

    def _collect(self, collections) -> tuple[dict, dict]:
        """Wire payloads and the idempotency key each pushed row carried."""
        payloads, keys = {}, {}
        with self.store.read() as session:
            for collection in collections:
                rows = unsynced(session, COLLECTION_MODELS[collection], self.context.user_id)
                payloads[collection] = [row.to_wire() for row in rows]
                keys[collection] = {row.local_id: row.idempotency_key for row in rows}
        return payloads, keys

    def _stamp_attempt(self, keys: dict) -> None:
        now = utcnow()
        with self.store.write() as session:
            for collection, pushed in keys.items():
                model = COLLECTION_MODELS[collection]
                for local_id in pushed:
                    record = find_by_local_id(session, model, local_id)
                    if record is not None:
                        record.last_sync_attempt = now

    def _chunk(self, payloads: dict, keys: dict, start: int) -> tuple[dict, dict]:
        """One slice of at most batch_size rows per collection, starting at start."""
        end = start + self.batch_size
        chunk_payloads = {c: rows[start:end] for c, rows in payloads.items()}
        chunk_keys = {
            c: {row["local_id"]: keys[c][row["local_id"]] for row in rows}
            for c, rows in chunk_payloads.items()
        }
        return chunk_payloads, chunk_keys

    def _push(self) -> PushResult:
        payloads, keys = self._collect(COLLECTION_MODELS)
        result = PushResult(pushed=sum(len(p) for p in payloads.values()))
        if not result.pushed:
            return result

        longest = max(len(p) for p in payloads.values())
        for start in range(0, longest, self.batch_size):
            chunk, chunk_keys = self._chunk(payloads, keys, start)
            self._stamp_attempt(chunk_keys)
            response = self.api.push(chunk["items"], chunk["customers"], chunk["transactions"])

            with self.store.write() as session:
                for collection in COLLECTION_MODELS:
                    self._apply_outcomes(
                        session, collection, response.get(collection) or {}, chunk_keys[collection], result,
                    )

        logger.info("Pushed %d records: %d synced, %d conflicts", result.pushed, result.synced, result.conflicts)
        return result

    def _push_collection(self, collection: str) -> PushResult:
        payloads, keys = self._collect((collection,))
        result = PushResult(pushed=len(payloads[collection]))

        for start in range(0, result.pushed, self.batch_size):
            chunk, chunk_keys = self._chunk(payloads, keys, start)
            self._stamp_attempt(chunk_keys)
            response = self.api.push_collection(collection, chunk[collection])

            with self.store.write() as session:
                self._apply_outcomes(session, collection, response, chunk_keys[collection], result)
        return result

    def _apply_outcomes(self, session, collection: str, outcome: dict, pushed_keys: dict, result: PushResult) -> None:
        model = COLLECTION_MODELS[collection]
        now = utcnow()

        for entry in outcome.get("synced") or []:
            record = find_by_local_id(session, model, entry.get("local_id") or entry.get("id"))
            if record is None:
                continue
            if entry.get("cloud_id"):
                # The id mapping holds even when the row changed meanwhile
                record.cloud_id = str(entry["cloud_id"])
            if record.idempotency_key != pushed_keys.get(record.local_id):
                logger.info("%s %s changed during push; left pending", collection, record.local_id)
                continue
            _mark_synced(record, now)
            if model is LocalTransaction and entry.get("voucher_number"):
                record.voucher_number = entry["voucher_number"]
                record.provisional_voucher = None
            for warning in entry.get("inventory_warnings") or []:
                logger.warning("Negative stock for %s: %s", warning.get("item_name"), warning.get("new_inventory_qty"))
                result.inventory_warnings.append(warning)
            result.synced += 1

        for entry in outcome.get("conflicts") or []:
            result.conflicts += 1
            result.errors.append(entry)
            record = find_by_local_id(session, model, entry.get("local_id") or entry.get("id"))
            if record is None:
                continue
            if entry.get("cloud_id"):
                record.cloud_id = str(entry["cloud_id"])
            if record.idempotency_key != pushed_keys.get(record.local_id):
                continue
            record.is_synced = False
            record.sync_status = "error"
            record.sync_error = entry.get("error")

    # =========================================================================
    # Pull
    # =========================================================================

    def _pull(self) -> PullResult:
        since = parse_timestamp(self.store.get_setting(LAST_SYNC_KEY))
        response = self.api.pull(to_utc_z(since))

        result = PullResult(server_timestamp=response.get("server_timestamp"))
        for collection in COLLECTION_MODELS:
            records = response.get(collection) or []
            with self.store.write() as session:
                self._merge_batch(session, collection, records, result)

        if result.server_timestamp:
            self.store.set_setting(LAST_SYNC_KEY, result.server_timestamp)
        logger.info(
            "Pulled %d records: %d inserted, %d updated, %d skipped",
            result.received, result.inserted, result.updated, result.skipped,
        )
        return result

    def _pull_collection(self, collection: str) -> PullResult:
        cursor_key = collection_cursor_key(collection)
        since = parse_timestamp(self.store.get_setting(cursor_key))
        response = self.api.list_collection(collection, to_utc_z(since))

        result = PullResult(server_timestamp=response.get("server_timestamp"))
        with self.store.write() as session:
            self._merge_batch(session, collection, response.get(collection) or [], result)
            if result.server_timestamp:
                set_setting(session, cursor_key, result.server_timestamp)
        return result

    def _merge_batch(self, session, collection: str, records: list, result: PullResult) -> None:
        merge = self._merge_transaction if collection == "transactions" else self._merge_mutable
        model = COLLECTION_MODELS[collection]
        for raw in records:
            result.received += 1
            try:
                outcome = merge(session, model, raw)
            except MalformedRecord as e:
                logger.warning("Skipping malformed %s record: %s", collection, e)
                result.skipped += 1
                continue
            if outcome == "inserted":
                result.inserted += 1
            elif outcome == "updated":
                result.updated += 1

    def _find_local(self, session, model, local_id: str, cloud_id: Optional[str]):
        return find_by_cloud_id(session, model, cloud_id) or find_by_local_id(session, model, local_id)

    def _merge_mutable(self, session, model, raw) -> str:
        local_id, cloud_id = _remote_ids(raw)
        updated_at = _required_timestamp(raw, "updated_at")
        values = _coerce_columns(model, {f: raw[f] for f in model.DOMAIN_FIELDS if f in raw and raw[f] is not None})
        if not values.get("name"):
            raise MalformedRecord("missing name")
        created_at = _optional_timestamp(raw, "created_at")

        now = utcnow()
        record = self._find_local(session, model, local_id, cloud_id)

        if record is None:
            record = model(
                local_id=local_id,
                user_id=raw.get("user_id") or self.context.user_id,
                created_at=created_at or updated_at,
                updated_at=updated_at,
                idempotency_key=raw.get("idempotency_key"),
                **values,
            )
            record.cloud_id = cloud_id
            _mark_synced(record, now)
            session.add(record)
            return "inserted"

        record.cloud_id = record.cloud_id or cloud_id
        if updated_at > record.updated_at:
            for name, value in values.items():
                setattr(record, name, value)
            record.updated_at = updated_at
            record.idempotency_key = raw.get("idempotency_key") or record.idempotency_key
            _mark_synced(record, now)
            return "updated"
        if updated_at == record.updated_at and record.sync_status != "synced":
            # Same version on both sides: the server has this write
            _mark_synced(record, now)
        return "kept"

    def _merge_transaction(self, session, model, raw) -> str:
        local_id, cloud_id = _remote_ids(raw)
        updated_at = _required_timestamp(raw, "updated_at")
        voucher_number = raw.get("voucher_number")
        now = utcnow()

        record = self._find_local(session, model, local_id, cloud_id)
        if record is not None:
            record.cloud_id = record.cloud_id or cloud_id
            changed = False
            if voucher_number and not is_provisional_voucher(voucher_number) and record.voucher_number != voucher_number:
                record.voucher_number = voucher_number
                record.provisional_voucher = None
                changed = True
            if not record.is_synced:
                # The server holds this transaction and never rewrites it
                _mark_synced(record, now)
            return "updated" if changed else "kept"

        raw_lines = raw.get("lines") or []
        if not isinstance(raw_lines, list):
            raise MalformedRecord("lines is not a list")

        header = _coerce_columns(
            LocalTransaction,
            {name: raw[name] for name in LocalTransaction.HEADER_FIELDS if raw.get(name) is not None},
        )
        header.update(_coerce_columns(LocalTransaction, {"customer_local_id": raw.get("customer_id")}))
        lines = []
        for position, raw_line in enumerate(raw_lines):
            if not isinstance(raw_line, dict) or not raw_line.get("item_name"):
                raise MalformedRecord("line without item_name")
            lines.append(LocalTransactionLine(
                position=position,
                **_coerce_columns(LocalTransactionLine, {
                    "local_id": raw_line.get("local_id") or generate_local_id(),
                    "item_local_id": raw_line.get("item_id"),
                    "item_name": raw_line["item_name"],
                    "quantity": raw_line.get("quantity") or 0,
                    "unit_price": raw_line.get("unit_price") or 0,
                    "per_line_discount": raw_line.get("per_line_discount") or 0,
                    "line_total": raw_line.get("line_total") or 0,
                }),
            ))

        record = LocalTransaction(
            local_id=local_id,
            user_id=raw.get("user_id") or self.context.user_id,
            created_at=_optional_timestamp(raw, "created_at") or updated_at,
            updated_at=updated_at,
            date=_optional_timestamp(raw, "date") or updated_at,
            idempotency_key=raw.get("idempotency_key"),
            **header,
        )
        record.cloud_id = cloud_id
        record.lines.extend(lines)

        _mark_synced(record, now)
        session.add(record)
        return "inserted"
