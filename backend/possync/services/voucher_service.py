# Overview: Service-layer operations for voucher numbers; atomic daily sequences per company code.

"""
Voucher numbering: {COMPANY_CODE}-{YYYYMMDD}-{SEQ}

WHY: A sale made offline gets a provisional "PROV-..." placeholder; the final
number is handed out here exactly once, either folded into the push of a
completed transaction or through the generate/confirm round trip.

INVARIANT: within (user_id, company_code, date) a sequence is never handed out
twice. The voucher_sequences row is the critical section: every allocation is
an atomic UPDATE next_number = next_number + 1 on that row, and the unique
(user_id, voucher_number) constraint on transactions is the backstop.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..company import DEFAULT_COMPANY_CODE, normalize_company_code
from ..extensions import db
from ..identity import is_provisional_voucher
from ..models import Transaction, VoucherSequence
from ..time_utils import parse_timestamp, utcnow
from .concurrency import begin_write, run_with_retry


class VoucherError(Exception):
    """Raised for voucher operation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class VoucherConflictError(VoucherError):
    """The exact voucher number is already taken (409)."""


class VoucherNotFoundError(VoucherError):
    """The transaction to bind a voucher to does not exist (404)."""


# A duplicate from a racing writer is resolved by replaying the unit
VOUCHER_RETRYABLE = (OperationalError, StaleDataError, IntegrityError)

# Numbers that cannot be allocated before giving up (only reachable with corrupt data)
MAX_ALLOCATION_SKIPS = 1000


def _pad() -> int:
    return int(current_app.config.get("VOUCHER_SEQUENCE_PAD", 4))


def _default_code() -> str:
    return current_app.config.get("DEFAULT_COMPANY_CODE", DEFAULT_COMPANY_CODE)


def format_voucher_number(company_code: str, date_str: str, sequence: int, pad: int = 4) -> str:
    """GUR, 20260115, 7 -> "GUR-20260115-0007"."""
    return f"{company_code}-{date_str}-{int(sequence):0{pad}d}"


def voucher_prefix(company_code: str, date_str: str) -> str:
    return f"{company_code}-{date_str}-"


def parse_voucher_number(voucher_number: Optional[str]) -> Optional[tuple[str, str, int]]:
    """
    Split a final voucher number into (company_code, date_str, sequence).

    Returns None for provisional placeholders and anything not shaped like
    CODE-YYYYMMDD-NNNN.
    """
    if not voucher_number or is_provisional_voucher(voucher_number):
        return None
    parts = voucher_number.rsplit("-", 2)
    if len(parts) != 3:
        return None
    code, date_str, seq = parts
    if not code or len(date_str) != 8 or not date_str.isdigit() or not seq.isdigit():
        return None
    return code, date_str, int(seq)


def parse_voucher_sequence(voucher_number: Optional[str]) -> Optional[int]:
    parsed = parse_voucher_number(voucher_number)
    return parsed[2] if parsed else None


def voucher_date_str(value=None) -> str:
    """
    YYYYMMDD for a transaction date (datetime, ISO string, epoch ms, or
    an already formatted YYYYMMDD). Defaults to today (UTC).
    """
    if value is None or value == "":
        return utcnow().strftime("%Y%m%d")
    if isinstance(value, str) and len(value) == 8 and value.isdigit():
        try:
            datetime.strptime(value, "%Y%m%d")
        except ValueError:
            raise VoucherError("date must be YYYYMMDD or an ISO-8601 date", details={"date": value})
        return value
    try:
        dt = parse_timestamp(value)
    except (TypeError, ValueError):
        raise VoucherError("date must be YYYYMMDD or an ISO-8601 date", details={"date": value})
    return dt.strftime("%Y%m%d")


def _clean_code(company_code) -> str:
    return normalize_company_code(company_code) or _default_code()


def _scan_max_sequence(user_id: str, company_code: str, date_str: str) -> int:
    """Highest sequence already bound to a transaction in this scope (0 if none)."""
    prefix = voucher_prefix(company_code, date_str)
    numbers = (
        db.session.query(Transaction.voucher_number)
        .filter(
            Transaction.user_id == user_id,
            Transaction.voucher_number.like(f"{prefix}%"),
        )
        .all()
    )
    best = 0
    for (number,) in numbers:
        parsed = parse_voucher_number(number)
        if parsed and parsed[0] == company_code and parsed[1] == date_str:
            best = max(best, parsed[2])
    return best


def _scope_filter(user_id: str, company_code: str, date_str: str):
    return (
        VoucherSequence.user_id == user_id,
        VoucherSequence.company_code == company_code,
        VoucherSequence.date_str == date_str,
    )


def _get_sequence_row(user_id: str, company_code: str, date_str: str) -> Optional[VoucherSequence]:
    return (
        db.session.query(VoucherSequence)
        .filter(*_scope_filter(user_id, company_code, date_str))
        .first()
    )


def _ensure_sequence_row(user_id: str, company_code: str, date_str: str) -> None:
    """
    Create the counter row for a scope on first use, seeded from the
    highest number already present (data that predates the counter).

    A concurrent creator makes the flush raise IntegrityError; callers run
    inside run_with_retry with VOUCHER_RETRYABLE, so the unit replays and
    finds the row.
    """
    if _get_sequence_row(user_id, company_code, date_str) is not None:
        return
    seed = _scan_max_sequence(user_id, company_code, date_str) + 1
    db.session.add(VoucherSequence(
        user_id=user_id,
        company_code=company_code,
        date_str=date_str,
        next_number=seed,
    ))
    db.session.flush()


def _current_next_number(user_id: str, company_code: str, date_str: str) -> int:
    return (
        db.session.query(VoucherSequence.next_number)
        .filter(*_scope_filter(user_id, company_code, date_str))
        .scalar()
    )


def is_voucher_taken(user_id: str, voucher_number: str, *, exclude_transaction_id: int | None = None) -> bool:
    query = db.session.query(Transaction.id).filter(
        Transaction.user_id == user_id,
        Transaction.voucher_number == voucher_number,
    )
    if exclude_transaction_id is not None:
        query = query.filter(Transaction.id != exclude_transaction_id)
    return query.first() is not None


def advance_sequence_past(user_id: str, company_code: str, date_str: str, sequence: int) -> None:
    """Move the counter beyond an externally chosen number (never backwards)."""
    _ensure_sequence_row(user_id, company_code, date_str)
    db.session.execute(
        update(VoucherSequence)
        .where(*_scope_filter(user_id, company_code, date_str), VoucherSequence.next_number <= sequence)
        .values(next_number=sequence + 1)
    )


def allocate_voucher_number(user_id: str, company_code: str, date_str: str) -> str:
    """
    Hand out the next voucher number for the scope.

    Runs inside the caller's DB transaction and does NOT commit: the number
    only becomes durable together with the transaction row it is bound to.
    """
    company_code = _clean_code(company_code)
    _ensure_sequence_row(user_id, company_code, date_str)

    stmt = (
        update(VoucherSequence)
        .where(*_scope_filter(user_id, company_code, date_str))
        .values(next_number=VoucherSequence.next_number + 1)
    )
    for _ in range(MAX_ALLOCATION_SKIPS):
        result = db.session.execute(stmt)
        if not result.rowcount:
            raise VoucherError("Voucher sequence row vanished during allocation")
        sequence = _current_next_number(user_id, company_code, date_str) - 1
        number = format_voucher_number(company_code, date_str, sequence, pad=_pad())
        # Skips numbers bound outside the counter (e.g. confirmed from another code path)
        if not is_voucher_taken(user_id, number):
            return number

    raise VoucherError(
        "Could not allocate a free voucher number",
        details={"company_code": company_code, "date": date_str},
    )


def claim_voucher_number(
    user_id: str,
    company_code: str,
    date_str: str,
    requested: Optional[str] = None,
) -> str:
    """
    Voucher for a completed transaction arriving in a push.

    A final number the device already holds (from an earlier confirm) is
    kept when still free; the counter is moved past it so it is never handed
    out again. A taken or malformed request falls back to a fresh number.
    Does NOT commit.
    """
    if requested and not is_provisional_voucher(requested):
        if not is_voucher_taken(user_id, requested):
            parsed = parse_voucher_number(requested)
            if parsed:
                advance_sequence_past(user_id, parsed[0], parsed[1], parsed[2])
            return requested
        current_app.logger.warning(
            "Voucher %s already taken for user %s; allocating a new one", requested, user_id
        )
    return allocate_voucher_number(user_id, company_code, date_str)


def preview_next_sequence(user_id: str, company_code: str, date_str: str) -> dict:
    """
    Read-only preview for init-daily: the sequence the next allocation would
    produce. No allocation side effect.
    """
    company_code = _clean_code(company_code)
    date_str = voucher_date_str(date_str)
    row = _get_sequence_row(user_id, company_code, date_str)
    next_sequence = _scan_max_sequence(user_id, company_code, date_str) + 1
    if row is not None:
        next_sequence = max(next_sequence, row.next_number)
    return {
        "company_code": company_code,
        "date": date_str,
        "prefix": voucher_prefix(company_code, date_str),
        "next_sequence": next_sequence,
        "next_voucher_number": format_voucher_number(company_code, date_str, next_sequence, pad=_pad()),
    }


def reserve_voucher_number(user_id: str, company_code: str, date_str: str, sequence) -> str:
    """
    Generate step: claim one exact sequence for the scope and commit.

    Raises VoucherConflictError when the number is bound to a transaction or
    was already handed out (sequence below the counter).
    """
    company_code = _clean_code(company_code)
    date_str = voucher_date_str(date_str)
    try:
        sequence = int(sequence)
    except (TypeError, ValueError):
        raise VoucherError("sequence must be an integer", details={"sequence": sequence})
    if sequence < 1:
        raise VoucherError("sequence must be >= 1", details={"sequence": sequence})

    number = format_voucher_number(company_code, date_str, sequence, pad=_pad())

    def _op() -> str:
        begin_write()
        if is_voucher_taken(user_id, number):
            raise VoucherConflictError(
                "Voucher number already exists",
                details={"voucher_number": number},
            )
        _ensure_sequence_row(user_id, company_code, date_str)
        result = db.session.execute(
            update(VoucherSequence)
            .where(*_scope_filter(user_id, company_code, date_str), VoucherSequence.next_number <= sequence)
            .values(next_number=sequence + 1)
        )
        if not result.rowcount:
            raise VoucherConflictError(
                "Voucher sequence already allocated",
                details={
                    "voucher_number": number,
                    "next_sequence": _current_next_number(user_id, company_code, date_str),
                },
            )
        db.session.commit()
        return number

    try:
        return run_with_retry(_op, retry_on=VOUCHER_RETRYABLE)
    except VoucherError:
        db.session.rollback()
        raise


def _find_transaction(user_id: str, transaction_id, provisional_voucher: Optional[str]) -> Optional[Transaction]:
    query = db.session.query(Transaction).filter(Transaction.user_id == user_id)
    if transaction_id not in (None, ""):
        ref = str(transaction_id)
        txn = None
        if ref.isdigit():
            txn = query.filter(Transaction.id == int(ref)).first()
        if txn is None:
            txn = query.filter(Transaction.local_id == ref).first()
        if txn is not None:
            return txn
    if provisional_voucher:
        return query.filter(Transaction.provisional_voucher == provisional_voucher).first()
    return None


def confirm_voucher_number(
    user_id: str,
    voucher_number: str,
    *,
    transaction_id=None,
    provisional_voucher: Optional[str] = None,
) -> Transaction:
    """
    Confirm step: bind a final number to a transaction and clear its
    provisional placeholder.

    transaction_id may be the cloud id or the device local_id. Re-confirming
    the same number is a no-op; any other collision is a conflict.
    """
    if not voucher_number or is_provisional_voucher(voucher_number):
        raise VoucherError("voucher_number must be a final voucher number")
    if transaction_id in (None, "") and not provisional_voucher:
        raise VoucherError("transaction_id or provisional_voucher required")

    def _op() -> Transaction:
        begin_write()
        txn = _find_transaction(user_id, transaction_id, provisional_voucher)
        if txn is None:
            raise VoucherNotFoundError(
                "Transaction not found",
                details={"transaction_id": transaction_id, "provisional_voucher": provisional_voucher},
            )
        if txn.voucher_number == voucher_number:
            return txn
        if txn.voucher_number:
            raise VoucherConflictError(
                "Transaction already has a confirmed voucher number",
                details={"voucher_number": txn.voucher_number},
            )
        if is_voucher_taken(user_id, voucher_number, exclude_transaction_id=txn.id):
            raise VoucherConflictError(
                "Voucher number already exists",
                details={"voucher_number": voucher_number},
            )

        parsed = parse_voucher_number(voucher_number)
        if parsed:
            advance_sequence_past(user_id, parsed[0], parsed[1], parsed[2])

        txn.voucher_number = voucher_number
        txn.provisional_voucher = None
        txn.server_modified_at = utcnow()
        db.session.commit()
        return txn

    try:
        return run_with_retry(_op, retry_on=VOUCHER_RETRYABLE)
    except VoucherError:
        db.session.rollback()
        raise


def list_sequences(user_id: Optional[str] = None) -> list[VoucherSequence]:
    query = db.session.query(VoucherSequence)
    if user_id:
        query = query.filter(VoucherSequence.user_id == user_id)
    return query.order_by(VoucherSequence.user_id, VoucherSequence.date_str, VoucherSequence.company_code).all()
