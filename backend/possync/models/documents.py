from __future__ import annotations

from ..extensions import db
from possync.time_utils import to_utc_z


class VoucherSequence(db.Model):
    """
    Per-scope voucher counter.

    One row per (user_id, company_code, date_str). next_number is the next
    sequence to hand out; allocation is an atomic conditional UPDATE on this
    row, so concurrent pushes for the same day can never draw the same number.
    """
    __tablename__ = "voucher_sequences"
    __table_args__ = (
        db.UniqueConstraint("user_id", "company_code", "date_str", name="uq_voucher_sequences_scope"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    company_code = db.Column(db.String(16), nullable=False)
    date_str = db.Column(db.String(8), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "company_code": self.company_code,
            "date": self.date_str,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }


class IdempotencyRecord(db.Model):
    """
    Every idempotency key the server has applied, per user.

    WHY: A device that lost the response to a push resends the same key.
    Finding the key here short-circuits to the record created the first time,
    even if later writes have since replaced the key stored on the row itself.
    """
    __tablename__ = "idempotency_records"
    __table_args__ = (
        db.UniqueConstraint("user_id", "idempotency_key", name="uq_idempotency_records_user_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    idempotency_key = db.Column(db.String(160), nullable=False)
    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
