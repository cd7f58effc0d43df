from __future__ import annotations

from ..extensions import db
from possync.time_utils import to_utc_z
from .catalog import SyncedMixin


PAYMENT_TYPES = ("cash", "card", "upi", "online", "credit")
TRANSACTION_STATUSES = ("draft", "completed", "saved_for_later")


class Transaction(SyncedMixin, db.Model):
    """
    Sale transaction (receipt header).

    APPEND-ONLY: Once accepted from a device, lines and totals never change.
    Only voucher_number / provisional_voucher and sync metadata may mutate.

    VOUCHER: voucher_number is unique per user and, once set, is final.
    provisional_voucher is the device's offline placeholder ("PROV-<uuid>")
    and is cleared when the final number is bound.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint("user_id", "local_id", name="uq_transactions_user_local_id"),
        db.UniqueConstraint("user_id", "voucher_number", name="uq_transactions_user_voucher"),
        db.Index("ix_transactions_user_date", "user_id", "date"),
        {"sqlite_autoincrement": True},
    )

    # Customer reference by the customer's local_id (nullable: walk-in)
    customer_local_id = db.Column(db.String(64), nullable=True, index=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_mobile = db.Column(db.String(32), nullable=True)

    date = db.Column(db.DateTime(timezone=True), nullable=False)

    # Money, rounded to 2 decimals on write
    subtotal = db.Column(db.Float, nullable=False, default=0)
    tax = db.Column(db.Float, nullable=False, default=0)
    discount = db.Column(db.Float, nullable=False, default=0)
    other_charges = db.Column(db.Float, nullable=False, default=0)
    grand_total = db.Column(db.Float, nullable=False, default=0)

    item_count = db.Column(db.Integer, nullable=False, default=0)
    unit_count = db.Column(db.Float, nullable=False, default=0)

    payment_type = db.Column(db.String(16), nullable=False, default="cash")
    status = db.Column(db.String(16), nullable=False, default="completed", index=True)

    voucher_number = db.Column(db.String(64), nullable=True)
    provisional_voucher = db.Column(db.String(64), nullable=True, index=True)
    receipt_path = db.Column(db.String(512), nullable=True)

    lines = db.relationship(
        "TransactionLine",
        backref="transaction",
        lazy=True,
        order_by="TransactionLine.position",
        cascade="all, delete-orphan",
    )

    def to_dict(self) -> dict:
        data = self._sync_envelope()
        data.update({
            "customer_id": self.customer_local_id,
            "customer_name": self.customer_name,
            "customer_mobile": self.customer_mobile,
            "date": to_utc_z(self.date),
            "subtotal": self.subtotal,
            "tax": self.tax,
            "discount": self.discount,
            "other_charges": self.other_charges,
            "grand_total": self.grand_total,
            "item_count": self.item_count,
            "unit_count": self.unit_count,
            "payment_type": self.payment_type,
            "status": self.status,
            "voucher_number": self.voucher_number,
            "provisional_voucher": self.provisional_voucher,
            "receipt_path": self.receipt_path,
            "lines": [line.to_dict() for line in self.lines],
        })
        return data


class TransactionLine(db.Model):
    """
    One line of a transaction.

    item_name is a snapshot taken at sale time so the line survives
    deletion or renaming of the item.
    """
    __tablename__ = "transaction_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    local_id = db.Column(db.String(64), nullable=True)
    # Item reference by the item's local_id (nullable: free-typed lines)
    item_local_id = db.Column(db.String(64), nullable=True, index=True)
    item_name = db.Column(db.String(255), nullable=False)

    quantity = db.Column(db.Float, nullable=False)
    unit_price = db.Column(db.Float, nullable=False, default=0)
    per_line_discount = db.Column(db.Float, nullable=False, default=0)
    line_total = db.Column(db.Float, nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.local_id,
            "local_id": self.local_id,
            "item_id": self.item_local_id,
            "item_name": self.item_name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "per_line_discount": self.per_line_discount,
            "line_total": self.line_total,
        }
