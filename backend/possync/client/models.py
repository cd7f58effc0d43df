# backend/possync/client/models.py
"""
Device-side tables (embedded SQLite).

Every synchronized row carries the sync envelope: local_id (cross-device
identity), cloud_id (server id once known), idempotency_key and the
is_synced / sync_status bookkeeping. The integer primary key is internal to
this store and never leaves the device.
"""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

from ..time_utils import to_utc_z


Base = declarative_base()


class LocalSyncedMixin:
    id = Column(Integer, primary_key=True, autoincrement=True)
    local_id = Column(String(64), nullable=False, unique=True)
    cloud_id = Column(String(64), nullable=True, index=True)
    user_id = Column(String(64), nullable=True, index=True)
    idempotency_key = Column(String(160), nullable=True)

    # NULL counts as unsynced (rows written before the column existed)
    is_synced = Column(Boolean, nullable=True, default=False, index=True)
    synced_at = Column(DateTime, nullable=True)
    sync_status = Column(String(16), nullable=False, default="pending")
    sync_error = Column(Text, nullable=True)
    last_sync_attempt = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    def _wire_envelope(self) -> dict:
        return {
            "id": self.local_id,
            "local_id": self.local_id,
            "cloud_id": self.cloud_id,
            "user_id": self.user_id,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class LocalItem(LocalSyncedMixin, Base):
    __tablename__ = "local_items"

    name = Column(String(255), nullable=False)
    barcode = Column(String(64), nullable=True, index=True)
    sku = Column(String(64), nullable=True)
    price = Column(Float, nullable=False, default=0)
    unit = Column(String(16), nullable=False, default="pc")
    category = Column(String(128), nullable=True)
    inventory_qty = Column(Float, nullable=False, default=0)
    recommended = Column(Boolean, nullable=False, default=False)

    # Local-only soft delete
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    DOMAIN_FIELDS = ("name", "barcode", "sku", "price", "unit", "category", "inventory_qty", "recommended")

    def to_wire(self) -> dict:
        data = self._wire_envelope()
        data.update({field: getattr(self, field) for field in self.DOMAIN_FIELDS})
        return data


class LocalCustomer(LocalSyncedMixin, Base):
    __tablename__ = "local_customers"

    name = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True, index=True)
    email = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)

    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    DOMAIN_FIELDS = ("name", "phone", "email", "address")

    def to_wire(self) -> dict:
        data = self._wire_envelope()
        data.update({field: getattr(self, field) for field in self.DOMAIN_FIELDS})
        return data


class LocalTransaction(LocalSyncedMixin, Base):
    __tablename__ = "local_transactions"

    customer_local_id = Column(String(64), nullable=True, index=True)
    customer_name = Column(String(255), nullable=True)
    customer_mobile = Column(String(32), nullable=True)

    date = Column(DateTime, nullable=False, index=True)

    subtotal = Column(Float, nullable=False, default=0)
    tax = Column(Float, nullable=False, default=0)
    discount = Column(Float, nullable=False, default=0)
    other_charges = Column(Float, nullable=False, default=0)
    grand_total = Column(Float, nullable=False, default=0)

    item_count = Column(Integer, nullable=False, default=0)
    unit_count = Column(Float, nullable=False, default=0)

    payment_type = Column(String(16), nullable=False, default="cash")
    status = Column(String(16), nullable=False, default="completed")

    voucher_number = Column(String(64), nullable=True, index=True)
    provisional_voucher = Column(String(64), nullable=True, index=True)
    receipt_path = Column(String(512), nullable=True)

    lines = relationship(
        "LocalTransactionLine",
        back_populates="transaction",
        order_by="LocalTransactionLine.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    HEADER_FIELDS = (
        "customer_name", "customer_mobile",
        "subtotal", "tax", "discount", "other_charges", "grand_total",
        "item_count", "unit_count", "payment_type", "status",
        "voucher_number", "provisional_voucher", "receipt_path",
    )

    def to_wire(self) -> dict:
        data = self._wire_envelope()
        data.update({field: getattr(self, field) for field in self.HEADER_FIELDS})
        data["customer_id"] = self.customer_local_id
        data["date"] = to_utc_z(self.date)
        data["lines"] = [line.to_wire() for line in self.lines]
        return data


class LocalTransactionLine(Base):
    __tablename__ = "local_transaction_lines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(Integer, ForeignKey("local_transactions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    local_id = Column(String(64), nullable=False, unique=True)
    item_local_id = Column(String(64), nullable=True, index=True)
    item_name = Column(String(255), nullable=False)

    quantity = Column(Float, nullable=False)
    unit_price = Column(Float, nullable=False, default=0)
    per_line_discount = Column(Float, nullable=False, default=0)
    line_total = Column(Float, nullable=False, default=0)

    transaction = relationship("LocalTransaction", back_populates="lines")

    def to_wire(self) -> dict:
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


class LocalSetting(Base):
    """Key/value device settings (last_sync_time, company_code, shop_name...)."""
    __tablename__ = "local_settings"
    __table_args__ = (UniqueConstraint("key", name="uq_local_settings_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(64), nullable=False)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=True)


# Collection name on the wire -> local model
COLLECTION_MODELS = {
    "items": LocalItem,
    "customers": LocalCustomer,
    "transactions": LocalTransaction,
}
