from __future__ import annotations

from ..extensions import db
from possync.time_utils import to_utc_z


class SyncedMixin:
    """
    Columns shared by every server-side synchronized record.

    TIMESTAMPS:
    - updated_at: the device's logical modification instant. This is the only
      value compared for last-write-wins.
    - server_modified_at: set by the server on every write. Drives the pull
      cursor so device clock skew can never hide a record from a pull.
    """
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    company_code = db.Column(db.String(16), nullable=True)

    # Client-generated cross-device identity
    local_id = db.Column(db.String(64), nullable=False)
    # Key of the last write applied to this row
    idempotency_key = db.Column(db.String(160), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    server_modified_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    @property
    def cloud_id(self) -> str | None:
        return str(self.id) if self.id is not None else None

    def _sync_envelope(self) -> dict:
        return {
            "id": self.cloud_id,
            "cloud_id": self.cloud_id,
            "local_id": self.local_id,
            "user_id": self.user_id,
            "company_code": self.company_code,
            "idempotency_key": self.idempotency_key,
            "created_at": to_utc_z(self.created_at) if self.created_at else None,
            "updated_at": to_utc_z(self.updated_at),
            "server_modified_at": to_utc_z(self.server_modified_at),
        }


class Item(SyncedMixin, db.Model):
    """
    Sellable item. Mutable: last-write-wins by updated_at.

    inventory_qty may go negative: sales are never blocked on stock
    (availability over strict stock enforcement). It is a float because
    weight-based lines decrement fractional quantities.
    """
    __tablename__ = "items"
    __table_args__ = (
        db.UniqueConstraint("user_id", "local_id", name="uq_items_user_local_id"),
        db.Index("ix_items_user_barcode", "user_id", "barcode"),
        {"sqlite_autoincrement": True},
    )

    name = db.Column(db.String(255), nullable=False)
    barcode = db.Column(db.String(64), nullable=True)
    sku = db.Column(db.String(64), nullable=True)
    price = db.Column(db.Float, nullable=False, default=0)
    unit = db.Column(db.String(16), nullable=False, default="pc")
    category = db.Column(db.String(128), nullable=True)
    inventory_qty = db.Column(db.Float, nullable=False, default=0)
    recommended = db.Column(db.Boolean, nullable=False, default=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        data = self._sync_envelope()
        data.update({
            "name": self.name,
            "barcode": self.barcode,
            "sku": self.sku,
            "price": self.price,
            "unit": self.unit,
            "category": self.category,
            "inventory_qty": self.inventory_qty,
            "recommended": self.recommended,
        })
        return data


class Customer(SyncedMixin, db.Model):
    """Customer master data. Mutable: last-write-wins by updated_at."""
    __tablename__ = "customers"
    __table_args__ = (
        db.UniqueConstraint("user_id", "local_id", name="uq_customers_user_local_id"),
        db.Index("ix_customers_user_phone", "user_id", "phone"),
        {"sqlite_autoincrement": True},
    )

    name = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    address = db.Column(db.Text, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        data = self._sync_envelope()
        data.update({
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "address": self.address,
        })
        return data
