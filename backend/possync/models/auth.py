from __future__ import annotations

import uuid

from ..extensions import db
from possync.time_utils import to_utc_z


class User(db.Model):
    """
    Shop owner account (the sync tenant).

    MULTI-TENANT: Every synchronized record carries user_id. The id is a
    string so records from devices that registered offline (identified only
    by the X-User-Id header) share the same column type as signed-up users.

    COMPANY CODE: Derived once from the shop name at signup and stable
    thereafter; it prefixes every voucher number.
    """
    __tablename__ = "users"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_users_email"),
        db.Index("ix_users_company_code", "company_code"),
    )

    id = db.Column(db.String(64), primary_key=True, default=lambda: str(uuid.uuid4()))

    name = db.Column(db.String(128), nullable=False)
    email = db.Column(db.String(255), nullable=False)

    # Bcrypt hashed password
    password_hash = db.Column(db.String(255), nullable=False)

    # Shop profile
    company = db.Column(db.String(255), nullable=True)
    location = db.Column(db.String(255), nullable=True)
    company_code = db.Column(db.String(16), nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "company": self.company,
            "location": self.location,
            "company_code": self.company_code,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "last_login_at": to_utc_z(self.last_login_at) if self.last_login_at else None,
        }
