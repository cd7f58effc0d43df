"""Sync schema: accounts, catalog, transactions, voucher counters, idempotency keys

Revision ID: 20260301_sync_schema
Revises:
Create Date: 2026-03-01
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20260301_sync_schema"
down_revision = None
branch_labels = None
depends_on = None


def _envelope_columns():
    return [
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("company_code", sa.String(16), nullable=True),
        sa.Column("local_id", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(160), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("server_modified_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("company", sa.String(255), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("company_code", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )
    with op.batch_alter_table("users", schema=None) as batch_op:
        batch_op.create_index("ix_users_company_code", ["company_code"], unique=False)

    op.create_table(
        "items",
        *_envelope_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("barcode", sa.String(64), nullable=True),
        sa.Column("sku", sa.String(64), nullable=True),
        sa.Column("price", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit", sa.String(16), nullable=False, server_default="pc"),
        sa.Column("category", sa.String(128), nullable=True),
        sa.Column("inventory_qty", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("recommended", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id", name="pk_items"),
        sa.UniqueConstraint("user_id", "local_id", name="uq_items_user_local_id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("items", schema=None) as batch_op:
        batch_op.create_index("ix_items_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_items_server_modified_at", ["server_modified_at"], unique=False)
        batch_op.create_index("ix_items_user_barcode", ["user_id", "barcode"], unique=False)

    op.create_table(
        "customers",
        *_envelope_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("id", name="pk_customers"),
        sa.UniqueConstraint("user_id", "local_id", name="uq_customers_user_local_id"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("customers", schema=None) as batch_op:
        batch_op.create_index("ix_customers_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_customers_server_modified_at", ["server_modified_at"], unique=False)
        batch_op.create_index("ix_customers_user_phone", ["user_id", "phone"], unique=False)

    op.create_table(
        "transactions",
        *_envelope_columns(),
        sa.Column("customer_local_id", sa.String(64), nullable=True),
        sa.Column("customer_name", sa.String(255), nullable=True),
        sa.Column("customer_mobile", sa.String(32), nullable=True),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("subtotal", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("tax", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("discount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("other_charges", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("grand_total", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("item_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit_count", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("payment_type", sa.String(16), nullable=False, server_default="cash"),
        sa.Column("status", sa.String(16), nullable=False, server_default="completed"),
        sa.Column("voucher_number", sa.String(64), nullable=True),
        sa.Column("provisional_voucher", sa.String(64), nullable=True),
        sa.Column("receipt_path", sa.String(512), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_transactions"),
        sa.UniqueConstraint("user_id", "local_id", name="uq_transactions_user_local_id"),
        sa.UniqueConstraint("user_id", "voucher_number", name="uq_transactions_user_voucher"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("transactions", schema=None) as batch_op:
        batch_op.create_index("ix_transactions_user_id", ["user_id"], unique=False)
        batch_op.create_index("ix_transactions_server_modified_at", ["server_modified_at"], unique=False)
        batch_op.create_index("ix_transactions_user_date", ["user_id", "date"], unique=False)
        batch_op.create_index("ix_transactions_customer_local_id", ["customer_local_id"], unique=False)
        batch_op.create_index("ix_transactions_status", ["status"], unique=False)
        batch_op.create_index("ix_transactions_provisional_voucher", ["provisional_voucher"], unique=False)

    op.create_table(
        "transaction_lines",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("local_id", sa.String(64), nullable=True),
        sa.Column("item_local_id", sa.String(64), nullable=True),
        sa.Column("item_name", sa.String(255), nullable=False),
        sa.Column("quantity", sa.Float(), nullable=False),
        sa.Column("unit_price", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("per_line_discount", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("line_total", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(
            ["transaction_id"], ["transactions.id"],
            name="fk_transaction_lines_transaction_id_transactions",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_transaction_lines"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("transaction_lines", schema=None) as batch_op:
        batch_op.create_index("ix_transaction_lines_transaction_id", ["transaction_id"], unique=False)
        batch_op.create_index("ix_transaction_lines_item_local_id", ["item_local_id"], unique=False)

    op.create_table(
        "voucher_sequences",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("company_code", sa.String(16), nullable=False),
        sa.Column("date_str", sa.String(8), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_voucher_sequences"),
        sa.UniqueConstraint("user_id", "company_code", "date_str", name="uq_voucher_sequences_scope"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("voucher_sequences", schema=None) as batch_op:
        batch_op.create_index("ix_voucher_sequences_user_id", ["user_id"], unique=False)

    op.create_table(
        "idempotency_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("idempotency_key", sa.String(160), nullable=False),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("(CURRENT_TIMESTAMP)"), nullable=False),
        sa.PrimaryKeyConstraint("id", name="pk_idempotency_records"),
        sa.UniqueConstraint("user_id", "idempotency_key", name="uq_idempotency_records_user_key"),
        sqlite_autoincrement=True,
    )
    with op.batch_alter_table("idempotency_records", schema=None) as batch_op:
        batch_op.create_index("ix_idempotency_records_user_id", ["user_id"], unique=False)


def downgrade():
    op.drop_table("idempotency_records")
    op.drop_table("voucher_sequences")
    op.drop_table("transaction_lines")
    op.drop_table("transactions")
    op.drop_table("customers")
    op.drop_table("items")
    op.drop_table("users")
