# Overview: Pytest coverage for the device store, local repositories, cart math and sale recording.

from datetime import timedelta

import pytest

from possync.client import ClientConfig, LocalStore, SyncContext
from possync.client.calculations import (
    calculate_grand_total,
    calculate_line_total,
    calculate_tax,
    calculate_transaction_totals,
)
from possync.client.models import LocalItem, LocalTransaction
from possync.client.repository import (
    create_customer,
    create_item,
    find_item_by_barcode,
    next_modified_at,
    pending_counts,
    soft_delete,
    unsynced,
    update_customer,
    update_item,
)
from possync.client.sales import record_sale, save_for_later
from possync.time_utils import utcnow
from possync.validation import ValidationError


@pytest.fixture
def store():
    store = LocalStore("sqlite://")
    yield store
    store.close()


@pytest.fixture
def context():
    return SyncContext(user_id="user-1")


class TestWriteBlocks:
    def test_subscribers_fire_after_commit(self, store):
        seen = []
        store.subscribe(seen.append)

        with store.write() as session:
            create_item(session, "user-1", name="Rice")
            assert seen == []

        assert seen == [frozenset({"local_items"})]

    def test_rolled_back_block_notifies_nobody_and_keeps_nothing(self, store):
        seen = []
        store.subscribe(seen.append)

        with pytest.raises(RuntimeError):
            with store.write() as session:
                create_item(session, "user-1", name="Rice")
                raise RuntimeError("power cut")

        assert seen == []
        with store.read() as session:
            assert session.query(LocalItem).count() == 0

    def test_unsubscribe(self, store):
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        store.set_setting("shop_name", "Guru Stores")
        assert seen == []

    def test_broken_subscriber_does_not_undo_the_write(self, store):
        def broken(changed):
            raise ValueError("listener bug")

        store.subscribe(broken)
        store.set_setting("company_code", "GUR")
        assert store.get_setting("company_code") == "GUR"

    def test_settings_round_trip(self, store):
        assert store.get_setting("last_sync_time") is None
        assert store.get_setting("last_sync_time", "never") == "never"
        store.set_setting("last_sync_time", "2026-01-15T10:00:00.000Z")
        store.set_setting("last_sync_time", "2026-01-16T10:00:00.000Z")
        assert store.get_setting("last_sync_time") == "2026-01-16T10:00:00.000Z"

    def test_file_store_from_config(self, tmp_path):
        config = ClientConfig(local_db=str(tmp_path / "device.sqlite3"))
        first = LocalStore.from_config(config)
        first.set_setting("shop_name", "Guru Stores")
        first.close()

        reopened = LocalStore.from_config(config)
        assert reopened.get_setting("shop_name") == "Guru Stores"
        reopened.close()


class TestRepository:
    def test_create_stamps_sync_envelope(self, store):
        with store.write() as session:
            item = create_item(session, "user-1", name="Rice", price=59.999)

        assert len(item.local_id) == 36
        assert item.idempotency_key.startswith(f"item-{item.local_id}-")
        assert item.is_synced is False
        assert item.sync_status == "pending"
        assert item.price == 60.0

    def test_update_renews_key_and_time(self, store):
        with store.write() as session:
            item = create_item(session, "user-1", name="Rice", price=60)
            item.is_synced = True
            item.sync_status = "synced"
            key, stamp = item.idempotency_key, item.updated_at

        with store.write() as session:
            item = session.query(LocalItem).filter_by(local_id=item.local_id).one()
            update_item(session, item, price=65)

        assert item.updated_at > stamp
        assert item.idempotency_key != key
        assert item.is_synced is False
        assert item.sync_status == "pending"

    def test_next_modified_at_is_strictly_increasing(self):
        future = utcnow() + timedelta(seconds=5)
        assert next_modified_at(future) == future + timedelta(milliseconds=1)
        assert next_modified_at(None) <= utcnow()

    def test_rejects_bad_input(self, store):
        with store.write() as session:
            with pytest.raises(ValidationError):
                create_item(session, "user-1", name="")
            with pytest.raises(ValidationError):
                create_item(session, "user-1", name="Rice", price=-1)
            with pytest.raises(ValidationError):
                create_item(session, "user-1", name="Rice", colour="red")
            with pytest.raises(ValidationError):
                create_customer(session, "user-1", phone="123")

    def test_soft_delete_hides_from_sync_and_lookup(self, store):
        with store.write() as session:
            item = create_item(session, "user-1", name="Rice", barcode="890100")
            soft_delete(session, item)

        with store.read() as session:
            assert unsynced(session, LocalItem) == []
            assert find_item_by_barcode(session, "890100") is None
            row = session.query(LocalItem).one()
            assert row.is_deleted is True
            assert row.deleted_at is not None

    def test_unsynced_includes_null_flag_and_scopes_user(self, store):
        with store.write() as session:
            mine = create_customer(session, "user-1", name="Asha")
            legacy = create_customer(session, None, name="Old")
            create_customer(session, "user-2", name="Other")
            legacy.is_synced = None

        with store.read() as session:
            names = {c.name for c in unsynced(session, type(mine), "user-1")}
        assert names == {"Asha", "Old"}

    def test_update_customer(self, store):
        with store.write() as session:
            customer = create_customer(session, "user-1", name="Asha")
            update_customer(session, customer, phone="98450")
        assert customer.phone == "98450"

    def test_pending_counts(self, store, context):
        with store.write() as session:
            create_item(session, "user-1", name="Rice")
        record_sale(store, context, [{"item_name": "Tea", "quantity": 1, "unit_price": 10}])

        with store.read() as session:
            assert pending_counts(session, "user-1") == {"items": 1, "customers": 0, "transactions": 1}


class TestCalculations:
    def test_line_total(self):
        assert calculate_line_total(3, 19.99) == 59.97
        assert calculate_line_total(0.5, 120, per_line_discount=5) == 55.0

    def test_tax_and_grand_total(self):
        assert calculate_tax(100, 5) == 5.0
        assert calculate_tax(10.01, 5) == 0.5
        assert calculate_grand_total(100, 5, other_charges=10, discount=20) == 95.0

    def test_transaction_totals(self):
        lines = [
            {"line_total": calculate_line_total(2, 60), "quantity": 2},
            {"line_total": calculate_line_total(1.5, 33, 0.5), "quantity": 1.5},
        ]
        totals = calculate_transaction_totals(lines, tax_percent=5, discount=10, other_charges=2.5)

        assert totals["subtotal"] == 169.0
        assert totals["tax"] == 8.45
        assert totals["grand_total"] == 169.95
        assert totals["item_count"] == 2
        assert totals["unit_count"] == 3.5
        assert totals["subtotal"] == round(sum(line["line_total"] for line in lines), 2)


class TestSales:
    def test_record_sale_writes_lines_and_totals_atomically(self, store, context):
        with store.write() as session:
            rice = create_item(session, "user-1", name="Rice", price=60, inventory_qty=5)

        txn = record_sale(store, context, [
            {"item_id": rice.local_id, "quantity": 2},
            {"barcode": "555", "item_name": "Soap", "quantity": 1, "unit_price": 25, "per_line_discount": 5},
        ], payment_type="upi", tax_percent=5)

        with store.read() as session:
            saved = session.query(LocalTransaction).filter_by(local_id=txn.local_id).one()
            assert saved.status == "completed"
            assert saved.provisional_voucher.startswith("PROV-")
            assert saved.voucher_number is None
            assert [line.item_name for line in saved.lines] == ["Rice", "Soap"]
            assert sum(line.line_total for line in saved.lines) == saved.subtotal == 140.0
            assert saved.tax == 7.0
            assert saved.grand_total == 147.0
            # Scanning an unknown barcode created the item on the spot
            assert find_item_by_barcode(session, "555").name == "Soap"
            # Stock only moves on the server
            assert session.query(LocalItem).filter_by(name="Rice").one().inventory_qty == 5

    def test_invalid_cart_writes_nothing(self, store, context):
        with pytest.raises(ValidationError):
            record_sale(store, context, [
                {"item_name": "Tea", "quantity": 1, "unit_price": 10},
                {"item_name": "Bad", "quantity": 0, "unit_price": 10},
            ])
        with pytest.raises(ValidationError):
            record_sale(store, context, [])
        with pytest.raises(ValidationError):
            record_sale(store, context, [{"item_name": "Tea", "quantity": 1, "unit_price": 10}], payment_type="barter")

        with store.read() as session:
            assert session.query(LocalTransaction).count() == 0

    def test_save_for_later_has_no_voucher(self, store, context):
        txn = save_for_later(store, context, [{"item_name": "Tea", "quantity": 1, "unit_price": 10}])
        assert txn.status == "saved_for_later"
        assert txn.provisional_voucher is None
        assert txn.voucher_number is None


class TestClientConfig:
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("POSSYNC_API_URL", "https://sync.example.com")
        monkeypatch.setenv("POSSYNC_TIMEOUT", "2.5")
        monkeypatch.setenv("POSSYNC_LOCAL_DB", ":memory:")
        monkeypatch.setenv("POSSYNC_PUSH_BATCH_SIZE", "200")

        config = ClientConfig.from_env(min_sync_interval=60)

        assert config.api_url == "https://sync.example.com"
        assert config.timeout == 2.5
        assert config.min_sync_interval == 60
        assert config.local_db_url == "sqlite://"
        assert config.push_batch_size == 200

    def test_defaults(self, monkeypatch):
        for name in ("POSSYNC_API_URL", "POSSYNC_TIMEOUT", "POSSYNC_MIN_SYNC_INTERVAL", "POSSYNC_LOCAL_DB",
                     "POSSYNC_PUSH_BATCH_SIZE"):
            monkeypatch.delenv(name, raising=False)

        config = ClientConfig.from_env()

        assert config.timeout == 5.0
        assert config.min_sync_interval == 3600.0
        assert config.local_db_url == "sqlite:///possync-local.sqlite3"
        assert config.push_batch_size == 500
