# Overview: Pytest coverage for voucher numbering; formatting, generate/confirm and concurrent allocation.

import threading

import pytest

from possync import create_app
from possync.extensions import db
from possync.client.models import LocalTransaction
from possync.client.sales import record_sale, save_for_later
from possync.client.vouchers import VoucherClientError, company_code_for, format_voucher_date
from possync.models import Transaction, VoucherSequence
from possync.time_utils import parse_timestamp, utcnow
from possync.services.voucher_service import (
    VoucherError,
    format_voucher_number,
    parse_voucher_number,
    parse_voucher_sequence,
    voucher_date_str,
)

from conftest import auth_headers, device_headers, get_auth_token


USER = "device-user-1"
DAY = "20260115"


def completed_sale(local_id, at="2026-01-15T10:00:00.000Z"):
    return {
        "local_id": local_id,
        "idempotency_key": f"transaction-{local_id}-1000",
        "date": at,
        "updated_at": at,
        "status": "completed",
        "provisional_voucher": f"PROV-{local_id}",
        "lines": [{"item_name": "Rice", "quantity": 1, "unit_price": 60}],
    }


class TestFormatting:
    def test_format_and_parse(self):
        number = format_voucher_number("GUR", DAY, 7)
        assert number == "GUR-20260115-0007"
        assert parse_voucher_number(number) == ("GUR", DAY, 7)
        assert parse_voucher_sequence(number) == 7

    def test_wide_sequences_still_parse(self):
        assert parse_voucher_sequence("GUR-20260115-12345") == 12345

    @pytest.mark.parametrize("value", [None, "", "PROV-123", "GUR-2026-0001", "GUR-20260115-00A1", "nonsense"])
    def test_parse_rejects_non_final(self, value):
        assert parse_voucher_number(value) is None

    def test_date_str_accepts_device_formats(self):
        assert voucher_date_str(DAY) == DAY
        assert voucher_date_str("2026-01-15T23:59:59.000Z") == DAY
        assert voucher_date_str(1768471200000) == DAY

    def test_date_str_rejects_garbage(self):
        with pytest.raises(VoucherError):
            voucher_date_str("20261399")
        with pytest.raises(VoucherError):
            voucher_date_str("someday")


class TestPushAllocation:
    def test_two_devices_same_day_get_distinct_numbers(self, client, db_session):
        """Device A at 10:00, device B at 10:00:01 -> 0001 and 0002."""
        a = client.post("/api/sync/push", json={"transactions": [completed_sale("A-T1", "2026-01-15T10:00:00.000Z")]},
                        headers=device_headers(USER))
        b = client.post("/api/sync/push", json={"transactions": [completed_sale("B-T1", "2026-01-15T10:00:01.000Z")]},
                        headers=device_headers(USER))

        numbers = {
            a.json["transactions"]["synced"][0]["voucher_number"],
            b.json["transactions"]["synced"][0]["voucher_number"],
        }
        assert numbers == {"GUR-20260115-0001", "GUR-20260115-0002"}

    def test_counter_seeded_from_existing_numbers(self, client, db_session):
        """Numbers stored before the counter existed are never reissued."""
        db_session.add(Transaction(
            user_id=USER, local_id="legacy", date=parse_timestamp("2026-01-15T08:00:00Z"),
            updated_at=utcnow(), server_modified_at=utcnow(),
            voucher_number="GUR-20260115-0041",
        ))
        db_session.commit()

        response = client.post("/api/sync/push", json={"transactions": [completed_sale("T1")]},
                               headers=device_headers(USER))
        assert response.json["transactions"]["synced"][0]["voucher_number"] == "GUR-20260115-0042"

    def test_scopes_are_independent(self, client, db_session):
        client.post("/api/sync/push", json={"transactions": [completed_sale("T1")]},
                    headers=device_headers(USER))
        other_day = client.post("/api/sync/push", json={"transactions": [completed_sale("T2", "2026-01-16T09:00:00Z")]},
                                headers=device_headers(USER))
        other_code = client.post("/api/sync/push", json={"transactions": [completed_sale("T3")]},
                                 headers=device_headers(USER, **{"X-Company-Code": "abc"}))
        other_user = client.post("/api/sync/push", json={"transactions": [completed_sale("T1")]},
                                 headers=device_headers("device-user-2"))

        assert other_day.json["transactions"]["synced"][0]["voucher_number"] == "GUR-20260116-0001"
        assert other_code.json["transactions"]["synced"][0]["voucher_number"] == "ABC-20260115-0001"
        assert other_user.json["transactions"]["synced"][0]["voucher_number"] == "GUR-20260115-0001"


class TestVoucherEndpoints:
    def test_init_daily_is_read_only(self, client, db_session):
        body = {"company_code": "GUR", "date": DAY}
        first = client.post("/api/vouchers/init-daily", json=body, headers=device_headers(USER))
        second = client.post("/api/vouchers/init-daily", json=body, headers=device_headers(USER))

        assert first.status_code == 200
        assert first.json["next_sequence"] == 1
        assert first.json["prefix"] == "GUR-20260115-"
        assert second.json["next_sequence"] == 1
        assert db_session.query(VoucherSequence).count() == 0

    def test_generate_then_same_sequence_conflicts(self, client, db_session):
        body = {"provisional_voucher": "PROV-1", "company_code": "GUR", "date": DAY, "sequence": 1}
        first = client.post("/api/vouchers/generate", json=body, headers=device_headers(USER))
        again = client.post("/api/vouchers/generate", json=dict(body, provisional_voucher="PROV-2"),
                            headers=device_headers(USER))

        assert first.status_code == 201
        assert first.json["voucher_number"] == "GUR-20260115-0001"
        assert again.status_code == 409
        assert again.json["details"]["next_sequence"] == 2

        preview = client.post("/api/vouchers/init-daily", json={"company_code": "GUR", "date": DAY},
                              headers=device_headers(USER))
        assert preview.json["next_sequence"] == 2

    def test_generate_number_bound_to_transaction_conflicts(self, client, db_session):
        client.post("/api/sync/push", json={"transactions": [completed_sale("T1")]}, headers=device_headers(USER))
        response = client.post("/api/vouchers/generate",
                               json={"company_code": "GUR", "date": DAY, "sequence": 1},
                               headers=device_headers(USER))
        assert response.status_code == 409

    def test_generate_requires_sequence(self, client, db_session):
        response = client.post("/api/vouchers/generate", json={"company_code": "GUR", "date": DAY},
                               headers=device_headers(USER))
        assert response.status_code == 400

    def test_pushed_transaction_is_not_reissued_by_allocation(self, client, db_session):
        generated = client.post("/api/vouchers/generate",
                                json={"company_code": "GUR", "date": DAY, "sequence": 3},
                                headers=device_headers(USER))
        assert generated.status_code == 201

        pushed = client.post("/api/sync/push", json={"transactions": [completed_sale("T1")]},
                             headers=device_headers(USER))
        assert pushed.json["transactions"]["synced"][0]["voucher_number"] == "GUR-20260115-0004"

    def test_confirm_unknown_transaction_is_404(self, client, db_session):
        response = client.post("/api/vouchers/confirm", json={
            "provisional_voucher": "PROV-x",
            "voucher_number": "GUR-20260115-0001",
            "transaction_id": "no-such-transaction",
        }, headers=device_headers(USER))
        assert response.status_code == 404

    def test_confirm_binds_number(self, client, db_session):
        saved = completed_sale("T1")
        saved["status"] = "saved_for_later"
        client.post("/api/sync/push", json={"transactions": [saved]}, headers=device_headers(USER))

        response = client.post("/api/vouchers/confirm", json={
            "provisional_voucher": "PROV-T1",
            "voucher_number": "GUR-20260115-0009",
            "transaction_id": "T1",
        }, headers=device_headers(USER))

        assert response.status_code == 200
        assert response.json["voucher_number"] == "GUR-20260115-0009"
        assert response.json["provisional_voucher"] is None

        # Same number again is a no-op
        again = client.post("/api/vouchers/confirm", json={
            "voucher_number": "GUR-20260115-0009",
            "transaction_id": response.json["transaction_id"],
        }, headers=device_headers(USER))
        assert again.status_code == 200

    def test_confirm_conflicts(self, client, db_session):
        pushed = client.post("/api/sync/push", json={"transactions": [completed_sale("T1")]},
                             headers=device_headers(USER))
        cloud_id = pushed.json["transactions"]["synced"][0]["cloud_id"]

        rebind = client.post("/api/vouchers/confirm", json={
            "voucher_number": "GUR-20260115-0007",
            "transaction_id": cloud_id,
        }, headers=device_headers(USER))
        assert rebind.status_code == 409
        assert rebind.json["details"]["voucher_number"] == "GUR-20260115-0001"

        saved = completed_sale("T2")
        saved["status"] = "saved_for_later"
        client.post("/api/sync/push", json={"transactions": [saved]}, headers=device_headers(USER))
        stolen = client.post("/api/vouchers/confirm", json={
            "voucher_number": "GUR-20260115-0001",
            "transaction_id": "T2",
        }, headers=device_headers(USER))
        assert stolen.status_code == 409

    def test_confirm_rejects_provisional_number(self, client, db_session):
        response = client.post("/api/vouchers/confirm", json={
            "voucher_number": "PROV-abc",
            "transaction_id": "T1",
        }, headers=device_headers(USER))
        assert response.status_code == 400

    def test_sequences_listing(self, client, db_session):
        client.post("/api/sync/push", json={"transactions": [completed_sale("T1")]}, headers=device_headers(USER))
        response = client.get("/api/vouchers/sequences", headers=device_headers(USER))
        assert response.json["sequences"][0]["next_number"] == 2


class TestCompanyCodeChain:
    def test_token_claim_wins(self, client, shop_user):
        token = get_auth_token(client, "guru@example.com", "Password123")
        response = client.post("/api/vouchers/init-daily", json={"date": DAY},
                               headers={**auth_headers(token), "X-Company-Code": "HDR"})
        assert response.json["company_code"] == "GUR"

    def test_user_row_then_header_then_default(self, client, shop_user):
        by_row = client.post("/api/vouchers/init-daily", json={"date": DAY},
                             headers=device_headers(shop_user.id, **{"X-Company-Code": "HDR"}))
        by_header = client.post("/api/vouchers/init-daily", json={"date": DAY},
                                headers=device_headers("offline-device", **{"X-Company-Code": "hdr"}))
        by_default = client.post("/api/vouchers/init-daily", json={"date": DAY},
                                 headers=device_headers("offline-device"))

        assert by_row.json["company_code"] == "GUR"
        assert by_header.json["company_code"] == "HDR"
        assert by_default.json["company_code"] == "GUR"

    def test_explicit_body_code_scopes_the_call(self, client, db_session):
        response = client.post("/api/vouchers/init-daily", json={"company_code": "xyz", "date": DAY},
                               headers=device_headers(USER))
        assert response.json["prefix"] == "XYZ-20260115-"


class TestDeviceVouchers:
    """VoucherClient against the in-process server."""

    SALE_AT = "2026-01-15T10:00:00.000Z"

    def _sale(self, device):
        txn = record_sale(device.store, device.context,
                          [{"item_name": "Rice", "quantity": 1, "unit_price": 60}], date=self.SALE_AT)
        return txn.local_id

    def _local(self, device, local_id):
        with device.store.read() as session:
            return session.query(LocalTransaction).filter_by(local_id=local_id).one()

    def test_confirm_offline_recorded_sale_then_push_keeps_number(self, make_device, db_session):
        device = make_device(USER)
        local_id = self._sale(device)

        number = device.vouchers.confirm(local_id)

        assert number == "GUR-20260115-0001"
        txn = self._local(device, local_id)
        assert txn.voucher_number == number
        assert txn.provisional_voucher is None

        assert device.engine.push().success
        # Counter moved past the claimed number
        assert device.vouchers.init_daily(DAY) == 2
        db.session.expire_all()
        assert db.session.query(Transaction).filter_by(local_id=local_id).one().voucher_number == number

    def test_confirm_is_idempotent(self, make_device, db_session):
        device = make_device(USER)
        local_id = self._sale(device)
        first = device.vouchers.confirm(local_id)
        assert device.vouchers.confirm(local_id) == first

    def test_confirm_adopts_number_bound_by_push(self, make_device, db_session):
        device = make_device(USER)
        local_id = self._sale(device)
        wire = self._local(device, local_id).to_wire()

        # The push reached the server but only the cloud id made it back
        response = device.api.push([], [], [wire])
        entry = response["transactions"]["synced"][0]
        with device.store.write() as session:
            session.query(LocalTransaction).filter_by(local_id=local_id).one().cloud_id = entry["cloud_id"]

        number = device.vouchers.confirm(local_id)

        assert number == entry["voucher_number"] == "GUR-20260115-0001"
        assert self._local(device, local_id).voucher_number == number

    def test_generate_skips_sequence_taken_by_another_device(self, make_device, db_session):
        first = make_device(USER)
        second = make_device(USER)
        assert first.vouchers.init_daily(DAY) == 1

        # The other till's push takes sequence 1 in the meantime
        second_sale = self._sale(second)
        assert second.engine.push().success
        assert self._local(second, second_sale).voucher_number == "GUR-20260115-0001"

        number = first.vouchers.confirm(self._sale(first))

        assert number == "GUR-20260115-0002"

    def test_unknown_transaction(self, make_device, db_session):
        device = make_device(USER)
        with pytest.raises(VoucherClientError):
            device.vouchers.confirm("missing")

    def test_saved_cart_is_refused(self, make_device, db_session):
        device = make_device(USER)
        cart = save_for_later(device.store, device.context,
                              [{"item_name": "Rice", "quantity": 1, "unit_price": 60}])

        with pytest.raises(VoucherClientError, match="saved_for_later"):
            device.vouchers.confirm(cart.local_id)

        saved = self._local(device, cart.local_id)
        assert saved.voucher_number is None
        assert db_session.query(VoucherSequence).count() == 0

    def test_device_company_code_chain(self, make_device, db_session):
        device = make_device(USER, shop_name="Anand Bakery")
        assert company_code_for(device.store, device.context) == "ANA"

        device.store.set_setting("company_code", "ab1")
        assert company_code_for(device.store, device.context) == "AB1"

        device.context.company_code = "KIR"
        assert company_code_for(device.store, device.context) == "KIR"

        other = make_device("other")
        assert company_code_for(other.store, other.context) == "GUR"

    def test_format_voucher_date(self):
        assert format_voucher_date("20260115") == DAY
        assert format_voucher_date(self.SALE_AT) == DAY
        assert len(format_voucher_date()) == 8


class TestConcurrentAllocation:
    """Real threads against a file database: every allocation must be distinct."""

    WORKERS = 8

    @pytest.fixture
    def file_app(self, tmp_path):
        app = create_app({
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'vouchers.sqlite3'}",
            'JWT_SECRET': 'test-jwt-secret',
        })
        with app.app_context():
            db.create_all()
        yield app
        with app.app_context():
            db.session.remove()
            db.engine.dispose()

    def test_concurrent_pushes_never_share_a_number(self, file_app):
        barrier = threading.Barrier(self.WORKERS)
        results, errors = [], []

        def worker(index):
            test_client = file_app.test_client()
            barrier.wait()
            try:
                response = test_client.post(
                    "/api/sync/push",
                    json={"transactions": [completed_sale(f"T{index}")]},
                    headers=device_headers(USER),
                )
                results.append(response.json["transactions"])
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(self.WORKERS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        conflicts = [c for r in results for c in r["conflicts"]]
        assert conflicts == []
        numbers = [s["voucher_number"] for r in results for s in r["synced"]]
        assert len(numbers) == self.WORKERS
        assert len(set(numbers)) == self.WORKERS
        assert sorted(parse_voucher_sequence(n) for n in numbers) == list(range(1, self.WORKERS + 1))

    def test_concurrent_generate_hands_out_each_sequence_once(self, file_app):
        barrier = threading.Barrier(self.WORKERS)
        statuses = []

        def worker():
            test_client = file_app.test_client()
            barrier.wait()
            response = test_client.post(
                "/api/vouchers/generate",
                json={"company_code": "GUR", "date": DAY, "sequence": 1},
                headers=device_headers(USER),
            )
            statuses.append(response.status_code)

        threads = [threading.Thread(target=worker) for _ in range(self.WORKERS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(statuses) == [201] + [409] * (self.WORKERS - 1)
