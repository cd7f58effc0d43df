import unittest
from datetime import datetime

from possync.company import derive_company_code, normalize_company_code, resolve_company_code
from possync.identity import (
    assign_idempotency_key,
    assign_identity,
    build_idempotency_key,
    generate_provisional_voucher,
    is_provisional_voucher,
    renew_idempotency_key,
)
from possync.time_utils import parse_timestamp, to_epoch_ms, to_utc_z
from possync.validation import round_money


class IdentityTests(unittest.TestCase):
    def test_assign_identity_sets_uuid_once(self):
        record = {}
        first = assign_identity(record)
        self.assertEqual(len(first), 36)
        self.assertEqual(assign_identity(record), first)
        self.assertEqual(record["local_id"], first)

    def test_assign_identity_keeps_existing_local_id(self):
        record = {"local_id": "L1"}
        self.assertEqual(assign_identity(record), "L1")

    def test_idempotency_key_uses_creation_time(self):
        created = datetime(1970, 1, 1, 0, 0, 1)
        record = {"local_id": "L1", "created_at": created}
        key = assign_idempotency_key(record, "item")
        self.assertEqual(key, "item-L1-1000")

    def test_idempotency_key_never_regenerated(self):
        record = {"local_id": "L1", "idempotency_key": "item-L1-1000"}
        self.assertEqual(assign_idempotency_key(record, "item"), "item-L1-1000")

    def test_renew_key_follows_updated_at(self):
        record = {
            "local_id": "L1",
            "idempotency_key": "item-L1-1000",
            "updated_at": datetime(1970, 1, 1, 0, 0, 2),
        }
        self.assertEqual(renew_idempotency_key(record, "item"), "item-L1-2000")
        # A retry of the same edit reproduces the same key
        self.assertEqual(renew_idempotency_key(record, "item"), "item-L1-2000")

    def test_unknown_entity_type_rejected(self):
        with self.assertRaises(ValueError):
            build_idempotency_key("invoice", "L1")

    def test_works_on_objects(self):
        class Row:
            local_id = None
            idempotency_key = None
            created_at = None

        row = Row()
        key = assign_idempotency_key(row, "customer")
        self.assertTrue(row.local_id)
        self.assertTrue(key.startswith(f"customer-{row.local_id}-"))

    def test_provisional_voucher(self):
        voucher = generate_provisional_voucher()
        self.assertTrue(voucher.startswith("PROV-"))
        self.assertTrue(is_provisional_voucher(voucher))
        self.assertFalse(is_provisional_voucher("GUR-20260115-0001"))
        self.assertFalse(is_provisional_voucher(None))


class CompanyCodeTests(unittest.TestCase):
    def test_derive_from_shop_name(self):
        self.assertEqual(derive_company_code("Guru Stores"), "GUR")
        self.assertEqual(derive_company_code("7-Eleven"), "7EL")
        self.assertEqual(derive_company_code("  a.b "), "AB")

    def test_derive_defaults_when_empty(self):
        self.assertEqual(derive_company_code(""), "GUR")
        self.assertEqual(derive_company_code(None), "GUR")
        self.assertEqual(derive_company_code("!!!", default="XYZ"), "XYZ")

    def test_normalize(self):
        self.assertEqual(normalize_company_code(" abc "), "ABC")
        self.assertIsNone(normalize_company_code("--"))

    def test_resolution_chain_first_present_wins(self):
        self.assertEqual(resolve_company_code([None, "", "abc", "XYZ"]), "ABC")

    def test_resolution_chain_is_lazy(self):
        calls = []

        def later():
            calls.append("later")
            return "LAT"

        self.assertEqual(resolve_company_code(["ear", later]), "EAR")
        self.assertEqual(calls, [])
        self.assertEqual(resolve_company_code([None, later]), "LAT")
        self.assertEqual(calls, ["later"])

    def test_resolution_chain_default(self):
        self.assertEqual(resolve_company_code([None, lambda: None]), "GUR")
        self.assertEqual(resolve_company_code([], default="ZZZ"), "ZZZ")


class TimestampTests(unittest.TestCase):
    def test_epoch_ms_and_iso_agree(self):
        from_ms = parse_timestamp(1736935200000)
        from_iso = parse_timestamp("2025-01-15T10:00:00.000Z")
        self.assertEqual(from_ms, from_iso)
        self.assertEqual(to_epoch_ms(from_iso), 1736935200000)

    def test_offset_is_normalized_to_utc(self):
        self.assertEqual(
            parse_timestamp("2025-01-15T15:30:00+05:30"),
            datetime(2025, 1, 15, 10, 0, 0),
        )

    def test_wire_format(self):
        self.assertEqual(to_utc_z(datetime(2025, 1, 15, 10, 0, 0, 123000)), "2025-01-15T10:00:00.123Z")

    def test_invalid_timestamp(self):
        with self.assertRaises(ValueError):
            parse_timestamp(True)
        with self.assertRaises(ValueError):
            parse_timestamp("not a date")


class RoundingTests(unittest.TestCase):
    def test_half_up(self):
        self.assertEqual(round_money(2.675), 2.68)
        self.assertEqual(round_money(0.125), 0.13)
        self.assertEqual(round_money("10"), 10.0)


if __name__ == "__main__":
    unittest.main()
