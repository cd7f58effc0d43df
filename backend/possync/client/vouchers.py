# backend/possync/client/vouchers.py
"""
Client half of voucher numbering.

A sale is stamped with a provisional "PROV-..." placeholder when it is
recorded. When online, confirm() swaps it for a final
{COMPANY_CODE}-{YYYYMMDD}-{SEQ} number: preview the next sequence, claim it
(advancing on 409), bind it on the server if the transaction is already
there, then bind it locally. Offline sales get their final number from the
push instead.
"""

from __future__ import annotations

import logging
from datetime import date as date_type, datetime
from typing import Optional

from ..company import derive_company_code, normalize_company_code, resolve_company_code
from ..identity import is_provisional_voucher
from ..time_utils import parse_timestamp, utcnow
from .api import ApiError
from .models import LocalTransaction
from .repository import find_by_local_id


logger = logging.getLogger(__name__)

# Generate attempts before giving up on a busy sequence
MAX_GENERATE_ATTEMPTS = 10

COMPANY_CODE_KEY = "company_code"
SHOP_NAME_KEY = "shop_name"


class VoucherClientError(Exception):
    pass


def format_voucher_date(value=None) -> str:
    """YYYYMMDD for a date, datetime, ISO string or epoch ms. Defaults to today (UTC)."""
    if value is None:
        return utcnow().strftime("%Y%m%d")
    if isinstance(value, date_type) and not isinstance(value, datetime):
        return value.strftime("%Y%m%d")
    if isinstance(value, str) and len(value) == 8 and value.isdigit():
        return value
    return parse_timestamp(value).strftime("%Y%m%d")


def company_code_for(store, context) -> str:
    """
    Resolve the device's company code, first present source wins:
    context, stored setting, derived from the shop name, default.
    """
    def _from_shop_name() -> Optional[str]:
        shop_name = context.shop_name or store.get_setting(SHOP_NAME_KEY)
        return derive_company_code(shop_name) if shop_name else None

    return resolve_company_code([
        context.company_code,
        lambda: store.get_setting(COMPANY_CODE_KEY),
        _from_shop_name,
    ])


class VoucherClient:
    def __init__(self, store, api, context):
        self.store = store
        self.api = api
        self.context = context
        # (company_code, date) -> next sequence to try
        self._next_sequence: dict[tuple[str, str], int] = {}

    def init_daily(self, date=None, company_code: Optional[str] = None) -> int:
        """Fetch the next sequence for the day from the server and cache it."""
        code = normalize_company_code(company_code) or company_code_for(self.store, self.context)
        date_str = format_voucher_date(date)
        preview = self.api.init_daily(code, date_str)
        sequence = int(preview["next_sequence"])
        self._next_sequence[(code, date_str)] = sequence
        return sequence

    def _generate(self, provisional: str, code: str, date_str: str) -> str:
        key = (code, date_str)
        if key not in self._next_sequence:
            self.init_daily(date_str, code)

        for _ in range(MAX_GENERATE_ATTEMPTS):
            sequence = self._next_sequence[key]
            try:
                response = self.api.generate_voucher(provisional, code, date_str, sequence)
            except ApiError as e:
                if not e.is_conflict:
                    raise
                # Another device took it; the server tells us where the counter is
                self._next_sequence[key] = max(sequence + 1, int(e.details.get("next_sequence") or 0))
                logger.info("Voucher sequence %d taken for %s-%s; retrying", sequence, code, date_str)
                continue
            self._next_sequence[key] = sequence + 1
            return response["voucher_number"]

        raise VoucherClientError(f"No free voucher number for {code}-{date_str} after {MAX_GENERATE_ATTEMPTS} attempts")

    def confirm(self, transaction_local_id: str) -> str:
        """
        Give a recorded sale its final voucher number. Returns the number.

        Idempotent: a transaction that already holds a final number keeps it.
        Carts saved for later have no voucher and are refused.
        """
        with self.store.read() as session:
            txn = find_by_local_id(session, LocalTransaction, transaction_local_id)
            if txn is None:
                raise VoucherClientError(f"Unknown transaction {transaction_local_id}")
            if txn.voucher_number and not is_provisional_voucher(txn.voucher_number):
                return txn.voucher_number
            if txn.status != "completed":
                raise VoucherClientError(f"Transaction {transaction_local_id} is {txn.status}, not completed")
            provisional = txn.provisional_voucher
            cloud_id = txn.cloud_id
            txn_date = txn.date

        code = company_code_for(self.store, self.context)
        number = self._generate(provisional, code, format_voucher_date(txn_date))

        if cloud_id:
            try:
                confirmed = self.api.confirm_voucher(provisional, number, cloud_id)
                number = confirmed["voucher_number"]
            except ApiError as e:
                if not e.is_conflict or e.details.get("voucher_number") in (None, number):
                    raise
                # The push already bound a number; the server copy is final
                number = e.details["voucher_number"]

        with self.store.write() as session:
            txn = find_by_local_id(session, LocalTransaction, transaction_local_id)
            txn.voucher_number = number
            txn.provisional_voucher = None

        logger.info("Transaction %s confirmed as %s", transaction_local_id, number)
        return number
