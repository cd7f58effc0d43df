# backend/possync/client/api.py
"""HTTP client for the sync server (all routes under /api)."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..time_utils import to_utc_z


logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-2xx response from the sync server."""
    def __init__(self, message: str, status_code: int | None = None, details: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details or {}

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409


class SyncApi:
    """
    Thin wrapper over httpx.Client.

    Pass `client` to reuse a configured httpx.Client (tests hand in one
    bound to the Flask app through httpx.WSGITransport).
    """

    def __init__(self, base_url: str, context, *, timeout: float = 5.0, client: Optional[httpx.Client] = None):
        self.context = context
        self._owns_client = client is None
        self._client = client or httpx.Client(base_url=base_url, timeout=httpx.Timeout(timeout))

    @classmethod
    def from_config(cls, config, context) -> "SyncApi":
        return cls(config.api_url, context, timeout=config.timeout)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _request(self, method: str, path: str, *, json_data: Any = None, params: dict | None = None) -> dict:
        response = self._client.request(
            method,
            path,
            json=json_data,
            params=params,
            headers=self.context.auth_headers(),
        )
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            message = body.get("error") if isinstance(body, dict) else None
            logger.warning("%s %s failed: HTTP %s %s", method, path, response.status_code, message or "")
            raise ApiError(
                message or f"HTTP {response.status_code}",
                status_code=response.status_code,
                details=body.get("details") if isinstance(body, dict) else None,
            )
        return response.json() if response.content else {}

    # ===== Sync =====

    @staticmethod
    def _cursor(since) -> Optional[str]:
        if since is None or isinstance(since, str):
            return since
        return to_utc_z(since)

    def push(self, items: list, customers: list, transactions: list) -> dict:
        return self._request("POST", "/api/sync/push", json_data={
            "items": items,
            "customers": customers,
            "transactions": transactions,
            "user_id": self.context.user_id,
        })

    def pull(self, since) -> dict:
        return self._request("POST", "/api/sync/pull", json_data={
            "since": self._cursor(since),
            "user_id": self.context.user_id,
        })

    def push_collection(self, collection: str, records: list) -> dict:
        return self._request("POST", f"/api/{collection}/batch", json_data={collection: records})

    def list_collection(self, collection: str, since) -> dict:
        return self._request("GET", f"/api/{collection}", params={"since": self._cursor(since)} if since else None)

    # ===== Vouchers =====

    def init_daily(self, company_code: str, date_str: str) -> dict:
        return self._request("POST", "/api/vouchers/init-daily", json_data={
            "company_code": company_code,
            "date": date_str,
            "user_id": self.context.user_id,
        })

    def generate_voucher(self, provisional_voucher: str, company_code: str, date_str: str, sequence: int) -> dict:
        return self._request("POST", "/api/vouchers/generate", json_data={
            "provisional_voucher": provisional_voucher,
            "company_code": company_code,
            "date": date_str,
            "sequence": sequence,
        })

    def confirm_voucher(self, provisional_voucher: str, voucher_number: str, transaction_id: str) -> dict:
        return self._request("POST", "/api/vouchers/confirm", json_data={
            "provisional_voucher": provisional_voucher,
            "voucher_number": voucher_number,
            "transaction_id": transaction_id,
        })

    # ===== Accounts =====

    def signup(self, name: str, email: str, password: str, company: str | None = None) -> dict:
        return self._request("POST", "/api/auth/signup", json_data={
            "name": name, "email": email, "password": password, "company": company,
        })

    def login(self, email: str, password: str) -> dict:
        return self._request("POST", "/api/auth/login", json_data={"email": email, "password": password})

    def health(self) -> dict:
        return self._request("GET", "/health")
