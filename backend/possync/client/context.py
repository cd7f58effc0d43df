# backend/possync/client/context.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class SyncContext:
    """
    Who this device syncs as.

    Passed explicitly to the engine, voucher client and sales helpers so two
    simulated devices (or users) can live in one process.
    """
    user_id: str
    token: Optional[str] = None
    company_code: Optional[str] = None
    shop_name: Optional[str] = None

    def auth_headers(self) -> dict:
        """Bearer token when signed up, else the device's X-User-Id."""
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {"X-User-Id": self.user_id}
