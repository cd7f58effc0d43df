"""Device side of possync: local store, sync engine, vouchers and triggers."""

from .api import ApiError, SyncApi
from .config import ClientConfig
from .context import SyncContext
from .engine import PullResult, PushResult, SyncEngine, SyncResult
from .store import LocalStore
from .triggers import SyncTriggerManager, TriggerResult
from .vouchers import VoucherClient, company_code_for, format_voucher_date

__all__ = [
    'ApiError', 'SyncApi',
    'ClientConfig', 'SyncContext',
    'SyncEngine', 'SyncResult', 'PushResult', 'PullResult',
    'LocalStore',
    'SyncTriggerManager', 'TriggerResult',
    'VoucherClient', 'company_code_for', 'format_voucher_date',
]
