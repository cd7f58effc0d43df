from .auth import User
from .catalog import Item, Customer
from .sales import Transaction, TransactionLine, PAYMENT_TYPES, TRANSACTION_STATUSES
from .documents import VoucherSequence, IdempotencyRecord

__all__ = [
    'User',
    'Item', 'Customer',
    'Transaction', 'TransactionLine', 'PAYMENT_TYPES', 'TRANSACTION_STATUSES',
    'VoucherSequence', 'IdempotencyRecord',
]
