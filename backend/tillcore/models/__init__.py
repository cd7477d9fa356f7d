from .catalog import Product
from .transactions import (
    Transaction,
    TransactionLineItem,
    RECEIPT_STATUSES,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    PAYMENT_TYPES,
)

__all__ = [
    'Product',
    'Transaction', 'TransactionLineItem',
    'RECEIPT_STATUSES', 'TRANSACTION_STATUSES', 'TRANSACTION_TYPES', 'PAYMENT_TYPES',
]
