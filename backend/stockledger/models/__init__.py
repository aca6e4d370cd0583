from .inventory import ChangeType, Product, InventoryLedgerEntry
from .documents import (
    DocumentType,
    ImportStatus,
    ReturnStatus,
    CheckStatus,
    ReturnType,
    ImportReceipt,
    ReturnReceipt,
    CheckReceipt,
    ReceiptLine,
    DocumentChangeLog,
    DocumentActivityLog,
    DocumentSequence,
)

__all__ = [
    'ChangeType', 'Product', 'InventoryLedgerEntry',
    'DocumentType', 'ImportStatus', 'ReturnStatus', 'CheckStatus', 'ReturnType',
    'ImportReceipt', 'ReturnReceipt', 'CheckReceipt', 'ReceiptLine',
    'DocumentChangeLog', 'DocumentActivityLog', 'DocumentSequence',
]
