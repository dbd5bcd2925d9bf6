"""Services package."""

from loanbook.services.ledger import (
    LedgerBridge,
    LedgerWriteError,
    create_with_fresh_id,
    mint_transaction_id,
)
from loanbook.services.storage import (
    AccountStorageInterface,
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LoanStorageInterface,
    NotFoundError,
    StorageError,
)

__all__ = [
    # Ledger
    "LedgerBridge",
    "LedgerWriteError",
    "create_with_fresh_id",
    "mint_transaction_id",
    # Storage
    "AccountStorageInterface",
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "LoanStorageInterface",
    "NotFoundError",
    "StorageError",
]
