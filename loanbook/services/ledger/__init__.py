"""Ledger bridge package."""

from loanbook.services.ledger.interface import (
    LedgerBridge,
    LedgerWriteError,
)
from loanbook.services.ledger.ids import (
    create_with_fresh_id,
    mint_transaction_id,
)

__all__ = [
    "LedgerBridge",
    "LedgerWriteError",
    "create_with_fresh_id",
    "mint_transaction_id",
]
