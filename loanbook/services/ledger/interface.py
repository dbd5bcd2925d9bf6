"""
Ledger Bridge Interface

The account ledger is an external subsystem. This core only ever
creates, updates, finds and deletes single transactions in it, keyed by
a short generated id (e.g. LB004211).

DESIGN DECISION: The bridge persists exactly what it is given.
Descriptions, categories, tags and transaction types are decided by the
settlement engine and the record service, never by a bridge implementation.
"""

from abc import ABC, abstractmethod
from typing import Optional

from loanbook.models.loan import LedgerTransaction, SettlementStep


class LedgerBridge(ABC):
    """
    Abstract interface to the external account-transaction store.

    Implementations raise DuplicateError (from the storage package) when a
    transaction id is already taken; id uniqueness is the store's job.
    """

    @abstractmethod
    async def create_transaction(self, data: LedgerTransaction) -> str:
        """
        Persist a new transaction.

        Returns:
            The transaction id

        Raises:
            DuplicateError: If the id is already in use
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def update_transaction(self, transaction_id: str, patch: dict) -> bool:
        """
        Apply a partial update to an existing transaction.

        Raises:
            NotFoundError: If no such transaction exists
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def delete_transaction(self, transaction_id: str) -> bool:
        """
        Delete a transaction.

        Returns:
            True if a transaction was deleted, False if none existed
        """
        pass

    @abstractmethod
    async def find_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        pass


class LedgerWriteError(Exception):
    """
    A collaborator write failed part way through a command sequence.

    The operation is left partially applied: every step in
    `completed_steps` stays written. Retrying is safe because remaining
    balances are re-validated against fresh history on every attempt.
    """

    def __init__(
        self,
        message: str,
        failed_step: SettlementStep,
        completed_steps: Optional[list[SettlementStep]] = None,
    ):
        self.failed_step = failed_step
        self.completed_steps = list(completed_steps or [])
        super().__init__(message)

    @property
    def is_incomplete(self) -> bool:
        """True when at least one earlier step was written."""
        return bool(self.completed_steps)
