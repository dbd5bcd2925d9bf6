"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Swap Google Sheets for a real database later
2. Use in-memory storage for testing
3. Keep settlement logic decoupled from storage implementation

All methods are coroutines: every call is a round trip to a remote store.
Callers must treat anything they read as a snapshot and re-read before
deciding on a write.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from loanbook.models.loan import (
    Account,
    LoanRecord,
    LoanStatus,
    LoanType,
    ReturnEntry,
)
from loanbook.models.audit import AuditEvent


class LoanStorageInterface(ABC):
    """
    Abstract interface for lend/borrow records and their return history.

    ReturnEntries are owned by their record: deleting a record
    deletes its returns.
    """

    @abstractmethod
    async def save_loan(self, record: LoanRecord) -> bool:
        """
        Save a new record.

        Raises:
            DuplicateError: If a record with this id exists
            StorageError: If save fails
        """
        pass

    @abstractmethod
    async def get_loan_by_id(self, record_id: UUID) -> Optional[LoanRecord]:
        """
        Retrieve a record by its ID.

        Returns:
            The record if found, None otherwise
        """
        pass

    @abstractmethod
    async def update_loan(self, record: LoanRecord) -> bool:
        """
        Replace an existing record.

        Raises:
            NotFoundError: If the record doesn't exist
            StorageError: If update fails
        """
        pass

    @abstractmethod
    async def delete_loan(self, record_id: UUID) -> bool:
        """
        Delete a record and all of its ReturnEntries.

        Returns:
            True if a record was deleted
        """
        pass

    @abstractmethod
    async def list_loans(
        self,
        user_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        loan_type: Optional[LoanType] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[LoanRecord]:
        """
        List records with optional filters, newest first.
        """
        pass

    @abstractmethod
    async def append_return(self, entry: ReturnEntry) -> bool:
        """
        Append a ReturnEntry.

        Raises:
            NotFoundError: If the owning record doesn't exist
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def update_return(self, entry: ReturnEntry) -> bool:
        """
        Replace a stored ReturnEntry, matched by id.

        Only used to attach the ledger transaction id after the mirroring
        transaction was written; the amount of a return never changes.

        Raises:
            NotFoundError: If the entry doesn't exist
            StorageError: If the write fails
        """
        pass

    @abstractmethod
    async def list_returns(self, record_id: UUID) -> list[ReturnEntry]:
        """
        List the returns recorded against a record, most recent first.
        """
        pass


class AccountStorageInterface(ABC):
    """
    Read-only view of the external account store.

    Balances are maintained by the ledger, never by this core.
    """

    @abstractmethod
    async def get_account(self, account_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    async def list_accounts(self, user_id: Optional[str] = None) -> list[Account]:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID, in chronological order.
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity, in chronological order.
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events (newest first).
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
