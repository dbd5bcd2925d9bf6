"""
In-Memory Storage Implementation

Dict-backed implementations of every storage interface and of the
ledger bridge. Used by the test suite and when no remote backend is
configured.

Every read and write goes through a deep copy, so callers see the same
snapshot semantics they would get from a remote store: mutating a
returned model never changes stored state.
"""

from typing import Optional
from uuid import UUID

from loanbook.models.loan import (
    Account,
    LedgerTransaction,
    LoanRecord,
    LoanStatus,
    LoanType,
    ReturnEntry,
)
from loanbook.models.audit import AuditEvent
from loanbook.services.ledger.interface import LedgerBridge
from loanbook.services.storage.interface import (
    AccountStorageInterface,
    AuditStorageInterface,
    DuplicateError,
    LoanStorageInterface,
    NotFoundError,
)


class InMemoryLoanStorage(LoanStorageInterface):
    """Records and returns kept in process memory."""

    def __init__(self):
        self._loans: dict[UUID, LoanRecord] = {}
        self._returns: dict[UUID, list[ReturnEntry]] = {}

    async def save_loan(self, record: LoanRecord) -> bool:
        if record.id in self._loans:
            raise DuplicateError(f"Record already exists: {record.id}")
        self._loans[record.id] = record.model_copy(deep=True)
        self._returns[record.id] = []
        return True

    async def get_loan_by_id(self, record_id: UUID) -> Optional[LoanRecord]:
        record = self._loans.get(record_id)
        return record.model_copy(deep=True) if record else None

    async def update_loan(self, record: LoanRecord) -> bool:
        if record.id not in self._loans:
            raise NotFoundError(f"Record not found: {record.id}")
        self._loans[record.id] = record.model_copy(deep=True)
        return True

    async def delete_loan(self, record_id: UUID) -> bool:
        self._returns.pop(record_id, None)
        return self._loans.pop(record_id, None) is not None

    async def list_loans(
        self,
        user_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        loan_type: Optional[LoanType] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[LoanRecord]:
        records = [
            record for record in self._loans.values()
            if (user_id is None or record.user_id == user_id)
            and (status is None or record.status == status)
            and (loan_type is None or record.type == loan_type)
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[offset:offset + limit]]

    async def append_return(self, entry: ReturnEntry) -> bool:
        if entry.lend_borrow_id not in self._loans:
            raise NotFoundError(f"Record not found: {entry.lend_borrow_id}")
        self._returns[entry.lend_borrow_id].append(entry.model_copy(deep=True))
        return True

    async def update_return(self, entry: ReturnEntry) -> bool:
        entries = self._returns.get(entry.lend_borrow_id, [])
        for index, stored in enumerate(entries):
            if stored.id == entry.id:
                entries[index] = entry.model_copy(deep=True)
                return True
        raise NotFoundError(f"Return not found: {entry.id}")

    async def list_returns(self, record_id: UUID) -> list[ReturnEntry]:
        entries = self._returns.get(record_id, [])
        ordered = sorted(entries, key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in ordered]


class InMemoryAccountStorage(AccountStorageInterface):
    """Accounts seeded up front; read-only afterwards."""

    def __init__(
        self,
        accounts: Optional[list[Account]] = None,
        owners: Optional[dict[str, str]] = None,
    ):
        self._accounts = {a.id: a.model_copy(deep=True) for a in accounts or []}
        # account_id -> user_id, for list_accounts filtering
        self._owners = dict(owners or {})

    def add_account(self, account: Account, user_id: Optional[str] = None) -> None:
        self._accounts[account.id] = account.model_copy(deep=True)
        if user_id:
            self._owners[account.id] = user_id

    async def get_account(self, account_id: str) -> Optional[Account]:
        account = self._accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def list_accounts(self, user_id: Optional[str] = None) -> list[Account]:
        return [
            a.model_copy(deep=True) for a in self._accounts.values()
            if user_id is None or self._owners.get(a.id, user_id) == user_id
        ]


class InMemoryLedgerBridge(LedgerBridge):
    """Ledger transactions kept in process memory, keyed by transaction id."""

    def __init__(self):
        self._transactions: dict[str, LedgerTransaction] = {}

    @property
    def transactions(self) -> list[LedgerTransaction]:
        return [t.model_copy(deep=True) for t in self._transactions.values()]

    async def create_transaction(self, data: LedgerTransaction) -> str:
        if data.transaction_id in self._transactions:
            raise DuplicateError(f"Transaction id already in use: {data.transaction_id}")
        self._transactions[data.transaction_id] = data.model_copy(deep=True)
        return data.transaction_id

    async def update_transaction(self, transaction_id: str, patch: dict) -> bool:
        current = self._transactions.get(transaction_id)
        if current is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        updated = current.model_copy(update=patch, deep=True)
        # Re-validate so a bad patch fails loudly instead of being stored
        self._transactions[transaction_id] = LedgerTransaction.model_validate(
            updated.model_dump()
        )
        return True

    async def delete_transaction(self, transaction_id: str) -> bool:
        return self._transactions.pop(transaction_id, None) is not None

    async def find_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        transaction = self._transactions.get(transaction_id)
        return transaction.model_copy(deep=True) if transaction else None


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit events kept in process memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event.model_copy(deep=True))
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
