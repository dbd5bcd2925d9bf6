"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the remote backend because:
1. Users can view their loans and repayments directly in Sheets
2. No database setup required
3. Easy to export/migrate later

TRADEOFFS:
- No transactions across sheets (the settlement engine documents
  its write order and partial-failure contract instead)
- Limited query capabilities (we filter in Python)

The implementation follows the abstract interfaces, so the settlement
logic never knows it is talking to a spreadsheet.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import gspread
from gspread.utils import rowcol_to_a1
import structlog
from google.oauth2.service_account import Credentials
from tenacity import Retrying, retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from loanbook.config import get_settings
from loanbook.models.loan import (
    Account,
    LedgerTransaction,
    LoanRecord,
    LoanStatus,
    LoanType,
    ReturnEntry,
    TransactionType,
)
from loanbook.models.audit import AuditEvent, AuditEventType, AuditSeverity
from loanbook.services.ledger.interface import LedgerBridge
from loanbook.services.storage.interface import (
    AccountStorageInterface,
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LoanStorageInterface,
    NotFoundError,
    StorageError,
)


logger = structlog.get_logger(__name__)


LOAN_COLUMNS = [
    "id",
    "user_id",
    "type",
    "person_name",
    "amount",
    "currency",
    "due_date",
    "status",
    "account_id",
    "affect_account_balance",
    "transaction_id",
    "partial_return_amount",
    "partial_return_date",
    "notes",
    "created_at",
    "updated_at",
]

RETURN_COLUMNS = [
    "id",
    "lend_borrow_id",
    "amount",
    "return_date",
    "account_id",
    "created_at",
    "transaction_id",
]

TRANSACTION_COLUMNS = [
    "transaction_id",
    "user_id",
    "account_id",
    "type",
    "amount",
    "description",
    "category",
    "date",
    "tags_json",
]

ACCOUNT_COLUMNS = [
    "id",
    "user_id",
    "name",
    "currency",
    "calculated_balance",
    "is_active",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]


# Retry transient backend failures, but never a logical rejection
write_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_not_exception_type((NotFoundError, DuplicateError)),
    reraise=True,
)


def _cell(row: list, index: int, default: str = "") -> str:
    """Read a cell, tolerating short rows."""
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


def _optional_date(value: str) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def get_worksheet(self, title: str, columns: list[str], rows: int = 1000) -> gspread.Worksheet:
        """Get or create a worksheet with a header row."""
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_loans_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.loans_sheet_name, LOAN_COLUMNS)

    def get_returns_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.returns_sheet_name, RETURN_COLUMNS)

    def get_transactions_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.transactions_sheet_name, TRANSACTION_COLUMNS)

    def get_accounts_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.accounts_sheet_name, ACCOUNT_COLUMNS)

    def get_audit_sheet(self) -> gspread.Worksheet:
        return self.get_worksheet(self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000)


def _find_row_index(sheet: gspread.Worksheet, key: str) -> Optional[int]:
    """1-based sheet row index of the row whose first cell equals key."""
    for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
        if row and row[0] == key:
            return idx
    return None


def _already_appended(sheet: gspread.Worksheet, values: list) -> bool:
    """True when a row with the same key already holds exactly these values."""
    expected = [str(v) for v in values]
    for row in sheet.get_all_values()[1:]:
        if row and row[0] == expected[0]:
            return row[:len(expected)] == expected
    return False


def _append_once(sheet: gspread.Worksheet, values: list) -> None:
    """
    Append a row, retrying transient failures.

    An append can fail after the row reached the sheet, so every retry
    first looks for the row and stops if it is already there. Duplicate
    ids must be checked by the caller before this runs.
    """
    for attempt in Retrying(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1 and _already_appended(sheet, values):
                return
            sheet.append_row(values, value_input_option="RAW")


def _replace_row(sheet: gspread.Worksheet, idx: int, values: list) -> None:
    # Whole row in a single API call
    end_cell = rowcol_to_a1(idx, len(values))
    sheet.update(range_name=f"A{idx}:{end_cell}", values=[values], value_input_option="RAW")


class GoogleSheetsLoanStorage(LoanStorageInterface):
    """
    Google Sheets implementation of record and return storage.

    One record per row in the loans sheet, one return per row in the
    returns sheet. Returns are deleted row by row when their record goes.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _loan_to_row(self, record: LoanRecord) -> list:
        """Convert a LoanRecord to a spreadsheet row."""
        return [
            str(record.id),
            record.user_id,
            record.type.value,
            record.person_name,
            str(record.amount),
            record.currency,
            record.due_date.isoformat() if record.due_date else "",
            record.status.value,
            record.account_id or "",
            str(record.affect_account_balance),
            record.transaction_id or "",
            str(record.partial_return_amount),
            record.partial_return_date.isoformat() if record.partial_return_date else "",
            record.notes or "",
            record.created_at.isoformat(),
            record.updated_at.isoformat(),
        ]

    def _row_to_loan(self, row: list) -> LoanRecord:
        """Convert a spreadsheet row to a LoanRecord."""
        return LoanRecord(
            id=UUID(_cell(row, 0)),
            user_id=_cell(row, 1),
            type=LoanType(_cell(row, 2)),
            person_name=_cell(row, 3),
            amount=Decimal(_cell(row, 4)),
            currency=_cell(row, 5),
            due_date=_optional_date(_cell(row, 6)),
            status=LoanStatus(_cell(row, 7, LoanStatus.ACTIVE.value)),
            account_id=_cell(row, 8) or None,
            affect_account_balance=_cell(row, 9).lower() == "true",
            transaction_id=_cell(row, 10) or None,
            partial_return_amount=Decimal(_cell(row, 11, "0")),
            partial_return_date=_optional_date(_cell(row, 12)),
            notes=_cell(row, 13) or None,
            created_at=datetime.fromisoformat(_cell(row, 14)),
            updated_at=datetime.fromisoformat(_cell(row, 15)),
        )

    def _return_to_row(self, entry: ReturnEntry) -> list:
        return [
            str(entry.id),
            str(entry.lend_borrow_id),
            str(entry.amount),
            entry.return_date.isoformat(),
            entry.account_id or "",
            entry.created_at.isoformat(),
            entry.transaction_id or "",
        ]

    def _row_to_return(self, row: list) -> ReturnEntry:
        return ReturnEntry(
            id=UUID(_cell(row, 0)),
            lend_borrow_id=UUID(_cell(row, 1)),
            amount=Decimal(_cell(row, 2)),
            return_date=date.fromisoformat(_cell(row, 3)),
            account_id=_cell(row, 4) or None,
            created_at=datetime.fromisoformat(_cell(row, 5)),
            transaction_id=_cell(row, 6) or None,
        )

    async def save_loan(self, record: LoanRecord) -> bool:
        """Save a new record to Google Sheets."""
        try:
            sheet = self._client.get_loans_sheet()
            if _find_row_index(sheet, str(record.id)) is not None:
                raise DuplicateError(f"Record already exists: {record.id}")
            _append_once(sheet, self._loan_to_row(record))
            return True
        except DuplicateError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save record: {e}") from e

    async def get_loan_by_id(self, record_id: UUID) -> Optional[LoanRecord]:
        try:
            sheet = self._client.get_loans_sheet()
            for row in sheet.get_all_values()[1:]:
                if row and row[0] == str(record_id):
                    return self._row_to_loan(row)
            return None
        except Exception as e:
            raise StorageError(f"Failed to get record: {e}") from e

    @write_retry
    async def update_loan(self, record: LoanRecord) -> bool:
        try:
            sheet = self._client.get_loans_sheet()
            idx = _find_row_index(sheet, str(record.id))
            if idx is None:
                raise NotFoundError(f"Record not found: {record.id}")
            _replace_row(sheet, idx, self._loan_to_row(record))
            return True
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update record: {e}") from e

    @write_retry
    async def delete_loan(self, record_id: UUID) -> bool:
        try:
            returns_sheet = self._client.get_returns_sheet()
            rows = returns_sheet.get_all_values()
            # Delete bottom-up so earlier indices stay valid
            owned = [
                idx for idx, row in enumerate(rows[1:], start=2)
                if len(row) > 1 and row[1] == str(record_id)
            ]
            for idx in reversed(owned):
                returns_sheet.delete_rows(idx)

            sheet = self._client.get_loans_sheet()
            idx = _find_row_index(sheet, str(record_id))
            if idx is None:
                return False
            sheet.delete_rows(idx)
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete record: {e}") from e

    async def list_loans(
        self,
        user_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        loan_type: Optional[LoanType] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> list[LoanRecord]:
        try:
            sheet = self._client.get_loans_sheet()
            all_rows = sheet.get_all_values()[1:]  # Skip header
        except Exception as e:
            raise StorageError(f"Failed to list records: {e}") from e

        records = []
        for row in all_rows:
            if not row or not row[0]:
                continue
            try:
                record = self._row_to_loan(row)
            except (ValueError, ArithmeticError) as e:
                logger.warning("malformed_loan_row", row_id=row[0], error=str(e))
                continue

            if user_id and record.user_id != user_id:
                continue
            if status and record.status != status:
                continue
            if loan_type and record.type != loan_type:
                continue
            records.append(record)

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[offset:offset + limit]

    async def append_return(self, entry: ReturnEntry) -> bool:
        try:
            if _find_row_index(self._client.get_loans_sheet(), str(entry.lend_borrow_id)) is None:
                raise NotFoundError(f"Record not found: {entry.lend_borrow_id}")
            sheet = self._client.get_returns_sheet()
            _append_once(sheet, self._return_to_row(entry))
            return True
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save return: {e}") from e

    @write_retry
    async def update_return(self, entry: ReturnEntry) -> bool:
        try:
            sheet = self._client.get_returns_sheet()
            idx = _find_row_index(sheet, str(entry.id))
            if idx is None:
                raise NotFoundError(f"Return not found: {entry.id}")
            _replace_row(sheet, idx, self._return_to_row(entry))
            return True
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update return: {e}") from e

    async def list_returns(self, record_id: UUID) -> list[ReturnEntry]:
        try:
            sheet = self._client.get_returns_sheet()
            all_rows = sheet.get_all_values()[1:]
        except Exception as e:
            raise StorageError(f"Failed to list returns: {e}") from e

        # A malformed return row must fail loudly: skipping it would
        # overstate the remaining balance.
        entries = [
            self._row_to_return(row)
            for row in all_rows
            if len(row) > 1 and row[1] == str(record_id)
        ]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries


class GoogleSheetsAccountStorage(AccountStorageInterface):
    """Accounts sheet, read-only from this core."""

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_account(self, row: list) -> Account:
        return Account(
            id=_cell(row, 0),
            name=_cell(row, 2),
            currency=_cell(row, 3),
            calculated_balance=Decimal(_cell(row, 4, "0")),
            is_active=_cell(row, 5, "True").lower() == "true",
        )

    async def get_account(self, account_id: str) -> Optional[Account]:
        try:
            sheet = self._client.get_accounts_sheet()
            for row in sheet.get_all_values()[1:]:
                if row and row[0] == account_id:
                    return self._row_to_account(row)
            return None
        except Exception as e:
            raise StorageError(f"Failed to get account: {e}") from e

    async def list_accounts(self, user_id: Optional[str] = None) -> list[Account]:
        try:
            sheet = self._client.get_accounts_sheet()
            return [
                self._row_to_account(row)
                for row in sheet.get_all_values()[1:]
                if row and row[0] and (user_id is None or _cell(row, 1) == user_id)
            ]
        except Exception as e:
            raise StorageError(f"Failed to list accounts: {e}") from e


class GoogleSheetsLedgerBridge(LedgerBridge):
    """
    Ledger transactions stored in the Transactions sheet.

    Uniqueness of transaction ids is enforced here, on create.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _transaction_to_row(self, transaction: LedgerTransaction) -> list:
        return [
            transaction.transaction_id,
            transaction.user_id,
            transaction.account_id,
            transaction.type.value,
            str(transaction.amount),
            transaction.description,
            transaction.category,
            transaction.transaction_date.isoformat(),
            json.dumps(transaction.tags),
        ]

    def _row_to_transaction(self, row: list) -> LedgerTransaction:
        return LedgerTransaction(
            transaction_id=_cell(row, 0),
            user_id=_cell(row, 1),
            account_id=_cell(row, 2),
            type=TransactionType(_cell(row, 3)),
            amount=Decimal(_cell(row, 4)),
            description=_cell(row, 5),
            category=_cell(row, 6),
            transaction_date=date.fromisoformat(_cell(row, 7)),
            tags=json.loads(_cell(row, 8, "[]")),
        )

    async def create_transaction(self, data: LedgerTransaction) -> str:
        try:
            sheet = self._client.get_transactions_sheet()
            if _find_row_index(sheet, data.transaction_id) is not None:
                raise DuplicateError(f"Transaction id already in use: {data.transaction_id}")
            _append_once(sheet, self._transaction_to_row(data))
            return data.transaction_id
        except DuplicateError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to create transaction: {e}") from e

    @write_retry
    async def update_transaction(self, transaction_id: str, patch: dict) -> bool:
        try:
            sheet = self._client.get_transactions_sheet()
            idx = _find_row_index(sheet, transaction_id)
            if idx is None:
                raise NotFoundError(f"Transaction not found: {transaction_id}")
            current = self._row_to_transaction(sheet.row_values(idx))
            updated = LedgerTransaction.model_validate(
                {**current.model_dump(), **patch}
            )
            _replace_row(sheet, idx, self._transaction_to_row(updated))
            return True
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update transaction: {e}") from e

    @write_retry
    async def delete_transaction(self, transaction_id: str) -> bool:
        try:
            sheet = self._client.get_transactions_sheet()
            idx = _find_row_index(sheet, transaction_id)
            if idx is None:
                return False
            sheet.delete_rows(idx)
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete transaction: {e}") from e

    async def find_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        try:
            sheet = self._client.get_transactions_sheet()
            idx = _find_row_index(sheet, transaction_id)
            if idx is None:
                return None
            return self._row_to_transaction(sheet.row_values(idx))
        except Exception as e:
            raise StorageError(f"Failed to find transaction: {e}") from e


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(_cell(row, 0)),
            timestamp=datetime.fromisoformat(_cell(row, 1)),
            event_type=AuditEventType(_cell(row, 2)),
            severity=AuditSeverity(_cell(row, 3)),
            entity_type=_cell(row, 4) or None,
            entity_id=UUID(_cell(row, 5)) if _cell(row, 5) else None,
            correlation_id=UUID(_cell(row, 6)) if _cell(row, 6) else None,
            description=_cell(row, 7),
            details=json.loads(_cell(row, 8)) if _cell(row, 8) else {},
            error_message=_cell(row, 9) or None,
            is_user_action=_cell(row, 10).lower() == "true",
        )

    def _read_events(self) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except (ValueError, json.JSONDecodeError) as e:
                logger.warning("malformed_audit_row", row_id=row[0], error=str(e))
        return events

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            _append_once(sheet, event.to_sheets_row())
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}") from e

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        try:
            events = [e for e in self._read_events() if e.correlation_id == correlation_id]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}") from e
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        try:
            events = [
                e for e in self._read_events()
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}") from e
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            events = self._read_events()
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}") from e
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
