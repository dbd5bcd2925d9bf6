"""
Application Wiring for Loanbook

Builds the record service, settlement engine and analytics executor on
one shared set of backends, so a settlement and the list view that
follows it read the same store.

DESIGN DECISION: Google Sheets is used when it is configured. When it is
not, every component falls back to the in-memory backends and a warning
is logged; nothing else about the components changes.
"""

from typing import Optional

import structlog

from loanbook.audit import AuditLogger
from loanbook.lifecycle import LoanRecordService
from loanbook.queries import LoanAnalyticsExecutor
from loanbook.services.ledger import LedgerBridge
from loanbook.services.storage import (
    AccountStorageInterface,
    GoogleSheetsAccountStorage,
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsLedgerBridge,
    GoogleSheetsLoanStorage,
    InMemoryAccountStorage,
    InMemoryAuditStorage,
    InMemoryLedgerBridge,
    InMemoryLoanStorage,
    LoanStorageInterface,
)
from loanbook.settlement import SettlementEngine
from loanbook.validation import LoanValidator


logger = structlog.get_logger(__name__)


def create_app_components(
    use_storage: bool = True,
) -> tuple[LoanRecordService, SettlementEngine, LoanAnalyticsExecutor, Optional[GoogleSheetsClient]]:
    """
    Factory function to create all application components.

    Args:
        use_storage: Whether to initialize Google Sheets storage.
                    Set to False to run on in-memory backends only.

    Returns:
        (record_service, settlement_engine, analytics, sheets_client)
    """
    sheets_client = None
    loan_storage: LoanStorageInterface
    account_storage: AccountStorageInterface
    ledger: LedgerBridge

    if use_storage:
        try:
            sheets_client = GoogleSheetsClient()
            loan_storage = GoogleSheetsLoanStorage(sheets_client)
            account_storage = GoogleSheetsAccountStorage(sheets_client)
            ledger = GoogleSheetsLedgerBridge(sheets_client)
            audit_logger = AuditLogger(GoogleSheetsAuditStorage(sheets_client))
        except Exception as e:
            # Storage not configured - continue in memory
            logger.warning("storage_not_configured", error=str(e))
            sheets_client = None
            use_storage = False

    if not use_storage:
        loan_storage = InMemoryLoanStorage()
        account_storage = InMemoryAccountStorage()
        ledger = InMemoryLedgerBridge()
        audit_logger = AuditLogger(InMemoryAuditStorage())

    validator = LoanValidator(account_storage)

    record_service = LoanRecordService(
        loan_storage=loan_storage,
        ledger=ledger,
        validator=validator,
        audit_logger=audit_logger,
    )

    settlement_engine = SettlementEngine(
        loan_storage=loan_storage,
        ledger=ledger,
        validator=validator,
        audit_logger=audit_logger,
    )

    analytics = LoanAnalyticsExecutor(loan_storage)

    return record_service, settlement_engine, analytics, sheets_client
