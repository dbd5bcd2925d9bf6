"""
Data Models Package

This package contains all Pydantic models used by the lend/borrow core.
All data flowing through the system must conform to these schemas.
"""

from loanbook.models.loan import (
    ALLOWED_TRANSITIONS,
    CORE_FIELDS,
    LEDGER_SYNC_FIELDS,
    Account,
    CurrencySummary,
    LedgerTransaction,
    LoanAnalytics,
    LoanRecord,
    LoanRecordInput,
    LoanRecordPatch,
    LoanStatus,
    LoanType,
    ReturnEntry,
    SettlementMethod,
    SettlementResult,
    SettlementStep,
    TransactionType,
    ValidationIssue,
)
from loanbook.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Loan models
    "ALLOWED_TRANSITIONS",
    "CORE_FIELDS",
    "LEDGER_SYNC_FIELDS",
    "Account",
    "CurrencySummary",
    "LedgerTransaction",
    "LoanAnalytics",
    "LoanRecord",
    "LoanRecordInput",
    "LoanRecordPatch",
    "LoanStatus",
    "LoanType",
    "ReturnEntry",
    "SettlementMethod",
    "SettlementResult",
    "SettlementStep",
    "TransactionType",
    "ValidationIssue",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
