"""
Shared fixtures.

Everything runs on the in-memory backends; no test talks to Google Sheets.
"""

from datetime import date
from decimal import Decimal

import pytest

from loanbook.audit import AuditLogger
from loanbook.lifecycle import LoanRecordService
from loanbook.models.loan import Account, LoanRecord, LoanType
from loanbook.services.storage import (
    InMemoryAccountStorage,
    InMemoryAuditStorage,
    InMemoryLedgerBridge,
    InMemoryLoanStorage,
)
from loanbook.settlement import SettlementEngine
from loanbook.validation import LoanValidator


USER_ID = "user-1"
TODAY = date(2024, 3, 15)


def make_record(**overrides) -> LoanRecord:
    """A record-only lend of 100 USD unless overridden."""
    values = {
        "user_id": USER_ID,
        "type": LoanType.LEND,
        "person_name": "Alice",
        "amount": Decimal("100"),
        "currency": "USD",
        "due_date": date(2024, 4, 1),
    }
    values.update(overrides)
    return LoanRecord(**values)


@pytest.fixture
def loan_storage():
    return InMemoryLoanStorage()


@pytest.fixture
def ledger():
    return InMemoryLedgerBridge()


@pytest.fixture
def account_storage():
    return InMemoryAccountStorage(
        accounts=[
            Account(id="acc1", name="Checking", currency="USD", calculated_balance=Decimal("500")),
            Account(id="acc2", name="Savings", currency="USD", calculated_balance=Decimal("2500")),
            Account(id="acc-eur", name="Euro Wallet", currency="EUR", calculated_balance=Decimal("80")),
        ],
        owners={"acc1": USER_ID, "acc2": USER_ID, "acc-eur": USER_ID},
    )


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def validator(account_storage):
    return LoanValidator(account_storage)


@pytest.fixture
def engine(loan_storage, ledger, validator, audit_logger):
    return SettlementEngine(
        loan_storage=loan_storage,
        ledger=ledger,
        validator=validator,
        audit_logger=audit_logger,
    )


@pytest.fixture
def service(loan_storage, ledger, validator, audit_logger):
    return LoanRecordService(
        loan_storage=loan_storage,
        ledger=ledger,
        validator=validator,
        audit_logger=audit_logger,
    )
