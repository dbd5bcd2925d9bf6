"""
Return Ledger

Pure aggregation over a record's repayment history. No I/O.

The legacy `partial_return_amount` field holds repayments recorded before
per-return history existed. It is folded into the same reducer as the
ReturnEntries, so no caller ever branches on which representation a
record happens to use.
"""

from decimal import Decimal
from typing import Iterable

from loanbook.models.loan import (
    ALLOWED_TRANSITIONS,
    LoanRecord,
    LoanStatus,
    ReturnEntry,
)


ZERO = Decimal("0")


def compute_total_returned(record: LoanRecord, returns: Iterable[ReturnEntry]) -> Decimal:
    """sum(returns.amount) + record.partial_return_amount"""
    return sum((entry.amount for entry in returns), ZERO) + record.partial_return_amount


def compute_remaining(record: LoanRecord, returns: Iterable[ReturnEntry]) -> Decimal:
    """
    Principal minus everything returned so far.

    Not clamped: malformed history can yield a negative value. Callers
    deciding on settlement treat anything <= 0 as fully repaid.
    """
    return record.amount - compute_total_returned(record, returns)


def is_fully_repaid(remaining: Decimal) -> bool:
    return remaining <= ZERO


def outstanding(remaining: Decimal) -> Decimal:
    """Remaining balance clamped at zero, for display and totals."""
    return max(remaining, ZERO)


def has_partial_history(record: LoanRecord, returns: Iterable[ReturnEntry]) -> bool:
    """True once any partial repayment exists, in either representation."""
    return record.partial_return_amount > ZERO or any(True for _ in returns)


def sort_for_display(returns: Iterable[ReturnEntry]) -> list[ReturnEntry]:
    """Most recent first. Ordering has no bearing on any sum."""
    return sorted(
        returns,
        key=lambda entry: (entry.return_date, entry.created_at),
        reverse=True,
    )


def can_transition(current: LoanStatus, target: LoanStatus) -> bool:
    return target == current or target in ALLOWED_TRANSITIONS[current]


def apply_status_transition(status: LoanStatus, remaining: Decimal) -> LoanStatus:
    """
    Status implied by a remaining balance.

    Idempotent: settled stays settled, and a record whose balance is
    still open keeps its current status (active or overdue).
    """
    if status == LoanStatus.SETTLED:
        return status
    if is_fully_repaid(remaining):
        return LoanStatus.SETTLED
    return status


def linked_transaction_ids(record: LoanRecord, returns: Iterable[ReturnEntry]) -> list[str]:
    """
    Every ledger transaction a record and its returns point at.

    The record's own link comes first; an id shared by the record and its
    first account-routed return is listed once.
    """
    ids = [record.transaction_id] if record.transaction_id else []
    for entry in returns:
        if entry.transaction_id and entry.transaction_id not in ids:
            ids.append(entry.transaction_id)
    return ids
