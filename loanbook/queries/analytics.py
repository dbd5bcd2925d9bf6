"""
Loan Analytics

DESIGN DECISION: Analytics are DETERMINISTIC and computed from stored
records only. Outstanding figures go through the same reducer the
settlement engine uses, so a summary never disagrees with what a
settlement would accept.

Money totals in LoanAnalytics add amounts of every currency together;
they are counts of "how much", not of "how much in dollars". The
by_currency breakdown is what a UI should display next to a symbol.
"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Optional
from uuid import UUID

from loanbook.lifecycle.service import mark_overdue
from loanbook.models.loan import (
    CurrencySummary,
    LoanAnalytics,
    LoanRecord,
    LoanStatus,
    LoanType,
    ReturnEntry,
)
from loanbook.services.storage import LoanStorageInterface
from loanbook.settlement.returns import compute_remaining, outstanding


def summarize_records(
    records: list[LoanRecord],
    returns_by_record: dict[UUID, list[ReturnEntry]],
    today: date,
) -> LoanAnalytics:
    """
    Summary figures over a batch of records. Pure.

    Statuses are counted after applying the overdue sweep for `today`,
    so a stale active record still counts as overdue.
    """
    summary = LoanAnalytics()
    per_currency: dict[str, CurrencySummary] = {}
    principal_by_person: dict[str, Decimal] = defaultdict(Decimal)

    for record in mark_overdue(records, today):
        if record.status == LoanStatus.ACTIVE:
            summary.active_count += 1
        elif record.status == LoanStatus.OVERDUE:
            summary.overdue_count += 1
        else:
            summary.settled_count += 1

        principal_by_person[record.person_name] += record.amount

        if record.status == LoanStatus.SETTLED:
            open_amount = Decimal("0")
        else:
            open_amount = outstanding(
                compute_remaining(record, returns_by_record.get(record.id, []))
            )

        by_currency = per_currency.setdefault(
            record.currency, CurrencySummary(currency=record.currency),
        )
        if record.type == LoanType.LEND:
            summary.total_lent += record.amount
            summary.outstanding_lent += open_amount
            by_currency.total_lent += record.amount
            by_currency.outstanding_lent += open_amount
        else:
            summary.total_borrowed += record.amount
            summary.outstanding_borrowed += open_amount
            by_currency.total_borrowed += record.amount
            by_currency.outstanding_borrowed += open_amount

    if principal_by_person:
        # Ties go to the alphabetically first name so the result is stable
        summary.top_person = min(
            principal_by_person,
            key=lambda name: (-principal_by_person[name], name),
        )
    summary.by_currency = [per_currency[code] for code in sorted(per_currency)]
    return summary


class LoanAnalyticsExecutor:
    """
    Computes LoanAnalytics for one user from storage.

    GUARANTEES:
    - Only real stored records and returns are counted
    - No writes: the overdue sweep is applied in memory only
    """

    def __init__(self, storage: LoanStorageInterface):
        self._storage = storage

    async def summarize(
        self,
        user_id: str,
        today: Optional[date] = None,
    ) -> LoanAnalytics:
        records = await self._storage.list_loans(user_id=user_id)
        returns_by_record = {
            record.id: await self._storage.list_returns(record.id)
            for record in records
            if record.status != LoanStatus.SETTLED
        }
        return summarize_records(records, returns_by_record, today or date.today())
