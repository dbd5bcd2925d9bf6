"""Tests for loan analytics."""

from datetime import date, datetime
from decimal import Decimal

import pytest

from loanbook.models.loan import LoanStatus, LoanType, ReturnEntry
from loanbook.queries import LoanAnalyticsExecutor, summarize_records

from conftest import TODAY, USER_ID, make_record


def returned(record, amount):
    return ReturnEntry(
        lend_borrow_id=record.id,
        amount=Decimal(amount),
        return_date=TODAY,
    )


class TestSummarizeRecords:

    def test_empty(self):
        summary = summarize_records([], {}, TODAY)
        assert summary.total_lent == Decimal("0")
        assert summary.top_person is None
        assert summary.by_currency == []

    def test_totals_and_outstanding(self):
        lend = make_record(amount=Decimal("100"), partial_return_amount=Decimal("10"))
        borrow = make_record(type=LoanType.BORROW, person_name="Bob", amount=Decimal("40"))
        settled = make_record(amount=Decimal("30"), status=LoanStatus.SETTLED)

        summary = summarize_records(
            [lend, borrow, settled],
            {lend.id: [returned(lend, "20")]},
            TODAY,
        )

        assert summary.total_lent == Decimal("130")
        assert summary.total_borrowed == Decimal("40")
        assert summary.outstanding_lent == Decimal("70")
        assert summary.outstanding_borrowed == Decimal("40")
        assert summary.active_count == 2
        assert summary.settled_count == 1
        assert summary.overdue_count == 0

    def test_stale_active_counts_as_overdue(self):
        record = make_record(due_date=date(2024, 3, 1))
        summary = summarize_records([record], {}, TODAY)
        assert summary.overdue_count == 1
        assert summary.active_count == 0

    def test_overpaid_history_is_clamped(self):
        record = make_record(amount=Decimal("50"))
        summary = summarize_records([record], {record.id: [returned(record, "80")]}, TODAY)
        assert summary.outstanding_lent == Decimal("0")

    def test_top_person_by_total_principal(self):
        records = [
            make_record(person_name="Alice", amount=Decimal("60")),
            make_record(person_name="Bob", amount=Decimal("50")),
            make_record(person_name="Bob", type=LoanType.BORROW, amount=Decimal("20")),
        ]
        assert summarize_records(records, {}, TODAY).top_person == "Bob"

    def test_top_person_tie_is_stable(self):
        records = [
            make_record(person_name="Zed", amount=Decimal("10")),
            make_record(person_name="Amy", amount=Decimal("10")),
        ]
        assert summarize_records(records, {}, TODAY).top_person == "Amy"

    def test_by_currency(self):
        records = [
            make_record(currency="USD", amount=Decimal("10")),
            make_record(currency="EUR", amount=Decimal("7")),
            make_record(currency="EUR", type=LoanType.BORROW, amount=Decimal("3")),
        ]
        summary = summarize_records(records, {}, TODAY)

        assert [c.currency for c in summary.by_currency] == ["EUR", "USD"]
        eur = summary.by_currency[0]
        assert eur.total_lent == Decimal("7")
        assert eur.total_borrowed == Decimal("3")
        assert eur.outstanding_borrowed == Decimal("3")


class TestLoanAnalyticsExecutor:

    @pytest.mark.asyncio
    async def test_summarize_reads_storage(self, loan_storage):
        record = make_record(created_at=datetime(2024, 1, 1))
        await loan_storage.save_loan(record)
        await loan_storage.save_loan(make_record(user_id="someone-else"))
        await loan_storage.append_return(returned(record, "25"))

        summary = await LoanAnalyticsExecutor(loan_storage).summarize(USER_ID, today=TODAY)

        assert summary.total_lent == Decimal("100")
        assert summary.outstanding_lent == Decimal("75")
        assert summary.active_count == 1

    @pytest.mark.asyncio
    async def test_summarize_does_not_write(self, loan_storage):
        record = make_record(due_date=date(2024, 3, 1))
        await loan_storage.save_loan(record)

        summary = await LoanAnalyticsExecutor(loan_storage).summarize(USER_ID, today=TODAY)

        assert summary.overdue_count == 1
        assert (await loan_storage.get_loan_by_id(record.id)).status == LoanStatus.ACTIVE
