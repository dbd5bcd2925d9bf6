"""Loan record lifecycle package."""

from loanbook.lifecycle.service import LoanRecordService, mark_overdue

__all__ = ["LoanRecordService", "mark_overdue"]
