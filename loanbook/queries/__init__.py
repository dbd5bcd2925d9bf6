"""Query package."""

from loanbook.queries.analytics import LoanAnalyticsExecutor, summarize_records

__all__ = ["LoanAnalyticsExecutor", "summarize_records"]
