"""Validation package."""

from loanbook.validation.validator import (
    AccountRequiredError,
    LoanValidator,
    ValidationError,
    raise_for_issues,
)

__all__ = [
    "AccountRequiredError",
    "LoanValidator",
    "ValidationError",
    "raise_for_issues",
]
